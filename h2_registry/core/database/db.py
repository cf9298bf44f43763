import os
from contextlib import contextmanager
from typing import Any, Generator
from urllib.parse import urlparse

from sqlmodel import Session, SQLModel, create_engine

from h2_registry.credit import models as credit_models
from h2_registry.logging_config import logger
from h2_registry.marketplace import models as marketplace_models
from h2_registry.payment import models as payment_models
from h2_registry.producer import models as producer_models
from h2_registry.settings import settings
from h2_registry.verification import models as verification_models

"""
Importing the model modules registers every table on SQLModel.metadata
"""

__all__ = [
    "SQLModel",
    "producer_models",
    "verification_models",
    "credit_models",
    "marketplace_models",
    "payment_models",
]


class DButils:
    def __init__(
        self,
        db_username: str | None = None,
        db_password: str | None = None,
        db_host: str | None = None,
        db_port: int | None = None,
        db_name: str | None = None,
        db_test_fp: str = "h2_registry_test.db",
        test: bool = False,
    ):
        self._db_username = db_username
        self._db_password = db_password
        self._db_host = db_host
        self._db_port = db_port
        self._db_name = db_name
        self._db_test_fp = db_test_fp

        source = None
        if test:
            self.connection_str = f"sqlite:///{self._db_test_fp}"
            source = "test"
        else:
            # Check for DATABASE_URL in order of priority
            # 1. Direct from environment (Set by Railway/Heroku/etc)
            # 2. From settings (Populated by Pydantic)
            # 3. From the individual connection components
            env_vars = ["DATABASE_URL", "DATABASE_PRIVATE_URL", "POSTGRES_URL"]
            self.connection_str = None

            for var in env_vars:
                val = os.getenv(var)
                if val:
                    self.connection_str = val
                    source = f"env:{var}"
                    break

            if not self.connection_str:
                logger.warning(f"None of {env_vars} found in environment. Falling back.")
                user = self._db_username or settings.POSTGRES_USER
                password = self._db_password or settings.POSTGRES_PASSWORD
                host = self._db_host or settings.POSTGRES_HOST
                port = self._db_port or settings.POSTGRES_PORT
                db_name = self._db_name or settings.POSTGRES_DB

                self.connection_str = (
                    f"postgresql+psycopg://{user}:{password}@{host}:{port}/{db_name}"
                )
                source = "explicit_component_fallback"

        parsed = urlparse(self.connection_str)
        redacted = self.connection_str
        if parsed.password:
            redacted = self.connection_str.replace(parsed.password, "********")
        logger.info(f"Database connection initialised from {source}: {redacted}")

        if test:
            self.engine = create_engine(self.connection_str, echo=False)
        else:
            self.engine = create_engine(
                self.connection_str,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
                pool_timeout=30,
                pool_recycle=1800,
                echo=False,
            )

    def create_tables(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        return Session(self.engine)


# Initialising the DButil clients
db_name_to_client: dict[str, Any] = {}


def get_db_name_to_client() -> dict[str, Any]:
    global db_name_to_client

    if db_name_to_client == {}:
        if settings.ENVIRONMENT == "RAILWAY":
            # For Railway, use the same database for both read and write
            db_client = DButils(
                db_host=settings.POSTGRES_HOST,
                db_name=settings.POSTGRES_DB,
                db_username=settings.POSTGRES_USER,
                db_password=settings.POSTGRES_PASSWORD,
                db_port=settings.POSTGRES_PORT,
            )
            db_name_to_client["db_read"] = db_client
            db_name_to_client["db_write"] = db_client
        else:
            db_mapping = [
                ("db_read", settings.DATABASE_HOST_READ),
                ("db_write", settings.DATABASE_HOST_WRITE),
            ]

            for db_name, db_host in db_mapping:
                db_name_to_client[db_name] = DButils(
                    db_host=db_host,
                    db_name=settings.POSTGRES_DB,
                    db_username=settings.POSTGRES_USER,
                    db_password=settings.POSTGRES_PASSWORD,
                    db_port=settings.DATABASE_PORT,
                )

    return db_name_to_client


@contextmanager
def get_session(target: str) -> Generator[Session, None, None]:
    """Helper to get a session for a specific target database."""
    clients = get_db_name_to_client()

    if target not in clients:
        raise KeyError(
            f"Database client '{target}' not found. Initialised clients: {list(clients.keys())}"
        )

    with Session(clients[target].engine) as session:
        yield session


def get_write_session() -> Generator[Session, None, None]:
    """FastAPI dependency for a write database session."""
    with get_session("db_write") as session:
        yield session


def get_read_session() -> Generator[Session, None, None]:
    """FastAPI dependency for a read database session."""
    with get_session("db_read") as session:
        yield session
