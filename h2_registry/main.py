import datetime
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Callable

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pyinstrument import Profiler
from pyinstrument.renderers.html import HTMLRenderer
from pyinstrument.renderers.speedscope import SpeedscopeRenderer
from starlette.exceptions import HTTPException

from .core.authorization import AccessPolicy
from .core.database import db, events
from .core.error_handling import (
    general_exception_handler,
    http_exception_handler,
    ledger_exception_handler,
    validation_exception_handler,
)
from .core.errors import LedgerError
from .core.models.base import LoggingLevelRequest
from .credit.routes import router as credit_router
from .logging_config import (
    fastapi_logger,
    logger,
    set_logger_and_children_level,
    uvicorn_access_logger,
    uvicorn_logger,
)
from .marketplace.routes import router as marketplace_router
from .payment.routes import router as payment_router
from .producer.routes import router as producer_router
from .seed import seed_demo_data, seed_registry_state
from .settings import settings
from .verification.routes import router as verification_router

tags_metadata = [
    {
        "name": "Producers",
        "description": """Electrolysis plant operators admitted by a registry administrator. Producers must be
                        active and KYC verified to receive credits, and are capped at a monthly production limit.""",
    },
    {
        "name": "Verification",
        "description": """Production claims submitted against a verification gate, decided once by an
                        allowlisted verifier and consumed once by the credit ledger.""",
    },
    {
        "name": "Credits",
        "description": """The fungible credit ledger: claim-gated issuance, transfers, delegated transfers
                        and permanent retirement, with a provenance batch for every issuance.""",
    },
    {
        "name": "Marketplace",
        "description": "Fixed price listings settled against live balances and the marketplace allowance.",
    },
    {
        "name": "Payments",
        "description": "Native value owed by the registry: submission fees, proceeds, platform fees and refunds.",
    },
]

origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8080",
]
origins.extend(o for o in settings.cors_origins if o not in origins)

logger.info(f"Initialized CORS origins: {origins}")


def _bootstrap_registry() -> None:
    """Create any missing tables, then the gate, ledger and marketplace state."""
    clients = db.get_db_name_to_client()
    for client in set(clients.values()):
        client.create_tables()

    esdb_client = None
    try:
        esdb_client = events.get_esdb_client()
    except Exception as e:
        logger.warning(
            f"EventStoreDB not available ({str(e)}), skipping event logging for bootstrap."
        )

    with db.get_session("db_write") as write_session, db.get_session(
        "db_read"
    ) as read_session:
        seed_registry_state(write_session, read_session, esdb_client)

        if settings.SEED_DEMO_DATA:
            admin_address = sorted(settings.admin_addresses)[0]
            seed_demo_data(
                admin_address,
                write_session,
                read_session,
                esdb_client,
                AccessPolicy.from_settings(),
            )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for FastAPI application.
    Handles startup and shutdown events.
    """
    logger.info("Starting up application...")

    if settings.BOOTSTRAP_ON_STARTUP:
        try:
            _bootstrap_registry()
        except Exception as e:
            logger.error(f"Error during registry bootstrap: {str(e)}")
            raise

    logger.info("Application startup complete")
    yield
    logger.info("Shutting down application...")


app = FastAPI(
    openapi_tags=tags_metadata,
    title="Green Hydrogen Credit Registry",
    description="""Registry and marketplace for credits representing verified green hydrogen production.
                Credits are minted only against approved production claims, can be transferred or sold,
                and are permanently retired to claim the environmental benefit.""",
    version="1.0",
    docs_url="/docs",
    dependencies=[Depends(db.get_db_name_to_client)],
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["Content-Type", "Accept", "Origin", "X-Account-Address"],
)

app.add_exception_handler(LedgerError, ledger_exception_handler)  # type: ignore
app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore
app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore
app.add_exception_handler(Exception, general_exception_handler)

app.include_router(producer_router, prefix="/producer")
app.include_router(verification_router, prefix="/verification")
app.include_router(credit_router, prefix="/credits")
app.include_router(marketplace_router, prefix="/marketplace")
app.include_router(payment_router, prefix="/payments")


@app.get("/health", tags=["Core"])
async def health():
    return {"status": "ok", "environment": settings.ENVIRONMENT}


@app.post("/change_log_level", tags=["Core"])
async def change_log_level_endpoint(request: LoggingLevelRequest):
    """Change the logging level at runtime for all relevant loggers."""
    numeric_level = getattr(logging, request.level.value)

    loggers_to_update = [
        logger,
        uvicorn_logger,
        uvicorn_access_logger,
        fastapi_logger,
    ]

    for logger_instance in loggers_to_update:
        set_logger_and_children_level(logger_instance, numeric_level)

    logger_status = {
        logger_instance.name: {
            "effective_level": logging.getLevelName(logger_instance.getEffectiveLevel()),
            "handlers": [
                {"handler": str(handler), "level": logging.getLevelName(handler.level)}
                for handler in logger_instance.handlers
            ],
        }
        for logger_instance in loggers_to_update
    }

    return {
        "message": f"Log level changed to {request.level.value}",
        "logger_status": logger_status,
    }


if settings.PROFILING_ENABLED:
    profile_type: str = "html"

    @app.middleware("http")
    async def profile_request(request: Request, call_next: Callable):
        """Profile the current request and write the report under
        core/profiling/<date>/."""
        profile_type_to_ext = {"html": "html", "speedscope": "speedscope.json"}
        profile_type_to_renderer = {
            "html": HTMLRenderer,
            "speedscope": SpeedscopeRenderer,
        }

        with Profiler(interval=0.001, async_mode="enabled") as profiler:
            response = await call_next(request)

        extension = profile_type_to_ext[profile_type]
        renderer = profile_type_to_renderer[profile_type]()

        todays_date = datetime.datetime.now().strftime("%Y-%m-%d")
        profiling_dir = Path(__file__).parent / "core" / "profiling" / todays_date
        profiling_dir.mkdir(parents=True, exist_ok=True)

        with open(Path(profiling_dir, f"profile.{extension}"), "w") as out:
            out.write(profiler.output(renderer=renderer))
        return response
