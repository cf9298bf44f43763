import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env", ".env.production"), extra="ignore"
    )

    ENVIRONMENT: str = "LOCAL"

    # Database URLs (Railway / Cloud)
    DATABASE_URL: str | None = os.getenv("DATABASE_URL")
    DATABASE_PRIVATE_URL: str | None = os.getenv("DATABASE_PRIVATE_URL")
    POSTGRES_URL: str | None = os.getenv("POSTGRES_URL")

    # Fallback/Manual Configuration
    POSTGRES_HOST: str = os.getenv(
        "DATABASE_HOST_WRITE", os.getenv("POSTGRES_HOST", "127.0.0.1")
    )
    POSTGRES_PORT: int = int(
        os.getenv("DATABASE_PORT", os.getenv("POSTGRES_PORT", "5432"))
    )
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", os.getenv("DATABASE_USER", "postgres"))
    POSTGRES_PASSWORD: str = os.getenv(
        "POSTGRES_PASSWORD", os.getenv("DATABASE_PASSWORD", "postgres")
    )
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", os.getenv("DATABASE_NAME", "h2_registry"))

    # Internal routing
    DATABASE_HOST_READ: str = "db_read"
    DATABASE_HOST_WRITE: str = "db_write"
    DATABASE_PORT: int = 5432
    ESDB_CONNECTION_STRING: str = os.getenv("ESDB_CONNECTION_STRING", "eventstore.db")

    LOG_LEVEL: str = "INFO"
    CORS_ALLOWED_ORIGINS: str = ""
    PROFILING_ENABLED: bool = False
    BOOTSTRAP_ON_STARTUP: bool = True
    SEED_DEMO_DATA: bool = False

    # Ledger roles. Addresses are comma separated and compared in lower case.
    ADMIN_ADDRESSES: str = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
    ISSUER_ADDRESSES: str = ""
    CREDIT_LEDGER_ADDRESS: str = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
    MARKETPLACE_ADDRESS: str = "0x9fe46736679d2d9a65f0992f2272de9f3c7fa6e0"
    FEE_RECIPIENT: str = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"

    # Credit amounts are integers in base units, 1 credit = 1 kg H2 scaled by
    # 10 ** CREDIT_DECIMALS. Native values (fees, prices, payments) are integers
    # in the minor unit of the settlement currency (gwei by default).
    CREDIT_DECIMALS: int = 0
    SUBMISSION_FEE: int = 10_000_000
    DEFAULT_GATE_NAME: str = "Production Oracle"
    MAX_MONTHLY_PRODUCTION_LIMIT: int = 1_000_000_000
    MAX_PRODUCTION_AGE_DAYS: int = 30
    PLATFORM_FEE_BPS: int = 250
    MAX_PLATFORM_FEE_BPS: int = 1000
    MAX_VERIFICATION_NOTES_LENGTH: int = 1000

    @property
    def database_url(self) -> str:
        """Build database URL from components if DATABASE_URL is not set."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        elif self.DATABASE_PRIVATE_URL:
            return self.DATABASE_PRIVATE_URL
        elif self.POSTGRES_URL:
            return self.POSTGRES_URL
        else:
            return f"postgresql+psycopg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins into a clean list."""
        if not self.CORS_ALLOWED_ORIGINS:
            return []
        return [
            o.strip().strip("'\"").rstrip("/")
            for o in self.CORS_ALLOWED_ORIGINS.split(",")
            if o.strip()
        ]

    @property
    def admin_addresses(self) -> set[str]:
        return _split_addresses(self.ADMIN_ADDRESSES)

    @property
    def issuer_addresses(self) -> set[str]:
        return _split_addresses(self.ISSUER_ADDRESSES)

    @property
    def credit_unit(self) -> int:
        return 10**self.CREDIT_DECIMALS


def _split_addresses(raw: str) -> set[str]:
    return {a.strip().lower() for a in raw.split(",") if a.strip()}


settings = Settings()
