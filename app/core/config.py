"""
Application configuration

Defaults are production safe:
- DEBUG defaults to False
- DATABASE_URL and REDIS_URL are optional; without them the service runs on
  the JSON catalog seed and the in-process quote cache
- Runtime validation catches insecure configurations
"""
import json
import os
import logging
from typing import List, Union
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Default CORS origins
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


class Settings(BaseSettings):
    # App - defaults are PRODUCTION safe
    APP_NAME: str = "Shipping Quote Engine"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"

    # Database (optional, read-only catalog of zones and methods)
    DATABASE_URL: str = ""

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v):
        """Convert postgres:// URLs to the asyncpg driver format."""
        if not v:
            return v
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://") and "+asyncpg" not in v:
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600  # 1 hour

    # JSON seed for the in-memory catalog, used when DATABASE_URL is empty
    SHIPPING_CATALOG_PATH: str = ""

    # CORS - accepts JSON array or comma-separated string
    CORS_ORIGINS: Union[str, List[str]] = DEFAULT_CORS_ORIGINS

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            if not v or v.strip() == "":
                return DEFAULT_CORS_ORIGINS
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # Redis (quote cache backend)
    REDIS_URL: str = ""

    # Quote aggregation
    QUOTE_CACHE_TTL_MINUTES: int = 10
    QUOTE_CACHE_MAX_SIZE: int = 1000
    QUOTE_MAX_PARALLEL_PROVIDERS: int = 5
    QUOTE_PROVIDER_TIMEOUT_SECONDS: float = 10.0
    QUOTE_OVERALL_TIMEOUT_SECONDS: float = 30.0
    QUOTE_PROVIDER_RETRY_ATTEMPTS: int = 2
    QUOTE_RETRY_BASE_DELAY_SECONDS: float = 0.5
    QUOTE_CIRCUIT_FAILURE_THRESHOLD: int = 5
    QUOTE_CIRCUIT_RECOVERY_SECONDS: int = 30
    # Divisor applied to cost in the balanced score (cost / scale + days)
    QUOTE_BALANCED_COST_SCALE: float = 100000.0
    QUOTE_QUICK_ESTIMATE_DEFAULT: int = 3

    # Internal rate engine
    RATE_INSURANCE_THRESHOLD: str = "1000"
    RATE_INSURANCE_RATE: str = "0.01"
    RATE_FUEL_SURCHARGE_RATE: str = "0.10"
    RATE_CURRENCY: str = "USD"

    # EasyPost
    EASYPOST_ENABLED: bool = False
    EASYPOST_API_KEY: str = ""
    EASYPOST_BASE_URL: str = "https://api.easypost.com/v2"
    EASYPOST_TIMEOUT_SECONDS: float = 10.0

    # VNPost (local tariff tables)
    VNPOST_ENABLED: bool = False

    @model_validator(mode="after")
    def validate_production_config(self):
        """Runtime validation to catch insecure production configurations."""
        if self.ENVIRONMENT == "production":
            errors = []

            if self.DEBUG:
                errors.append(
                    "DEBUG=True is forbidden in production. "
                    "Set DEBUG=false or ENVIRONMENT=development"
                )

            for origin in self.CORS_ORIGINS:
                if origin == "*":
                    errors.append("Wildcard '*' CORS origin is forbidden in production")
                elif "localhost" in origin or "127.0.0.1" in origin:
                    errors.append(f"Localhost CORS origin '{origin}' is forbidden in production")

            if self.EASYPOST_ENABLED and not self.EASYPOST_API_KEY:
                errors.append("EASYPOST_ENABLED requires EASYPOST_API_KEY")

            if errors:
                raise ValueError(
                    "PRODUCTION CONFIGURATION VIOLATIONS:\n" + "\n".join(f"  - {e}" for e in errors)
                )

        return self

    class Config:
        env_file = ".env"
        case_sensitive = True


# Try to load settings, provide helpful error on failure
try:
    settings = Settings()
except Exception:
    # In development, allow fallback defaults
    if os.getenv("ENVIRONMENT", "development") == "development":
        logger.warning(
            "Settings validation failed, using development defaults. "
            "Set ENVIRONMENT and CORS_ORIGINS in .env file."
        )
        os.environ.setdefault("ENVIRONMENT", "development")
        settings = Settings()
    else:
        raise
