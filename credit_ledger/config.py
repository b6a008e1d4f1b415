import logging
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .repository import InMemoryRepository, LedgerRepository

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Settings(BaseSettings):
    # General
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Storage
    storage_backend: Literal["memory", "sqlite"] = Field(default="memory")
    database_url: str = Field(default="sqlite:///./ledger.db")
    database_timeout_seconds: float = Field(default=30.0, gt=0, description="SQLite busy timeout")

    # Display
    currency_symbol: str = Field(default="₦")

    # Reconciliation
    reconciliation_version: Optional[int] = Field(
        default=None, description="Tag written on entries backfilled by a reconciliation run"
    )

    # HTTP
    cors_origins: str = Field(default="*")
    root_path: str = Field(default="")

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level '{value}'")
        return level

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",")]


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("credit_ledger").setLevel(level)


def build_repository(settings: Optional[Settings] = None) -> LedgerRepository:
    settings = settings or get_settings()
    if settings.storage_backend == "sqlite":
        from .sql_repository import SqlLedgerRepository

        logger.info("Using SQLite ledger storage at %s", settings.database_url)
        return SqlLedgerRepository(settings.database_url, settings.database_timeout_seconds)

    logger.info("Using in-memory ledger storage")
    return InMemoryRepository()
