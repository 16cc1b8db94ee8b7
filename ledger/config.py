import logging
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Database
    DATABASE_URL: str = "sqlite:///./series_entitlements.db"
    SQL_ECHO: bool = False

    # App
    APP_NAME: str = "Series Entitlements"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Reconciliation
    RUN_MODE_A_IN_BACKGROUND: bool = True

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
