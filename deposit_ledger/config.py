"""Application configuration loaded from the environment with pydantic settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LEDGER_",
        extra="ignore",
        case_sensitive=False,
    )

    environment: Literal["development", "staging", "production", "test"] = "development"
    project_name: str = "Deposit Ledger API"

    storage_backend: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite:///./ledger.db"
    database_echo: bool = False

    # Static allow-list, merged with the is_admin flag on stored accounts
    admin_user_ids: list[str] = []

    cors_origins: list[str] = ["*"]
    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
