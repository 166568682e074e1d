from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ENV", "ENVIRONMENT"),
    )
    log_level: str = "INFO"

    store_backend: Literal["mongo", "memory"] = "mongo"
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db_name: str = "pairchat"
    # unset -> in-process bus, single worker only
    redis_url: Optional[str] = None

    history_page_size: int = Field(default=50, ge=1, le=200)
    inbox_page_size: int = Field(default=20, ge=1, le=100)


def get_settings() -> Settings:
    return Settings()
