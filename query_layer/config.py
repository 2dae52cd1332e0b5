from typing import Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration read from the environment.

    Values can also be passed by field name. A malformed value (say a
    non-numeric ``DB_POOL_MAX``) raises ``pydantic.ValidationError`` naming
    the variable.
    """

    model_config = SettingsConfigDict(frozen=True, extra="ignore")

    connection_string: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("connection_string", "ORACLE_CONNECTION_STRING")
    )
    target_schema: Optional[str] = None
    read_only: bool = Field(default=True, validation_alias=AliasChoices("read_only", "READ_ONLY_MODE"))
    redis_url: Optional[str] = None
    cache_key_prefix: str = "app"
    cache_default_ttl: int = Field(default=300, ge=0)
    schema_cache_ttl: int = Field(default=3600, ge=0)
    transaction_timeout_ms: int = Field(default=60000, ge=0)
    query_timeout_ms: int = Field(default=30000, ge=0)
    pool_min: int = Field(default=2, ge=0, validation_alias=AliasChoices("pool_min", "DB_POOL_MIN"))
    pool_max: int = Field(default=10, ge=1, validation_alias=AliasChoices("pool_max", "DB_POOL_MAX"))
    log_level: str = "INFO"

    @field_validator("connection_string", "target_schema", "redis_url", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()


def load_settings() -> Settings:
    """Build settings from the environment (and a .env file, if present)."""
    load_dotenv()
    return Settings()
