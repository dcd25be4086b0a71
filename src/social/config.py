from functools import lru_cache
from typing import List, Literal

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

# Secrets shorter than this are rejected at startup.
MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    database_url: str = Field("sqlite:///social.db")
    redis_url: str = Field("redis://localhost:6379/0")
    api_title: str = Field("Social API")
    environment: Literal["development", "production", "test"] = "development"
    log_level: str = Field("INFO")

    access_token_secret: SecretStr
    refresh_token_secret: SecretStr
    jwt_algorithm: str = Field("HS256")
    access_token_expire_minutes: int = Field(5, ge=1)
    refresh_token_expire_days: int = Field(30, ge=1)
    refresh_cookie_name: str = Field("refreshToken")

    bcrypt_rounds: int = Field(12, ge=4, le=31)

    celery_task_always_eager: bool = False
    rotation_queue: str = Field("rotation")
    rotation_max_retries: int = Field(3, ge=0)
    rotation_retry_delay: int = Field(5, ge=0)
    # One serial consumer keeps each user's rotation jobs in enqueue order.
    worker_concurrency: int = Field(1, ge=1)
    purge_frequency: int = Field(60 * 60 * 6, ge=60)

    rate_limit_enabled: bool = True
    cors_origins: List[str] = Field(default_factory=list)

    @field_validator("access_token_secret", "refresh_token_secret")
    @classmethod
    def validate_secret(cls, v: SecretStr) -> SecretStr:
        if len(v.get_secret_value().strip()) < MIN_SECRET_LENGTH:
            raise ValueError(f"must be at least {MIN_SECRET_LENGTH} characters")
        return v

    @model_validator(mode="after")
    def validate_distinct_secrets(self) -> "Settings":
        if self.access_token_secret.get_secret_value() == self.refresh_token_secret.get_secret_value():
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings; invalid configuration is fatal."""
    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc


settings = get_settings()
