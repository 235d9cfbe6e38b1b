"""Service configuration via environment variables."""

from __future__ import annotations

from datetime import timedelta
from urllib.parse import quote_plus

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class DatabaseSettings(BaseSettings):
    model_config = {"env_prefix": "DB_"}

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "zkp_auth"
    sslmode: str = "disable"

    # Full SQLAlchemy async URL; overrides the fields above when set.
    url: str | None = None

    pool_max_open: int = Field(default=25, ge=1)
    pool_max_idle: int = Field(default=5, ge=1)
    pool_recycle_seconds: int = Field(default=300, ge=1)
    pool_timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def validate_pool_bounds(self) -> DatabaseSettings:
        if self.pool_max_idle > self.pool_max_open:
            msg = "pool_max_idle cannot exceed pool_max_open"
            raise ValueError(msg)
        return self

    def sqlalchemy_url(self) -> str:
        if self.url:
            return self.url
        credentials = quote_plus(self.user)
        if self.password:
            credentials += f":{quote_plus(self.password)}"
        return f"postgresql+asyncpg://{credentials}@{self.host}:{self.port}/{self.name}"

    @property
    def is_sqlite(self) -> bool:
        return self.sqlalchemy_url().startswith("sqlite")


class AuthSettings(BaseSettings):
    model_config = {"env_prefix": "CPAUTH_"}

    challenge_ttl_seconds: int = 300
    session_ttl_seconds: int = 86400
    sweep_interval_seconds: float = 300.0
    operation_timeout_seconds: float = 10.0

    host: str = "127.0.0.1"
    port: int = 8000
    log_dir: str | None = None

    @field_validator(
        "challenge_ttl_seconds",
        "session_ttl_seconds",
        "sweep_interval_seconds",
        "operation_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            msg = "must be greater than zero"
            raise ValueError(msg)
        return v

    @property
    def challenge_ttl(self) -> timedelta:
        return timedelta(seconds=self.challenge_ttl_seconds)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(seconds=self.session_ttl_seconds)
