"""Environment-derived configuration helpers."""

from __future__ import annotations

import os
import tempfile
from typing import Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError

ENV_PREFIX = "PGSTREAM_"
CONNECTION_STRING_ENV = f"{ENV_PREFIX}CONNECTION_STRING"
TIMEZONE_ENV = f"{ENV_PREFIX}TIMEZONE"
POOL_SIZE_ENV = f"{ENV_PREFIX}POOL_SIZE"
EXPORT_DIR_ENV = f"{ENV_PREFIX}EXPORT_DIR"

DEFAULT_TIMEZONE = "Europe/Moscow"

_ENV_FIELDS = {
    CONNECTION_STRING_ENV: "connection_string",
    TIMEZONE_ENV: "timezone",
    POOL_SIZE_ENV: "pool_size",
    EXPORT_DIR_ENV: "export_dir",
}


class ServerConfig(BaseModel):
    """Shape of the process configuration."""

    connection_string: str | None = None
    timezone: str = DEFAULT_TIMEZONE
    pool_size: int = Field(default=1, ge=1)
    export_dir: str = Field(default_factory=tempfile.gettempdir)

    @field_validator("connection_string", mode="before")
    @classmethod
    def _blank_connection_string(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("timezone", mode="before")
    @classmethod
    def _blank_timezone(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return DEFAULT_TIMEZONE
        return value

    @field_validator("export_dir", mode="before")
    @classmethod
    def _blank_export_dir(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return tempfile.gettempdir()
        return value

    def redacted(self) -> dict[str, object]:
        """Configuration safe to surface in status payloads."""

        return {
            "timezone": self.timezone,
            "poolSize": self.pool_size,
            "exportDir": self.export_dir,
        }


def load_config(env: Mapping[str, str] | None = None) -> ServerConfig:
    """Build the configuration from environment variables."""

    source = os.environ if env is None else env
    data = {field: source[name] for name, field in _ENV_FIELDS.items() if name in source}
    try:
        return ServerConfig(**data)
    except ValidationError as exc:
        fields = {str(error["loc"][0]) for error in exc.errors() if error.get("loc")}
        names = sorted(name for name, field in _ENV_FIELDS.items() if field in fields)
        detail = f"invalid environment variables: {', '.join(names)}" if names else "invalid configuration"
        raise ConfigurationError(f"PostgreSQL configuration error: {detail}") from exc


def require_connection_string(env: Mapping[str, str] | None = None) -> str:
    """Return the connection string or fail with a configuration error."""

    source = os.environ if env is None else env
    value = (source.get(CONNECTION_STRING_ENV) or "").strip()
    if not value:
        raise ConfigurationError(
            "Connection string is required. "
            f"Please set {CONNECTION_STRING_ENV} environment variable."
        )
    return value


__all__ = [
    "CONNECTION_STRING_ENV",
    "DEFAULT_TIMEZONE",
    "EXPORT_DIR_ENV",
    "POOL_SIZE_ENV",
    "ServerConfig",
    "TIMEZONE_ENV",
    "load_config",
    "require_connection_string",
]
