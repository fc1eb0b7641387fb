import logging
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .version import __version__

__all__ = ["DEFAULT_ENV_FILE", "BridgeConfig", "LogLevel"]

logger = logging.getLogger(__name__)

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

DEFAULT_ENV_FILE = ".env"


class BridgeConfig(BaseSettings):
    """Runtime settings of the bridge.

    Every field is read from the environment variable of the same name in
    upper case, except ``upstream_rpc_url`` which comes from
    ``UPSTREAM_JSONRPC_URL``. Empty variables count as unset.
    """

    model_config = SettingsConfigDict(
        env_file=DEFAULT_ENV_FILE,
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)
    upstream_stream_url: str
    upstream_rpc_url: str = Field(validation_alias=AliasChoices("upstream_rpc_url", "upstream_jsonrpc_url"))
    heartbeat_interval: float = Field(default=5.0, gt=0)
    rpc_timeout: float = Field(default=30.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    fallback_session_id: str = Field(default="test_session_123", min_length=1)
    server_name: str = "mcp-bridge"
    server_version: str = __version__
    log_level: LogLevel = "INFO"

    @field_validator("upstream_stream_url", "upstream_rpc_url")
    @classmethod
    def _check_http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"Expected an http(s) URL, got {value!r}")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    @classmethod
    def from_env(cls, env_file: str | Path | None = DEFAULT_ENV_FILE) -> "BridgeConfig":
        """Build the config from environment variables and an optional ``.env`` file.

        Variables already present in the environment take precedence over the file.
        """
        config = cls(_env_file=env_file)  # type: ignore[call-arg]
        logger.debug("Loaded config: %s", config)
        return config
