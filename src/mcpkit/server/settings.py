from datetime import timedelta
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Server and transport settings.

    All settings can be configured via environment variables with the prefix MCPKIT_.
    For example, MCPKIT_PORT=9000 will set port=9000.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCPKIT_",
        env_file=".env",
        extra="ignore",
    )

    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # HTTP settings
    host: str = "127.0.0.1"
    port: int = 8000
    max_body_bytes: int | None = 1_000_000

    # Session settings
    session_ttl: float = timedelta(hours=24).total_seconds()
    """Maximum session lifetime in seconds."""

    # SSE / streamable settings
    sse_max_clients: int = 100
    sse_send_buffer: int = 256
    sse_retry_ms: int | None = None
    json_response: bool = False
    session_id: str | None = None
    """When set, streamable POST and DELETE require a matching X-Session-ID header."""

    # Middleware settings
    rate_limit_rps: float | None = None
    rate_limit_burst: int = 10
    request_timeout: float | None = None
    cors_origins: list[str] = []
    auth_tokens: list[str] = []

    shutdown_timeout: float = 5.0

    @property
    def session_ttl_delta(self) -> timedelta:
        return timedelta(seconds=self.session_ttl)
