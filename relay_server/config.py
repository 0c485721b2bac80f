"""Configuration management for the relay server."""

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

from relay_bridge import __version__


class ServerSettings(BaseSettings):
    """Relay server settings loaded from environment variables."""

    # Application
    app_name: str = "Browser Radio Relay"
    app_version: str = __version__
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)

    # Static app shell
    static_dir: Path = Path("dist")

    # Reverse proxy to the ingest server's status pages
    proxy_prefix: str = "/api"
    proxy_target: Optional[str] = Field(
        default=None,
        description="Upstream base URL; derived from the default ingest target if unset",
    )
    proxy_timeout: float = Field(default=10.0, gt=0)

    # CORS
    cors_origins: List[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"
    log_path: Optional[str] = None

    model_config = ConfigDict(
        env_prefix="RELAY_SERVER_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def get_server_settings() -> ServerSettings:
    """
    Get relay server settings from environment variables.

    Returns:
        ServerSettings: Configuration instance
    """
    return ServerSettings()
