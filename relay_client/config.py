"""Configuration for the broadcast client."""

import os
from dataclasses import dataclass


@dataclass
class ClientConfig:
    """Configuration for the sender-side relay client."""

    # Relay channel
    server_url: str = "ws://localhost:3000/ws"
    heartbeat: float = 20.0  # seconds between WebSocket pings
    connect_timeout: float = 10.0  # seconds to open the channel

    # Reconnection
    max_attempts: int = 5
    retry_delay: float = 2.0  # seconds before the first retry
    backoff_multiplier: float = 1.0  # 1.0 keeps the delay fixed
    max_delay: float = 30.0  # seconds

    # Audio
    block_frames: int = 2048  # frames per audio message

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Create configuration from environment variables.

        Returns:
            ClientConfig instance
        """
        return cls(
            server_url=os.getenv("RELAY_CLIENT_SERVER_URL", "ws://localhost:3000/ws"),
            heartbeat=float(os.getenv("RELAY_CLIENT_HEARTBEAT", "20.0")),
            connect_timeout=float(os.getenv("RELAY_CLIENT_CONNECT_TIMEOUT", "10.0")),
            max_attempts=int(os.getenv("RELAY_CLIENT_MAX_ATTEMPTS", "5")),
            retry_delay=float(os.getenv("RELAY_CLIENT_RETRY_DELAY", "2.0")),
            backoff_multiplier=float(os.getenv("RELAY_CLIENT_BACKOFF_MULTIPLIER", "1.0")),
            max_delay=float(os.getenv("RELAY_CLIENT_MAX_DELAY", "30.0")),
            block_frames=int(os.getenv("RELAY_CLIENT_BLOCK_FRAMES", "2048")),
            log_level=os.getenv("RELAY_CLIENT_LOG_LEVEL", "INFO"),
        )

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.server_url.startswith(("ws://", "wss://", "http://", "https://")):
            raise ValueError(f"Invalid server_url: {self.server_url}")

        if self.max_attempts < 0:
            raise ValueError(f"Invalid max_attempts: {self.max_attempts}")

        if self.retry_delay < 0:
            raise ValueError(f"Invalid retry_delay: {self.retry_delay}")

        if self.backoff_multiplier < 1.0:
            raise ValueError(f"Invalid backoff_multiplier: {self.backoff_multiplier}")

        if self.max_delay < self.retry_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must not be below retry_delay ({self.retry_delay})"
            )

        if self.block_frames <= 0:
            raise ValueError(f"Invalid block_frames: {self.block_frames}")


def get_config() -> ClientConfig:
    """Get client configuration from environment.

    Returns:
        ClientConfig instance
    """
    config = ClientConfig.from_env()
    config.validate()
    return config
