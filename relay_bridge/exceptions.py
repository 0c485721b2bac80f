"""Exceptions raised by the relay bridge."""


class RelayError(Exception):
    """Base class for relay bridge errors."""


class SpawnError(RelayError):
    """The external encoder binary could not be launched."""

    def __init__(self, binary: str, reason: str):
        self.binary = binary
        self.reason = reason
        super().__init__(f"Failed to launch encoder '{binary}': {reason}")


class MalformedMessage(RelayError):
    """An inbound channel message could not be parsed or validated."""
