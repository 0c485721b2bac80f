"""
Browser Radio Relay Client

Sender side of the relay channel: a WebSocket broadcast client with bounded
reconnection, a WAV file source, and the ``relay-send`` command.
"""

from relay_client.client import BroadcastClient, interleave
from relay_client.config import ClientConfig
from relay_client.reconnect import ReconnectionController, ReconnectState
from relay_client.sources import WavFileSource

__all__ = [
    "BroadcastClient",
    "ClientConfig",
    "ReconnectState",
    "ReconnectionController",
    "WavFileSource",
    "interleave",
]
