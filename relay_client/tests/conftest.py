"""
Pytest configuration and fixtures for relay client tests.
"""

import asyncio
import json
import wave
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from relay_client.config import ClientConfig


class FakeWebSocket:
    """Stand-in for aiohttp.ClientWebSocketResponse."""

    def __init__(self):
        self.sent: List[dict] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self._incoming: Optional[asyncio.Queue] = None

    @property
    def incoming(self) -> asyncio.Queue:
        # Created lazily so the queue binds to the test's event loop
        if self._incoming is None:
            self._incoming = asyncio.Queue()
        return self._incoming

    async def send_json(self, data: dict) -> None:
        if self.closed:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(data)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = 1000
        self.incoming.put_nowait(None)

    def exception(self):
        return None

    def server_says(self, payload: dict) -> None:
        """Deliver a text message from the relay server."""
        self.incoming.put_nowait(
            SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(payload))
        )

    def drop(self, code: int = 1006) -> None:
        """Simulate the server or network closing the channel."""
        self.closed = True
        self.close_code = code
        self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self.incoming.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def test_config() -> ClientConfig:
    """Client configuration with instant retries."""
    return ClientConfig(
        server_url="ws://relay.test:3000/ws",
        max_attempts=3,
        retry_delay=0.0,
        backoff_multiplier=1.0,
        max_delay=0.0,
        block_frames=4,
    )


@pytest.fixture
def make_websocket() -> Callable[[], FakeWebSocket]:
    """Factory for fake WebSocket connections."""
    return FakeWebSocket


@pytest.fixture
def http_session() -> MagicMock:
    """Fake aiohttp.ClientSession; set ws_connect.side_effect per test."""
    session = MagicMock()
    session.closed = False
    session.ws_connect = AsyncMock()
    session.close = AsyncMock()
    return session


@pytest.fixture
def wait_until():
    """Coroutine helper polling a predicate until it holds."""
    return _wait_until


@pytest.fixture
def write_wav(tmp_path: Path):
    """Write a WAV file from a list of 16-bit integer samples."""

    def _write(
        samples: List[int],
        channels: int = 2,
        sample_rate: int = 8000,
        sample_width: int = 2,
        name: str = "test.wav",
    ) -> Path:
        path = tmp_path / name
        with wave.open(str(path), "wb") as wav:
            wav.setnchannels(channels)
            wav.setsampwidth(sample_width)
            wav.setframerate(sample_rate)
            if sample_width == 2:
                data = b"".join(s.to_bytes(2, "little", signed=True) for s in samples)
            else:
                data = bytes(samples)
            wav.writeframes(data)
        return path

    return _write
