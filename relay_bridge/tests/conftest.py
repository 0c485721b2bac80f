"""
Pytest configuration and fixtures for relay bridge tests.
"""

import asyncio
from typing import Callable, List, Optional
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from relay_bridge.command_builder import EncoderCommandBuilder
from relay_bridge.config import BridgeSettings, TargetConfig
from relay_bridge.log_parser import DiagnosticClassifier
from relay_bridge.metrics import RelayMetrics
from relay_bridge.supervisor import EncoderSupervisor


class FakeTransport:
    """Write transport reporting a configurable pending-byte count."""

    def __init__(self):
        self.buffer_size = 0

    def get_write_buffer_size(self) -> int:
        return self.buffer_size


class FakeStdin:
    """Stand-in for asyncio.StreamWriter on the encoder's stdin."""

    def __init__(self, on_close: Optional[Callable[[], None]] = None):
        self.transport = FakeTransport()
        self.written = bytearray()
        self.closed = False
        self.fail_with: Optional[BaseException] = None
        self._on_close = on_close

    def write(self, data: bytes) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.written.extend(data)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True
        if self._on_close:
            self._on_close()


class FakeProcess:
    """
    Stand-in for asyncio.subprocess.Process.

    Must be created inside a running event loop (StreamReader binds to it).
    """

    def __init__(
        self,
        pid: int = 4242,
        exit_on_eof: bool = False,
        exit_on_terminate: bool = True,
    ):
        self.pid = pid
        self.returncode: Optional[int] = None
        self.exit_on_terminate = exit_on_terminate
        self.terminate_calls = 0
        self.kill_calls = 0
        self.stdin = FakeStdin(on_close=(lambda: self.exit(0)) if exit_on_eof else None)
        self.stderr = asyncio.StreamReader()
        self._exited = asyncio.Event()

    def emit(self, text: str) -> None:
        """Write diagnostic output as the encoder would."""
        self.stderr.feed_data(text.encode("utf-8"))

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminate_calls += 1
        if self.exit_on_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-9)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _sent_messages(send: AsyncMock) -> List[dict]:
    """Payloads passed to a session's send coroutine, in order."""
    return [call.args[0] for call in send.await_args_list]


@pytest.fixture
def test_settings() -> BridgeSettings:
    """Create test settings with short shutdown timeouts."""
    return BridgeSettings(
        target_host="icecast.test",
        target_port=8000,
        target_username="source",
        target_password="hackme",
        target_mountpoint="/live",
        ffmpeg_binary="ffmpeg",
        write_buffer_limit=4096,
        connect_timeout=0,
        stop_grace=0.05,
        stop_timeout=0.1,
        kill_timeout=0.1,
    )


@pytest.fixture
def target(test_settings: BridgeSettings) -> TargetConfig:
    """Default ingest target derived from the test settings."""
    return test_settings.default_target()


@pytest.fixture
def registry() -> CollectorRegistry:
    """Isolated Prometheus registry."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> RelayMetrics:
    """Metrics recorder bound to an isolated registry."""
    return RelayMetrics(registry=registry)


@pytest.fixture
def command_builder(test_settings: BridgeSettings) -> EncoderCommandBuilder:
    """Create a command builder for testing."""
    return EncoderCommandBuilder(test_settings)


@pytest.fixture
def classifier() -> DiagnosticClassifier:
    """Create a diagnostic classifier for testing."""
    return DiagnosticClassifier()


@pytest.fixture
def supervisor(test_settings: BridgeSettings, metrics: RelayMetrics) -> EncoderSupervisor:
    """Create a supervisor for testing."""
    return EncoderSupervisor(settings=test_settings, metrics=metrics)


@pytest.fixture
def make_process() -> Callable[..., FakeProcess]:
    """Factory for fake encoder processes (call inside the test's event loop)."""
    return FakeProcess


@pytest.fixture
def wait_until():
    """Coroutine helper polling a predicate until it holds."""
    return _wait_until


@pytest.fixture
def sent_messages():
    """Helper listing the payloads a send mock received."""
    return _sent_messages
