"""
Pytest configuration and fixtures for relay server tests.
"""

import asyncio
from pathlib import Path
from types import SimpleNamespace
from typing import List, Optional

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from relay_bridge.config import BridgeSettings, TargetConfig
from relay_bridge.frame_converter import float_to_pcm16
from relay_bridge.metrics import RelayMetrics
from relay_bridge.supervisor import EncoderEvent, EncoderEventType, HandleState
from relay_server.app import create_app
from relay_server.config import ServerSettings


class StubSupervisor:
    """Encoder supervisor that records calls instead of spawning FFmpeg.

    Every started encoder reports CONNECTED immediately; stop() reports an
    exit with code 0.
    """

    def __init__(self, settings: BridgeSettings):
        self.settings = settings
        self.started: List[TargetConfig] = []
        self.stopped: List[SimpleNamespace] = []
        self.fed: List[bytes] = []

    async def start(self, target: TargetConfig) -> SimpleNamespace:
        handle = SimpleNamespace(
            target=target,
            pid=1000 + len(self.started),
            is_alive=True,
            state=HandleState.CONNECTED,
            exit_callbacks=[],
            queue=asyncio.Queue(),
        )
        handle.queue.put_nowait(
            EncoderEvent(EncoderEventType.CONNECTED, message="Connected to streaming server")
        )
        self.started.append(target)
        return handle

    async def events(self, handle: SimpleNamespace):
        while True:
            event = await handle.queue.get()
            if event is None:
                return
            yield event

    def on_exit(self, handle: SimpleNamespace, callback) -> None:
        handle.exit_callbacks.append(callback)

    def feed(self, handle: Optional[SimpleNamespace], data: bytes) -> bool:
        self.fed.append(data)
        return True

    def feed_samples(self, handle: Optional[SimpleNamespace], samples) -> bool:
        return self.feed(handle, float_to_pcm16(samples))

    async def stop(self, handle: Optional[SimpleNamespace]) -> None:
        if handle is None or not handle.is_alive:
            return
        handle.is_alive = False
        handle.state = HandleState.TERMINATED
        self.stopped.append(handle)
        handle.queue.put_nowait(
            EncoderEvent(
                EncoderEventType.EXITED, message="Encoder process exited with code 0", code=0
            )
        )
        handle.queue.put_nowait(None)
        for callback in handle.exit_callbacks:
            callback(0)

    def get_status(self, handle: Optional[SimpleNamespace]) -> dict:
        if handle is None:
            return {"state": HandleState.ABSENT.value, "pid": None}
        return {"state": handle.state.value, "pid": handle.pid}


class Upstream:
    """Fake ingest server behind the status-page proxy."""

    def __init__(self):
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/down":
            raise httpx.ConnectError("Connection refused", request=request)
        if request.url.path == "/status-json.xsl":
            return httpx.Response(
                200,
                json={"icestats": {"source": {"listenurl": "http://icecast.test:8000/live"}}},
            )
        return httpx.Response(404, text="Not found")


@pytest.fixture
def bridge_settings() -> BridgeSettings:
    """Relay bridge settings for tests."""
    return BridgeSettings(
        target_host="icecast.test",
        target_port=8000,
        target_mountpoint="/live",
        connect_timeout=0,
    )


@pytest.fixture
def static_dir(tmp_path: Path) -> Path:
    """Built app shell with an index page and one asset."""
    dist = tmp_path / "dist"
    (dist / "assets").mkdir(parents=True)
    (dist / "index.html").write_text("<html><body>relay</body></html>")
    (dist / "assets" / "app.js").write_text("console.log('relay');")
    return dist


@pytest.fixture
def server_settings(static_dir: Path) -> ServerSettings:
    """Relay server settings for tests."""
    return ServerSettings(static_dir=static_dir, proxy_prefix="/api")


@pytest.fixture
def registry() -> CollectorRegistry:
    """Isolated Prometheus registry."""
    return CollectorRegistry()


@pytest.fixture
def supervisors() -> List[StubSupervisor]:
    """Supervisors created by the app, one per connection."""
    return []


@pytest.fixture
def upstream() -> Upstream:
    """Fake ingest server."""
    return Upstream()


@pytest.fixture
def app(server_settings, bridge_settings, registry, supervisors, upstream) -> FastAPI:
    """Relay server wired to stub encoders and a fake upstream."""

    def supervisor_factory() -> StubSupervisor:
        supervisor = StubSupervisor(bridge_settings)
        supervisors.append(supervisor)
        return supervisor

    return create_app(
        settings=server_settings,
        bridge_settings=bridge_settings,
        metrics=RelayMetrics(registry=registry),
        supervisor_factory=supervisor_factory,
        http_transport=httpx.MockTransport(upstream),
    )


@pytest.fixture
def client(app: FastAPI):
    """Test client with the application lifespan running."""
    with TestClient(app) as test_client:
        yield test_client
