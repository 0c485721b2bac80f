"""
Relay server application.

Serves the browser app shell, accepts relay channels over WebSocket (one
RelaySession and encoder supervisor per connection), and proxies the ingest
server's status pages so the browser can read them from the same origin.

Run with ``relay-server`` or ``uvicorn relay_server.app:create_app --factory``.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from prometheus_client import CONTENT_TYPE_LATEST

from relay_bridge.config import BridgeSettings, get_settings
from relay_bridge.logging_config import setup_logging
from relay_bridge.metrics import RelayMetrics
from relay_bridge.session import RelaySession
from relay_bridge.supervisor import EncoderSupervisor
from relay_server.config import ServerSettings, get_server_settings
from relay_server.connections import SessionRegistry
from relay_server.error_handler import setup_exception_handlers

logger = logging.getLogger(__name__)

# Headers that describe a single hop and must not be forwarded
HOP_BY_HOP_HEADERS = frozenset(
    [
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    ]
)

SupervisorFactory = Callable[[], EncoderSupervisor]


def create_app(
    settings: Optional[ServerSettings] = None,
    bridge_settings: Optional[BridgeSettings] = None,
    metrics: Optional[RelayMetrics] = None,
    supervisor_factory: Optional[SupervisorFactory] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the relay server application.

    Args:
        settings: Server settings (loaded from the environment if not provided)
        bridge_settings: Relay bridge settings (loaded from the environment if not provided)
        metrics: Metrics recorder (registered on the default registry if not provided)
        supervisor_factory: Creates the encoder supervisor for each new connection
        http_transport: Transport for the status-page proxy client

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_server_settings()
    bridge_settings = bridge_settings or get_settings()
    metrics = metrics or RelayMetrics()

    if supervisor_factory is None:

        def supervisor_factory() -> EncoderSupervisor:
            return EncoderSupervisor(bridge_settings, metrics=metrics)

    proxy_target = (
        settings.proxy_target
        or f"http://{bridge_settings.target_host}:{bridge_settings.target_port}"
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown.

        Args:
            app: FastAPI application instance.
        """
        logger.info("Starting relay server...")
        app.state.http_client = httpx.AsyncClient(
            base_url=proxy_target,
            timeout=settings.proxy_timeout,
            transport=http_transport,
        )
        logger.info(
            f"Relay server ready; default target {bridge_settings.target_host}:"
            f"{bridge_settings.target_port}{bridge_settings.target_mountpoint}, "
            f"proxying {settings.proxy_prefix} to {proxy_target}"
        )

        try:
            yield
        finally:
            logger.info("Shutting down relay server...")
            await app.state.sessions.close_all()
            await app.state.http_client.aclose()

    app = FastAPI(
        title=settings.app_name,
        description="Relays live browser audio to Icecast/SHOUTcast through FFmpeg",
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.bridge_settings = bridge_settings
    app.state.metrics = metrics
    app.state.sessions = SessionRegistry(metrics)
    app.state.supervisor_factory = supervisor_factory

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Setup exception handlers
    setup_exception_handlers(app)

    # Relay channel
    app.add_api_websocket_route("/", relay_channel)
    app.add_api_websocket_route("/ws", relay_channel)

    app.add_api_route("/health", health_check, methods=["GET"])
    app.add_api_route("/sessions", list_sessions, methods=["GET"])
    app.add_api_route("/metrics", prometheus_metrics, methods=["GET"])

    prefix = "/" + settings.proxy_prefix.strip("/")
    app.add_api_route(
        f"{prefix}/{{path:path}}",
        proxy_status_pages,
        methods=["GET", "HEAD", "POST", "PUT", "DELETE", "OPTIONS"],
        include_in_schema=False,
    )

    # Must be last: catches every remaining GET for client-side routing
    app.add_api_route(
        "/{full_path:path}", serve_app_shell, methods=["GET"], include_in_schema=False
    )

    return app


async def relay_channel(websocket: WebSocket):
    """WebSocket endpoint carrying one sender's control and audio messages.

    Messages are processed one at a time in arrival order. When the
    connection goes away the session's encoder is stopped.

    Args:
        websocket: WebSocket connection.
    """
    state = websocket.app.state
    await websocket.accept()

    async def send(payload: dict) -> None:
        await websocket.send_json(payload)

    session = RelaySession(
        send,
        supervisor=state.supervisor_factory(),
        settings=state.bridge_settings,
        metrics=state.metrics,
    )
    state.sessions.register(session)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            data = message.get("text")
            if data is None:
                data = message.get("bytes")
            if data is None:
                continue

            await session.handle_message(data)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for {session.session_id}: {e}", exc_info=True)
    finally:
        await state.sessions.release(session)


async def health_check(request: Request):
    """Health check endpoint.

    Returns:
        dict: Health status.
    """
    settings: ServerSettings = request.app.state.settings
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "sessions": len(request.app.state.sessions),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def list_sessions(request: Request):
    """Status of every open relay session.

    Returns:
        dict: Session count and per-session status.
    """
    sessions: SessionRegistry = request.app.state.sessions
    return {"count": len(sessions), "sessions": sessions.snapshot()}


async def prometheus_metrics(request: Request):
    """Prometheus metrics endpoint."""
    return Response(
        content=request.app.state.metrics.get_metrics(),
        media_type=CONTENT_TYPE_LATEST,
    )


async def proxy_status_pages(path: str, request: Request):
    """Forward a request to the ingest server with the proxy prefix stripped.

    Upstream failures surface as ``httpx.HTTPError`` and are mapped to 502.
    """
    client: httpx.AsyncClient = request.app.state.http_client

    url = "/" + path
    if request.url.query:
        url = f"{url}?{request.url.query}"

    headers = {
        key: value
        for key, value in request.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS
    }

    logger.debug(f"Proxying {request.method} {request.url.path} -> {url}")
    upstream = await client.request(
        request.method, url, headers=headers, content=await request.body()
    )

    # httpx has already decoded the body
    response_headers = {
        key: value
        for key, value in upstream.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() != "content-encoding"
    }
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=response_headers,
    )


async def serve_app_shell(full_path: str, request: Request):
    """Serve a built asset, or index.html for client-side routes."""
    static_dir: Path = request.app.state.settings.static_dir
    if not static_dir.is_dir():
        raise HTTPException(status_code=404, detail="Not found")

    root = static_dir.resolve()
    if full_path:
        candidate = (root / full_path).resolve()
        if candidate.is_file() and root in candidate.parents:
            return FileResponse(candidate)

    index = root / "index.html"
    if index.is_file():
        return FileResponse(index)

    raise HTTPException(status_code=404, detail="Not found")


def main() -> None:
    """Run the relay server with uvicorn."""
    settings = get_server_settings()
    setup_logging(settings.log_level, settings.log_format, settings.log_path)

    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
