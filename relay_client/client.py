"""
Broadcast client.

Sender side of the relay channel: opens the WebSocket to the relay server,
asks it to start routing, streams audio blocks, tracks the status the server
reports, and hands channel loss to the ReconnectionController.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp

from relay_client.config import ClientConfig
from relay_client.reconnect import ReconnectionController, ReconnectState

logger = logging.getLogger(__name__)

StatusCallback = Callable[[Dict[str, Any]], None]

# Errors raised when writing to a channel that is already going away
_SEND_ERRORS = (ConnectionResetError, aiohttp.ClientError, RuntimeError)


def interleave(channels: Sequence[Sequence[float]]) -> List[float]:
    """Interleave per-channel sample arrays into one block (L R L R ...).

    Channels of unequal length are truncated to the shortest.
    """
    if len(channels) == 1:
        return list(channels[0])
    return [sample for frame in zip(*channels) for sample in frame]


class BroadcastClient:
    """Streams audio blocks to a relay server with automatic reconnection."""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        target: Optional[Dict[str, Any]] = None,
        on_status: Optional[StatusCallback] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize broadcast client.

        Args:
            config: Client configuration
            target: Target overrides sent with every ``connect`` message
            on_status: Called with every status/error message from the server
            session: HTTP session to use (created and owned if not provided)
        """
        if config is None:
            from relay_client.config import get_config

            config = get_config()

        self.config = config
        self.target: Dict[str, Any] = dict(target or {})
        self._on_status = on_status

        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task] = None

        self._streaming = False
        self._server_status = "idle"
        self.blocks_sent = 0

        self.reconnect = ReconnectionController(self._open_channel, config)
        self.reconnect.set_exhausted_callback(self._on_reconnect_exhausted)

    @property
    def is_streaming(self) -> bool:
        """True while the user intends to broadcast."""
        return self._streaming

    @property
    def is_channel_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def server_status(self) -> str:
        """Last status reported by the relay server."""
        return self._server_status

    async def start(self, target: Optional[Dict[str, Any]] = None) -> None:
        """Open the channel and ask the server to start routing.

        A failed first attempt is handed to the reconnection controller
        rather than raised.

        Args:
            target: New target overrides (the previous ones are kept if None)
        """
        if target is not None:
            self.target = dict(target)

        self._streaming = True
        self.reconnect.start()

        try:
            await self._open_channel()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Could not reach relay server at {self.config.server_url}: {e}")
            self.reconnect.notify_lost(str(e))

    async def send_block(self, samples: Sequence[float], sample_rate: Optional[int] = None) -> bool:
        """Send one block of interleaved float samples.

        Dropped when the channel is not open.

        Returns:
            True if the block was handed to the channel
        """
        ws = self._ws
        if not self._streaming or ws is None or ws.closed:
            return False

        payload: Dict[str, Any] = {"type": "audio", "buffer": list(samples)}
        if sample_rate:
            payload["sampleRate"] = sample_rate

        try:
            await ws.send_json(payload)
        except _SEND_ERRORS as e:
            logger.debug(f"Dropping audio block, channel not writable: {e}")
            return False

        self.blocks_sent += 1
        return True

    async def stop(self) -> None:
        """Stop broadcasting: cancel retries, end routing, close the channel."""
        self._streaming = False
        await self.reconnect.stop()

        ws = self._ws
        if ws is not None and not ws.closed:
            try:
                await ws.send_json({"type": "disconnect"})
            except _SEND_ERRORS as e:
                logger.debug(f"Could not send disconnect: {e}")

        await self._close_channel()

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        logger.info(f"Broadcast stopped ({self.blocks_sent} blocks sent)")

    async def _open_channel(self) -> None:
        """Open a fresh channel and send ``connect``; raises on failure."""
        await self._close_channel()

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        logger.info(f"Connecting to relay server at {self.config.server_url}")
        ws = await asyncio.wait_for(
            self._session.ws_connect(self.config.server_url, heartbeat=self.config.heartbeat),
            timeout=self.config.connect_timeout,
        )

        message: Dict[str, Any] = {"type": "connect"}
        if self.target:
            message["config"] = self.target

        try:
            await ws.send_json(message)
        except _SEND_ERRORS:
            await ws.close()
            raise

        self._ws = ws
        self._server_status = "connecting"
        self._receive_task = asyncio.create_task(self._receive_loop(ws), name="relay-receive")

    async def _close_channel(self) -> None:
        ws, self._ws = self._ws, None
        task, self._receive_task = self._receive_task, None

        if ws is not None and not ws.closed:
            await ws.close()

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Track server messages until the channel closes."""
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._handle_server_message(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"Relay channel error: {ws.exception()}")
                break

        if ws is self._ws:
            # Closed by the server or the network, not by us
            self._ws = None
            self._server_status = "disconnected"
            if self._streaming:
                self.reconnect.notify_lost(f"channel closed (code {ws.close_code})")

    def _handle_server_message(self, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from relay server: {data[:100]}")
            return

        message_type = message.get("type")
        if message_type == "status":
            status = message.get("status", "")
            self._server_status = status
            logger.info(f"Server status: {status} {message.get('message', '')}".rstrip())

            if status == "connected":
                self.reconnect.notify_connected()
            elif status == "disconnected" and self._streaming:
                self.reconnect.notify_lost(f"encoder exited with code {message.get('code')}")

        elif message_type == "error":
            logger.warning(f"Server error: {message.get('message')}")

        self._emit_status(message)

    async def _on_reconnect_exhausted(self, attempts: int) -> None:
        logger.error(f"Giving up on relay server after {attempts} attempts")
        self._streaming = False
        self._server_status = ReconnectState.EXHAUSTED.value
        self._emit_status(
            {"type": "error", "message": f"Reconnection failed after {attempts} attempts"}
        )

    def _emit_status(self, message: Dict[str, Any]) -> None:
        if not self._on_status:
            return
        try:
            self._on_status(message)
        except Exception as e:
            logger.error(f"Status callback failed: {e}", exc_info=True)
