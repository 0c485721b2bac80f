"""
Relay session manager.

Binds one message channel (a WebSocket connection) to at most one encoder
handle. Inbound ``connect``/``audio``/``disconnect`` messages are translated
into supervisor calls; supervisor transitions are sent back as ``status`` and
``error`` messages.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from relay_bridge.config import BridgeSettings, TargetConfig
from relay_bridge.exceptions import MalformedMessage, SpawnError
from relay_bridge.metrics import RelayMetrics
from relay_bridge.supervisor import (
    EncoderEventType,
    EncoderHandle,
    EncoderSupervisor,
    HandleState,
)

logger = logging.getLogger(__name__)

SendFunc = Callable[[Dict[str, Any]], Awaitable[None]]


class ConnectionStatus(str, Enum):
    """Session connection status as reported to the sender."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


_STATUS_BY_HANDLE_STATE = {
    HandleState.STARTING: ConnectionStatus.CONNECTING,
    HandleState.CONNECTED: ConnectionStatus.CONNECTED,
    HandleState.ERROR: ConnectionStatus.ERROR,
    HandleState.TERMINATED: ConnectionStatus.DISCONNECTED,
}


# Inbound message models
class ConnectMessage(BaseModel):
    """Begin routing audio, optionally overriding the default target."""

    type: Literal["connect"]
    config: Optional[Dict[str, Any]] = None


class AudioMessage(BaseModel):
    """One block of interleaved float samples."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["audio"]
    buffer: List[float]
    sample_rate: Optional[int] = Field(default=None, alias="sampleRate")
    channels: Optional[int] = None


class DisconnectMessage(BaseModel):
    """Stop routing audio."""

    type: Literal["disconnect"]


class PingMessage(BaseModel):
    """Keep-alive request."""

    type: Literal["ping"]


InboundMessage = Annotated[
    Union[ConnectMessage, AudioMessage, DisconnectMessage, PingMessage],
    Field(discriminator="type"),
]

_INBOUND_ADAPTER: TypeAdapter = TypeAdapter(InboundMessage)


def _describe_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first['msg']}" if location else first["msg"]


def parse_message(raw: Union[str, bytes, Dict[str, Any]]):
    """
    Parse and validate one inbound channel message.

    Args:
        raw: JSON text/bytes or an already-decoded dict

    Returns:
        ConnectMessage, AudioMessage, DisconnectMessage or PingMessage

    Raises:
        MalformedMessage: If the payload is not valid JSON, has an unknown
            ``type``, or fails field validation
    """
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            return _INBOUND_ADAPTER.validate_json(raw)
        return _INBOUND_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise MalformedMessage(_describe_validation_error(e)) from e


class RelaySession:
    """
    One message-channel connection and the encoder it drives.

    Messages are handled strictly in arrival order by awaiting
    handle_message() from the channel's receive loop. Status is derived only
    from supervisor transitions of the current handle; events of a handle
    that has been replaced are never forwarded.
    """

    def __init__(
        self,
        send: SendFunc,
        supervisor: Optional[EncoderSupervisor] = None,
        defaults: Optional[TargetConfig] = None,
        settings: Optional[BridgeSettings] = None,
        metrics: Optional[RelayMetrics] = None,
        session_id: Optional[str] = None,
    ):
        """
        Initialize session.

        Args:
            send: Coroutine delivering one JSON-serialisable message to the sender
            supervisor: Encoder supervisor owned by this session
            defaults: Default ingest target (from settings if not provided)
            settings: Bridge settings (taken from the supervisor if not provided)
            metrics: Optional metrics recorder
            session_id: Identifier used in logs (generated if not provided)
        """
        if settings is None:
            if supervisor is not None:
                settings = supervisor.settings
            else:
                from relay_bridge.config import get_settings

                settings = get_settings()

        self.settings = settings
        self.metrics = metrics
        self.supervisor = supervisor or EncoderSupervisor(settings, metrics=metrics)
        self.defaults = defaults or settings.default_target()
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self.created_at = datetime.now()

        self._send = send
        self._handle: Optional[EncoderHandle] = None
        self._target: Optional[TargetConfig] = None
        self._status = ConnectionStatus.IDLE
        self._forward_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._rate_mismatch_logged = False
        self._channels_mismatch_logged = False
        self._closed = False

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def handle(self) -> Optional[EncoderHandle]:
        return self._handle

    @property
    def target(self) -> Optional[TargetConfig]:
        return self._target

    @property
    def closed(self) -> bool:
        return self._closed

    async def handle_message(self, raw: Union[str, bytes, Dict[str, Any]]) -> None:
        """
        Dispatch one inbound message.

        Malformed messages produce a single error message to the sender and
        are otherwise ignored.
        """
        if self._closed:
            return

        try:
            message = parse_message(raw)
        except MalformedMessage as e:
            logger.warning(f"[{self.session_id}] Malformed message: {e}")
            if self.metrics:
                self.metrics.record_malformed_message()
            await self._emit_error(f"Failed to process message: {e}")
            return

        if isinstance(message, AudioMessage):
            self.feed_audio(message.buffer, message.sample_rate, message.channels)
        elif isinstance(message, ConnectMessage):
            await self.begin_routing(message.config)
        elif isinstance(message, DisconnectMessage):
            await self.end_routing()
        elif isinstance(message, PingMessage):
            await self._emit({"type": "pong"})

    async def begin_routing(self, overrides: Optional[Dict[str, Any]] = None) -> None:
        """
        Start a fresh encoder for this session.

        Any existing encoder is stopped first, so repeated ``connect``
        messages never leave more than one live process per session.

        Args:
            overrides: Partial target configuration from the sender
        """
        try:
            target = self.defaults.merge(overrides)
        except ValidationError as e:
            logger.warning(f"[{self.session_id}] Invalid target configuration: {e}")
            if self.metrics:
                self.metrics.record_malformed_message()
            await self._emit_error(
                f"Failed to process message: invalid config ({_describe_validation_error(e)})"
            )
            return

        await self._retire_handle()

        logger.info(
            f"[{self.session_id}] Routing to {target.host}:{target.port}{target.mountpoint} "
            f"({target.sample_rate} Hz, {target.channels} ch, {target.bitrate}k)"
        )

        try:
            handle = await self.supervisor.start(target)
        except SpawnError as e:
            self._status = ConnectionStatus.ERROR
            await self._emit_error(f"Connection error: {e}")
            return

        if self._closed:
            # Channel went away while the process was being spawned
            await self.supervisor.stop(handle)
            return

        self._handle = handle
        self._target = target
        self._rate_mismatch_logged = False
        self._channels_mismatch_logged = False
        self.supervisor.on_exit(handle, partial(self._on_handle_exit, handle))

        await self._set_status(
            ConnectionStatus.CONNECTING,
            message=f"Connecting to {target.host}:{target.port}{target.mountpoint}",
        )

        self._forward_task = asyncio.create_task(
            self._forward_events(handle), name=f"session-{self.session_id}-events"
        )
        if self.settings.connect_timeout > 0:
            self._watchdog_task = asyncio.create_task(
                self._connect_watchdog(handle, self.settings.connect_timeout),
                name=f"session-{self.session_id}-watchdog",
            )

    def feed_audio(
        self,
        samples: List[float],
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
    ) -> bool:
        """
        Convert one sample block and feed it to the active encoder.

        Silently ignored when no encoder is running. A block whose rate or
        channel count differs from the encoder input is still fed as is.

        Returns:
            True if the block reached the encoder's pipe
        """
        handle = self._handle
        if handle is None or not handle.is_alive:
            return False

        if (
            sample_rate
            and sample_rate != handle.target.sample_rate
            and not self._rate_mismatch_logged
        ):
            self._rate_mismatch_logged = True
            logger.warning(
                f"[{self.session_id}] Sender sample rate {sample_rate} Hz differs from "
                f"encoder input {handle.target.sample_rate} Hz; audio is not resampled"
            )

        if (
            channels
            and channels != handle.target.channels
            and not self._channels_mismatch_logged
        ):
            self._channels_mismatch_logged = True
            logger.warning(
                f"[{self.session_id}] Sender has {channels} channel(s), encoder input "
                f"expects {handle.target.channels}; audio is not remixed"
            )

        return self.supervisor.feed_samples(handle, samples)

    async def end_routing(self) -> None:
        """Stop the active encoder, if any. The exit is reported as ``disconnected``."""
        handle = self._handle
        if handle is None:
            logger.debug(f"[{self.session_id}] No active encoder to stop")
            return

        self._cancel_watchdog()
        await self.supervisor.stop(handle)

    async def close(self) -> None:
        """Tear down after the channel closed; stops any encoder without messaging."""
        if self._closed:
            return

        self._closed = True
        logger.info(f"[{self.session_id}] Channel closed, releasing session")
        await self._retire_handle()

    async def _retire_handle(self) -> None:
        """Detach and stop the current handle; its events are no longer forwarded."""
        self._cancel_watchdog()

        forward_task, self._forward_task = self._forward_task, None
        if forward_task and not forward_task.done():
            forward_task.cancel()
            try:
                await forward_task
            except asyncio.CancelledError:
                pass

        handle, self._handle = self._handle, None
        if handle is not None:
            if handle.is_alive:
                logger.info(f"[{self.session_id}] Stopping previous encoder (PID: {handle.pid})")
            await self.supervisor.stop(handle)

    def _on_handle_exit(self, handle: EncoderHandle, code: Optional[int]) -> None:
        if self._handle is handle:
            self._handle = None

    async def _forward_events(self, handle: EncoderHandle) -> None:
        async for event in self.supervisor.events(handle):
            if event.type == EncoderEventType.CONNECTED:
                self._cancel_watchdog()
                await self._set_status(ConnectionStatus.CONNECTED, message=event.message)
            elif event.type == EncoderEventType.ERROR:
                self._status = _STATUS_BY_HANDLE_STATE.get(handle.state, self._status)
                await self._emit_error(event.message)
            elif event.type == EncoderEventType.EXITED:
                self._cancel_watchdog()
                await self._set_status(
                    ConnectionStatus.DISCONNECTED, code=event.code, message=event.message
                )

    async def _connect_watchdog(self, handle: EncoderHandle, timeout: float) -> None:
        await asyncio.sleep(timeout)

        if handle is not self._handle or handle.state in (
            HandleState.CONNECTED,
            HandleState.TERMINATED,
        ):
            return

        logger.warning(
            f"[{self.session_id}] Encoder {handle.pid} did not connect within {timeout:g}s"
        )
        await self._emit_error(f"Encoder did not report a connection within {timeout:g}s")
        await self.supervisor.stop(handle)

    def _cancel_watchdog(self) -> None:
        watchdog, self._watchdog_task = self._watchdog_task, None
        if watchdog and not watchdog.done() and watchdog is not asyncio.current_task():
            watchdog.cancel()

    async def _set_status(self, status: ConnectionStatus, **extra: Any) -> None:
        self._status = status
        payload: Dict[str, Any] = {"type": "status", "status": status.value}
        payload.update({key: value for key, value in extra.items() if value is not None})
        await self._emit(payload)

    async def _emit_error(self, message: str) -> None:
        await self._emit({"type": "error", "message": message})

    async def _emit(self, payload: Dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            await self._send(payload)
        except Exception as e:
            logger.warning(f"[{self.session_id}] Failed to send {payload.get('type')}: {e}")

    def get_status(self) -> Dict[str, Any]:
        """
        Get current status of this session.

        Returns:
            Dictionary with session and encoder status; credentials omitted
        """
        target = self._target
        return {
            "session_id": self.session_id,
            "status": self._status.value,
            "created_at": self.created_at.isoformat(),
            "target": (
                {
                    "host": target.host,
                    "port": target.port,
                    "mountpoint": target.mountpoint,
                    "format": target.output_format.value,
                    "bitrate": target.bitrate,
                }
                if target
                else None
            ),
            "encoder": self.supervisor.get_status(self._handle),
        }
