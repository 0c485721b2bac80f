"""
Encoder process supervisor.

Owns the lifecycle of one external FFmpeg encoder per session: spawning it,
feeding it PCM under backpressure, classifying its diagnostic output into
status events, reporting its exit exactly once, and tearing it down with
escalating signals.
"""

import asyncio
import codecs
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

import psutil

from relay_bridge.command_builder import EncoderCommandBuilder, redact
from relay_bridge.config import BridgeSettings, TargetConfig
from relay_bridge.exceptions import SpawnError
from relay_bridge.frame_converter import BYTES_PER_SAMPLE, float_to_pcm16
from relay_bridge.log_parser import DiagnosticClassifier, DiagnosticKind
from relay_bridge.metrics import RelayMetrics

logger = logging.getLogger(__name__)

# FFmpeg rewrites its progress line with a bare carriage return
_LINE_SPLIT = re.compile(r"\r\n|\r|\n")

ExitCallback = Callable[[Optional[int]], None]


class HandleState(str, Enum):
    """Encoder handle states."""

    ABSENT = "absent"
    STARTING = "starting"
    CONNECTED = "connected"
    ERROR = "error"
    TERMINATED = "terminated"


class EncoderEventType(str, Enum):
    """Status events produced by a running encoder."""

    CONNECTED = "connected"
    ERROR = "error"
    EXITED = "exited"


@dataclass(frozen=True)
class EncoderEvent:
    """A status transition reported by the supervisor."""

    type: EncoderEventType
    message: Optional[str] = None
    code: Optional[int] = None


@dataclass(eq=False)
class EncoderHandle:
    """A live (or finished) encoder process bound to one session."""

    process: asyncio.subprocess.Process
    target: TargetConfig
    started_at: datetime
    state: HandleState = HandleState.STARTING
    classifier: DiagnosticClassifier = field(default_factory=DiagnosticClassifier)
    exit_code: Optional[int] = None
    frames_fed: int = 0
    frames_dropped: int = 0
    stop_requested: bool = False
    _events: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    _exit_callbacks: List[ExitCallback] = field(default_factory=list, repr=False)
    _exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _connected_reported: bool = False
    _monitor_task: Optional[asyncio.Task] = field(default=None, repr=False)
    _stop_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        """True until the process has been observed to exit."""
        return self.state != HandleState.TERMINATED

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()


class EncoderSupervisor:
    """
    Supervises external encoder processes.

    Features:
    - Non-blocking spawn; readiness is reported through events()
    - Drop-on-backpressure stdin feeding (never buffers unboundedly)
    - Diagnostic stream classification via DiagnosticClassifier
    - Exactly-once exit notification via on_exit() and an EXITED event
    - Idempotent stop: close stdin, grace period, SIGTERM, SIGKILL
    """

    STDERR_CHUNK_SIZE = 4096

    def __init__(
        self,
        settings: Optional[BridgeSettings] = None,
        command_builder: Optional[EncoderCommandBuilder] = None,
        metrics: Optional[RelayMetrics] = None,
    ):
        """
        Initialize supervisor.

        Args:
            settings: Bridge settings (loaded from the environment if not provided)
            command_builder: Command builder instance (creates default if not provided)
            metrics: Optional metrics recorder
        """
        if settings is None:
            from relay_bridge.config import get_settings

            settings = get_settings()

        self.settings = settings

        if command_builder is None:
            command_builder = EncoderCommandBuilder(settings)

        self.command_builder = command_builder
        self.metrics = metrics

    async def start(self, target: TargetConfig) -> EncoderHandle:
        """
        Spawn an encoder process for ``target``.

        Returns as soon as the OS process exists; connection state is reported
        asynchronously through events().

        Args:
            target: Ingest destination and encoding profile

        Returns:
            EncoderHandle for the new process

        Raises:
            SpawnError: If the encoder binary cannot be launched
        """
        cmd = self.command_builder.build_command(target)

        logger.info(f"Starting encoder for {target.host}:{target.port}{target.mountpoint}")
        logger.debug(f"Command: {redact(' '.join(cmd))}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            # ValueError: an argument the OS cannot pass (embedded NUL)
            if self.metrics:
                self.metrics.record_spawn_failure()
            logger.error(f"Failed to launch encoder '{cmd[0]}': {e}")
            raise SpawnError(cmd[0], getattr(e, "strerror", None) or str(e)) from e

        handle = EncoderHandle(process=process, target=target, started_at=datetime.now())
        handle._monitor_task = asyncio.create_task(
            self._monitor(handle), name=f"encoder-monitor-{process.pid}"
        )

        if self.metrics:
            self.metrics.record_encoder_start()

        logger.info(f"Encoder process spawned (PID: {process.pid})")
        return handle

    def feed(self, handle: Optional[EncoderHandle], data: bytes) -> bool:
        """
        Write PCM bytes to the encoder's stdin.

        Blocks are dropped, never queued, when the encoder is gone, stopping,
        or its pipe already holds more than ``write_buffer_limit`` bytes.

        Args:
            handle: Target encoder (None is accepted and ignored)
            data: PCM bytes

        Returns:
            True if the bytes were handed to the pipe, False if dropped
        """
        if handle is None:
            return False

        reason = self._drop_reason(handle, len(data))
        if reason:
            return self._drop(handle, reason)
        return self._write(handle, data)

    def feed_samples(self, handle: Optional[EncoderHandle], samples: Sequence[float]) -> bool:
        """
        Convert float samples to PCM and write them, like feed().

        The pipe is checked before converting, so dropped blocks cost nothing.
        """
        if handle is None:
            return False

        reason = self._drop_reason(handle, len(samples) * BYTES_PER_SAMPLE)
        if reason:
            return self._drop(handle, reason)
        return self._write(handle, float_to_pcm16(samples))

    def _drop_reason(self, handle: EncoderHandle, size: int) -> Optional[str]:
        if not handle.is_alive or handle.stop_requested:
            return "no_encoder"

        stdin = handle.process.stdin
        if stdin is None or stdin.is_closing():
            return "no_encoder"

        pending = stdin.transport.get_write_buffer_size()
        if pending + size > self.settings.write_buffer_limit:
            return "backpressure"
        return None

    def _write(self, handle: EncoderHandle, data: bytes) -> bool:
        try:
            handle.process.stdin.write(data)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug(f"Encoder {handle.pid} stdin not writable: {e}")
            return self._drop(handle, "backpressure")

        handle.frames_fed += 1
        if self.metrics:
            self.metrics.record_frame_fed()
        return True

    def _drop(self, handle: EncoderHandle, reason: str) -> bool:
        handle.frames_dropped += 1
        if self.metrics:
            self.metrics.record_frame_dropped(reason)

        if handle.frames_dropped == 1 or handle.frames_dropped % 500 == 0:
            logger.warning(
                f"Dropping audio for encoder {handle.pid} ({reason}), "
                f"{handle.frames_dropped} blocks dropped so far"
            )
        return False

    async def events(self, handle: EncoderHandle) -> AsyncIterator[EncoderEvent]:
        """
        Iterate over status events of ``handle``.

        Yields at most one CONNECTED event, any number of ERROR events, and
        exactly one final EXITED event. Intended for a single consumer.
        """
        while True:
            event = await handle._events.get()
            if event is None:
                # Keep the sentinel so later iterations also terminate
                handle._events.put_nowait(None)
                return
            yield event

    def on_exit(self, handle: EncoderHandle, callback: ExitCallback) -> None:
        """
        Register a callback invoked exactly once with the exit code.

        If the process has already exited the callback runs immediately.
        """
        if handle.state == HandleState.TERMINATED:
            self._invoke_exit_callback(handle, callback)
        else:
            handle._exit_callbacks.append(callback)

    async def stop(self, handle: Optional[EncoderHandle]) -> None:
        """
        Stop an encoder: close stdin, let it flush, then SIGTERM and SIGKILL.

        Idempotent and safe to call concurrently or after the process has
        already exited; never raises for a process that is gone.
        """
        if handle is None:
            return

        handle.stop_requested = True
        if handle._stop_task is None:
            handle._stop_task = asyncio.create_task(
                self._shutdown(handle), name=f"encoder-stop-{handle.pid}"
            )

        try:
            await asyncio.shield(handle._stop_task)
        except Exception as e:
            logger.error(f"Error stopping encoder {handle.pid}: {e}", exc_info=True)

    async def _shutdown(self, handle: EncoderHandle) -> None:
        """Escalating shutdown sequence for one process."""
        process = handle.process

        self._close_stdin(handle)

        if handle.state == HandleState.TERMINATED:
            logger.debug(f"Encoder {handle.pid} already terminated")
            return

        logger.info(f"Stopping encoder (PID: {handle.pid})")

        # EOF on stdin lets the encoder flush and exit on its own
        if await self._wait_exited(handle, self.settings.stop_grace):
            return

        logger.debug(f"Gracefully terminating encoder {handle.pid}")
        self._send_signal(process, "terminate")
        if await self._wait_exited(handle, self.settings.stop_timeout):
            return

        logger.warning(f"Encoder {handle.pid} did not terminate gracefully, force killing")
        self._send_signal(process, "kill")
        if not await self._wait_exited(handle, self.settings.kill_timeout):
            logger.error(f"Encoder {handle.pid} did not exit after SIGKILL")

    def _close_stdin(self, handle: EncoderHandle) -> None:
        stdin = handle.process.stdin
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.close()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug(f"Error closing encoder {handle.pid} stdin: {e}")

    @staticmethod
    def _send_signal(process: asyncio.subprocess.Process, method: str) -> None:
        try:
            getattr(process, method)()
        except ProcessLookupError:
            # Exited between the state check and the signal
            pass

    @staticmethod
    async def _wait_exited(handle: EncoderHandle, timeout: float) -> bool:
        if handle._exited.is_set():
            return True
        try:
            await asyncio.wait_for(handle._exited.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _monitor(self, handle: EncoderHandle) -> None:
        """Drain diagnostics until EOF, then wait for and report the exit."""
        try:
            await self._drain_diagnostics(handle)
        except (OSError, ValueError) as e:
            logger.error(f"Error reading encoder {handle.pid} diagnostics: {e}")

        code = await handle.process.wait()
        self._mark_exited(handle, code)

    async def _drain_diagnostics(self, handle: EncoderHandle) -> None:
        stderr = handle.process.stderr
        if stderr is None:
            return

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""

        while True:
            chunk = await stderr.read(self.STDERR_CHUNK_SIZE)
            if not chunk:
                break

            pending += decoder.decode(chunk)
            *lines, pending = _LINE_SPLIT.split(pending)
            for line in lines:
                self._handle_diagnostic_line(handle, line)

        pending += decoder.decode(b"", final=True)
        if pending:
            self._handle_diagnostic_line(handle, pending)

    def _handle_diagnostic_line(self, handle: EncoderHandle, line: str) -> None:
        if not line.strip():
            return

        logger.debug(f"Encoder {handle.pid}: {redact(line)}")

        diagnostic = handle.classifier.classify(line)
        if diagnostic is None or handle.state == HandleState.TERMINATED:
            return

        if diagnostic.kind == DiagnosticKind.CONNECTED:
            if handle._connected_reported:
                return
            handle._connected_reported = True
            handle.state = HandleState.CONNECTED
            logger.info(f"Encoder {handle.pid} connected to {handle.target.host}")
            handle._events.put_nowait(
                EncoderEvent(EncoderEventType.CONNECTED, message="Connected to streaming server")
            )
            return

        message = redact(diagnostic.message)
        if handle.state == HandleState.STARTING:
            handle.state = HandleState.ERROR
        logger.warning(f"Encoder {handle.pid} {diagnostic.error_type.value}: {message}")
        handle._events.put_nowait(
            EncoderEvent(EncoderEventType.ERROR, message=f"Encoder error: {message}")
        )

    def _mark_exited(self, handle: EncoderHandle, code: Optional[int]) -> None:
        if handle.state == HandleState.TERMINATED:
            return

        handle.state = HandleState.TERMINATED
        handle.exit_code = code

        if handle.stop_requested:
            logger.info(f"Encoder {handle.pid} stopped (exit code: {code})")
        else:
            logger.error(f"Encoder {handle.pid} exited unexpectedly (exit code: {code})")

        if self.metrics:
            self.metrics.record_encoder_exit(code)

        handle._events.put_nowait(
            EncoderEvent(
                EncoderEventType.EXITED,
                message=f"Encoder process exited with code {code}",
                code=code,
            )
        )
        handle._events.put_nowait(None)
        handle._exited.set()

        callbacks, handle._exit_callbacks = handle._exit_callbacks, []
        for callback in callbacks:
            self._invoke_exit_callback(handle, callback)

    @staticmethod
    def _invoke_exit_callback(handle: EncoderHandle, callback: ExitCallback) -> None:
        try:
            callback(handle.exit_code)
        except Exception as e:
            logger.error(f"Exit callback for encoder {handle.pid} failed: {e}", exc_info=True)

    def get_status(self, handle: Optional[EncoderHandle]) -> Dict:
        """
        Get current status of an encoder process.

        Returns:
            Dictionary with process status information
        """
        if handle is None:
            return {
                "state": HandleState.ABSENT.value,
                "pid": None,
                "uptime_seconds": 0,
                "exit_code": None,
            }

        status = {
            "state": handle.state.value,
            "pid": handle.pid,
            "uptime_seconds": handle.uptime_seconds,
            "exit_code": handle.exit_code,
            "frames_fed": handle.frames_fed,
            "frames_dropped": handle.frames_dropped,
            "metrics": handle.classifier.get_metrics_summary(),
        }

        if handle.is_alive:
            try:
                proc = psutil.Process(handle.pid)
                status["cpu_percent"] = proc.cpu_percent(interval=None)
                status["memory_mb"] = proc.memory_info().rss / 1024 / 1024
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

        return status
