"""Reconnection logic for the sender's relay channel."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from relay_client.config import ClientConfig

logger = logging.getLogger(__name__)

ConnectFunc = Callable[[], Awaitable[None]]
SleepFunc = Callable[[float], Awaitable[None]]


class ReconnectState(str, Enum):
    """Reconnection controller states."""

    IDLE = "idle"
    CONNECTED = "connected"
    WAITING = "waiting"
    CONNECTING = "connecting"
    EXHAUSTED = "exhausted"
    STOPPED = "stopped"


@dataclass
class ReconnectAttempt:
    """Record of a reconnection attempt."""

    number: int
    delay: float
    timestamp: datetime
    success: bool
    error_message: Optional[str] = None


class ReconnectionController:
    """Bounded-retry backoff for the relay channel.

    Features:
    - Retries only while streaming is desired (start() until stop())
    - Fixed delay by default, optional exponential growth capped at max_delay
    - A failed attempt schedules the next one instead of raising
    - Gives up after max_attempts consecutive failures and fires on_exhausted
    - stop() cancels immediately, including mid-backoff
    """

    def __init__(
        self,
        connect: ConnectFunc,
        config: Optional[ClientConfig] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """Initialize reconnection controller.

        Args:
            connect: Coroutine that opens a new channel and re-sends ``connect``;
                raises on failure
            config: Client configuration
            sleep: Coroutine used for backoff delays
        """
        if config is None:
            from relay_client.config import get_config

            config = get_config()

        self.config = config
        self._connect = connect
        self._sleep = sleep

        self._state = ReconnectState.IDLE
        self._desired = False
        self._attempts = 0
        self._task: Optional[asyncio.Task] = None
        self._lost_during_attempt = False
        self._history: List[ReconnectAttempt] = []

        self._exhausted_callback: Optional[Callable] = None

    @property
    def state(self) -> ReconnectState:
        return self._state

    @property
    def attempts(self) -> int:
        """Consecutive failed-or-pending attempts since the last reset."""
        return self._attempts

    @property
    def is_retrying(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def history(self) -> List[ReconnectAttempt]:
        return list(self._history)

    def set_exhausted_callback(self, callback: Callable) -> None:
        """Set callback invoked once retries are exhausted.

        Args:
            callback: Async function called with the number of attempts made
        """
        self._exhausted_callback = callback

    def start(self) -> None:
        """Mark streaming as desired and reset the attempt counter."""
        self._desired = True
        self._attempts = 0
        self._state = ReconnectState.IDLE
        logger.debug("Reconnection armed")

    def notify_connected(self) -> None:
        """The server reported the encoder connected; reset the attempt counter."""
        if not self._desired:
            return
        if self._attempts:
            logger.info(f"Stream re-established after {self._attempts} attempt(s)")
        self._attempts = 0
        self._state = ReconnectState.CONNECTED

    def notify_lost(self, reason: str = "") -> None:
        """The channel dropped (or the encoder exited) while streaming.

        Starts the retry loop unless one is already running or streaming is
        no longer desired.
        """
        if not self._desired:
            logger.debug(f"Channel lost ({reason}) while not streaming, ignoring")
            return

        if self.is_retrying:
            self._lost_during_attempt = True
            return

        logger.warning(f"Relay channel lost: {reason or 'unknown reason'}")
        self._state = ReconnectState.WAITING
        self._task = asyncio.create_task(self._retry_loop(), name="relay-reconnect")

    async def stop(self) -> None:
        """Stop retrying immediately; streaming is no longer desired."""
        self._desired = False
        self._state = ReconnectState.STOPPED

        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.debug("Reconnection stopped")

    def compute_delay(self, attempt_index: int) -> float:
        """Delay before attempt ``attempt_index`` (0-based)."""
        delay = self.config.retry_delay * (self.config.backoff_multiplier ** attempt_index)
        return min(delay, self.config.max_delay)

    async def _retry_loop(self) -> None:
        while self._desired:
            if self._attempts >= self.config.max_attempts:
                self._state = ReconnectState.EXHAUSTED
                logger.error(
                    f"Max reconnection attempts ({self.config.max_attempts}) reached, giving up"
                )
                await self._notify_exhausted()
                return

            delay = self.compute_delay(self._attempts)
            self._state = ReconnectState.WAITING
            logger.info(f"Reconnecting in {delay:.1f}s")
            await self._sleep(delay)

            if not self._desired:
                return

            self._attempts += 1
            self._state = ReconnectState.CONNECTING
            self._lost_during_attempt = False
            logger.warning(
                f"Reconnection attempt {self._attempts}/{self.config.max_attempts}"
            )

            try:
                await self._connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record(delay, success=False, error_message=str(e))
                logger.warning(f"Reconnection attempt {self._attempts} failed: {e}")
                continue

            if self._lost_during_attempt:
                self._record(delay, success=False, error_message="channel lost during attempt")
                logger.warning(f"Channel lost again during attempt {self._attempts}")
                continue

            self._record(delay, success=True)
            self._state = ReconnectState.CONNECTED
            logger.info(f"Relay channel reopened (attempt {self._attempts})")
            return

    def _record(self, delay: float, success: bool, error_message: Optional[str] = None) -> None:
        self._history.append(
            ReconnectAttempt(
                number=self._attempts,
                delay=delay,
                timestamp=datetime.now(),
                success=success,
                error_message=error_message,
            )
        )

    async def _notify_exhausted(self) -> None:
        if not self._exhausted_callback:
            return
        try:
            await self._exhausted_callback(self._attempts)
        except Exception as e:
            logger.error(f"Exhausted callback failed: {e}", exc_info=True)

    def get_stats(self) -> dict:
        """Get reconnection statistics.

        Returns:
            Dictionary with state and attempt counts
        """
        return {
            "state": self._state.value,
            "attempts": self._attempts,
            "max_attempts": self.config.max_attempts,
            "total_attempts": len(self._history),
            "successful_attempts": sum(1 for attempt in self._history if attempt.success),
            "last_error": next(
                (a.error_message for a in reversed(self._history) if not a.success), None
            ),
        }
