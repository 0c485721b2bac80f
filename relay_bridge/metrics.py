"""Prometheus metrics for the relay bridge."""

import logging
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, generate_latest

logger = logging.getLogger(__name__)


class RelayMetrics:
    """Prometheus counters and gauges for sessions and encoder processes.

    A registry can be injected so tests (and multiple apps in one process)
    do not collide on the global default registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize Prometheus metrics.

        Args:
            registry: Collector registry (defaults to the global registry)
        """
        self.registry = registry if registry is not None else REGISTRY

        # Gauges
        self.sessions_active = Gauge(
            "relay_sessions_active",
            "Number of open relay channel sessions",
            registry=self.registry,
        )

        self.encoders_running = Gauge(
            "relay_encoders_running",
            "Number of live encoder processes",
            registry=self.registry,
        )

        # Counters
        self.encoder_starts_total = Counter(
            "relay_encoder_starts_total",
            "Total number of encoder processes started",
            registry=self.registry,
        )

        self.spawn_failures_total = Counter(
            "relay_spawn_failures_total",
            "Total number of encoder launch failures",
            registry=self.registry,
        )

        self.encoder_exits_total = Counter(
            "relay_encoder_exits_total",
            "Total number of encoder exits",
            ["code"],
            registry=self.registry,
        )

        self.frames_fed_total = Counter(
            "relay_frames_fed_total",
            "Total number of audio blocks written to an encoder",
            registry=self.registry,
        )

        self.frames_dropped_total = Counter(
            "relay_frames_dropped_total",
            "Total number of audio blocks dropped",
            ["reason"],  # no_encoder, backpressure
            registry=self.registry,
        )

        self.malformed_messages_total = Counter(
            "relay_malformed_messages_total",
            "Total number of rejected channel messages",
            registry=self.registry,
        )

        logger.debug("Relay metrics initialized")

    def session_opened(self) -> None:
        self.sessions_active.inc()

    def session_closed(self) -> None:
        self.sessions_active.dec()

    def record_encoder_start(self) -> None:
        self.encoder_starts_total.inc()
        self.encoders_running.inc()

    def record_spawn_failure(self) -> None:
        self.spawn_failures_total.inc()

    def record_encoder_exit(self, code: Optional[int]) -> None:
        """Record an encoder exit.

        Args:
            code: Process exit code (negative for signals)
        """
        self.encoder_exits_total.labels(code=str(code)).inc()
        self.encoders_running.dec()

    def record_frame_fed(self) -> None:
        self.frames_fed_total.inc()

    def record_frame_dropped(self, reason: str) -> None:
        self.frames_dropped_total.labels(reason=reason).inc()

    def record_malformed_message(self) -> None:
        self.malformed_messages_total.inc()

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus text format.

        Returns:
            Encoded metrics
        """
        return generate_latest(self.registry)
