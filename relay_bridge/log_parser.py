"""
Encoder diagnostic classifier.

Scans FFmpeg stderr line by line and classifies each line against a fixed
marker table: "stream established" markers, failure markers, and progress
lines carrying throughput metrics. Matching is best-effort text
classification; callers only depend on the Diagnostic values produced here.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class DiagnosticKind(str, Enum):
    """Classification of an encoder diagnostic line."""

    CONNECTED = "connected"
    FAILURE = "failure"


class ErrorType(str, Enum):
    """Types of encoder failures."""

    CONNECTION_FAILED = "connection_failed"
    AUTHENTICATION_FAILED = "authentication_failed"
    MOUNTPOINT_IN_USE = "mountpoint_in_use"
    BROKEN_PIPE = "broken_pipe"
    IO_ERROR = "io_error"
    INVALID_CODEC = "invalid_codec"
    INVALID_INPUT = "invalid_input"
    UNKNOWN = "unknown"


@dataclass
class EncoderMetrics:
    """Metrics extracted from encoder progress output."""

    size: str = "0kB"
    time: str = "00:00:00.00"
    bitrate: str = "0kbits/s"
    speed: float = 0.0
    last_update: Optional[datetime] = None


@dataclass(frozen=True)
class Diagnostic:
    """A classified encoder diagnostic line."""

    kind: DiagnosticKind
    message: str
    error_type: Optional[ErrorType] = None


class DiagnosticClassifier:
    """
    Classifies FFmpeg stderr lines into connection and failure diagnostics.

    Substring markers are case-sensitive and mirror what FFmpeg prints while
    opening an Icecast output. Failure patterns are checked most specific
    first; the generic markers are a heuristic and may fire on benign chatter.
    """

    CONNECTED_MARKERS: Tuple[str, ...] = (
        "Connection established",
        "Server connection established",
        "Starting streaming",
        "Output #0",
        "Stream mapping:",
    )

    FAILURE_PATTERNS: Dict[ErrorType, List[str]] = {
        ErrorType.AUTHENTICATION_FAILED: [
            r"401 Unauthorized",
            r"403 Forbidden",
            r"Authentication (?:failed|required)",
        ],
        ErrorType.MOUNTPOINT_IN_USE: [
            r"Mountpoint in use",
            r"409 Conflict",
        ],
        ErrorType.CONNECTION_FAILED: [
            r"Connection (?:refused|timed out|reset)",
            r"Failed to (?:connect|resolve)",
            r"Unable to connect",
            r"Name or service not known",
            r"Could not (?:open|connect)",
        ],
        ErrorType.BROKEN_PIPE: [
            r"Broken pipe",
        ],
        ErrorType.IO_ERROR: [
            r"I/O error",
            r"Input/output error",
            r"Error writing trailer",
        ],
        ErrorType.INVALID_CODEC: [
            r"Unknown encoder",
            r"Encoder not found",
            r"Unsupported codec",
        ],
        ErrorType.INVALID_INPUT: [
            r"Invalid data found when processing input",
            r"Invalid argument",
        ],
    }

    # Generic failure markers (heuristic, case-sensitive)
    GENERIC_FAILURE_MARKERS: Tuple[str, ...] = ("Error", "Failed", "Could not")

    # Progress lines, e.g. "size=  96kB time=00:00:06.00 bitrate= 131.1kbits/s speed=1.00x"
    PROGRESS_PATTERN = re.compile(
        r"size=\s*(\S+)\s+"
        r"time=\s*([\d:.\-]+)\s+"
        r"bitrate=\s*([\d.]+\w+/s|N/A)"
        r"(?:.*?speed=\s*([\d.]+)x)?"
    )

    # Compiled failure patterns
    COMPILED_PATTERNS: Dict[ErrorType, List[re.Pattern]] = {}

    MAX_MESSAGE_LENGTH = 200

    @classmethod
    def _compile_patterns(cls) -> None:
        """Compile regex patterns for failure detection."""
        if not cls.COMPILED_PATTERNS:
            for error_type, patterns in cls.FAILURE_PATTERNS.items():
                cls.COMPILED_PATTERNS[error_type] = [
                    re.compile(pattern, re.IGNORECASE) for pattern in patterns
                ]

    def __init__(self):
        """Initialize classifier."""
        self._compile_patterns()
        self.metrics = EncoderMetrics()
        self.failures: List[Diagnostic] = []
        self._seen_failures: Set[str] = set()

    def classify(self, line: str) -> Optional[Diagnostic]:
        """
        Classify a single line of encoder output.

        Args:
            line: Line of FFmpeg stderr output

        Returns:
            Diagnostic if the line is a connection or failure marker, None
            otherwise. Repeated failures with the same message are reported
            once.
        """
        line = line.strip()
        if not line:
            return None

        if self._update_metrics(line):
            # Encoded audio is flowing, so the output is open
            return Diagnostic(kind=DiagnosticKind.CONNECTED, message=line)

        failure = self._detect_failure(line)
        if failure:
            key = f"{failure.error_type}:{failure.message[:50]}"
            if key in self._seen_failures:
                return None
            self._seen_failures.add(key)
            self.failures.append(failure)
            return failure

        for marker in self.CONNECTED_MARKERS:
            if marker in line:
                return Diagnostic(kind=DiagnosticKind.CONNECTED, message=line)

        return None

    def _update_metrics(self, line: str) -> bool:
        """Extract metrics from a progress line; returns True if it was one."""
        match = self.PROGRESS_PATTERN.search(line)
        if not match:
            return False

        self.metrics.size = match.group(1)
        self.metrics.time = match.group(2)
        self.metrics.bitrate = match.group(3)
        if match.group(4):
            try:
                self.metrics.speed = float(match.group(4))
            except ValueError:
                logger.debug(f"Failed to parse encoder speed: {match.group(4)}")
        self.metrics.last_update = datetime.now()
        return True

    def _detect_failure(self, line: str) -> Optional[Diagnostic]:
        """Detect failure markers in a line."""
        for error_type, patterns in self.COMPILED_PATTERNS.items():
            for pattern in patterns:
                if pattern.search(line):
                    return Diagnostic(
                        kind=DiagnosticKind.FAILURE,
                        message=self._extract_message(line),
                        error_type=error_type,
                    )

        for marker in self.GENERIC_FAILURE_MARKERS:
            if marker in line:
                return Diagnostic(
                    kind=DiagnosticKind.FAILURE,
                    message=self._extract_message(line),
                    error_type=ErrorType.UNKNOWN,
                )

        return None

    def _extract_message(self, line: str) -> str:
        """Strip FFmpeg component prefixes and truncate."""
        message = re.sub(r"^\[[\w@ #:.\-]+\]\s*", "", line)
        if len(message) > self.MAX_MESSAGE_LENGTH:
            message = message[: self.MAX_MESSAGE_LENGTH - 3] + "..."
        return message.strip()

    def get_metrics_summary(self) -> Dict:
        """
        Get summary of current metrics.

        Returns:
            Dictionary with metric values
        """
        return {
            "size": self.metrics.size,
            "time": self.metrics.time,
            "bitrate": self.metrics.bitrate,
            "speed": self.metrics.speed,
            "last_update": (
                self.metrics.last_update.isoformat() if self.metrics.last_update else None
            ),
            "total_failures": len(self.failures),
        }
