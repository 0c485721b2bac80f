"""
Browser Radio Relay Bridge

Per-session bridge that converts live float audio from a browser into PCM,
feeds an FFmpeg encoder pushing to an Icecast/SHOUTcast mountpoint, and
reports connection status back to the sender.

Version: 1.0.0
"""

__version__ = "1.0.0"

from relay_bridge.command_builder import EncoderCommandBuilder
from relay_bridge.config import BridgeSettings, OutputFormat, TargetConfig
from relay_bridge.exceptions import MalformedMessage, RelayError, SpawnError
from relay_bridge.frame_converter import float_to_pcm16, pcm16_to_float
from relay_bridge.log_parser import DiagnosticClassifier
from relay_bridge.session import ConnectionStatus, RelaySession
from relay_bridge.supervisor import EncoderHandle, EncoderSupervisor, HandleState

__all__ = [
    "BridgeSettings",
    "ConnectionStatus",
    "DiagnosticClassifier",
    "EncoderCommandBuilder",
    "EncoderHandle",
    "EncoderSupervisor",
    "HandleState",
    "MalformedMessage",
    "OutputFormat",
    "RelayError",
    "RelaySession",
    "SpawnError",
    "TargetConfig",
    "float_to_pcm16",
    "pcm16_to_float",
]
