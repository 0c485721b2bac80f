"""
Encoder command builder.

Constructs FFmpeg commands that read raw PCM from stdin and push compressed
audio to an Icecast/SHOUTcast mountpoint.
"""

import logging
import re
from typing import List
from urllib.parse import quote

from relay_bridge.config import BridgeSettings, TargetConfig

logger = logging.getLogger(__name__)

_CREDENTIAL_PATTERN = re.compile(r"(://[^:/@\s]*:)([^@\s]*)(@)")


def redact(text: str) -> str:
    """Mask the password of any ``scheme://user:password@`` URL in ``text``."""
    return _CREDENTIAL_PATTERN.sub(r"\1***\3", text)


class EncoderCommandBuilder:
    """
    Builds FFmpeg commands for relaying live PCM to an ingest server.

    Input format is fixed (s16le on stdin); rate, channels, codec, bitrate and
    station metadata come from the session's TargetConfig.
    """

    def __init__(self, settings: BridgeSettings):
        """
        Initialize command builder.

        Args:
            settings: Relay bridge settings
        """
        self.settings = settings

    def build_command(self, target: TargetConfig) -> List[str]:
        """
        Build the complete FFmpeg command for one session.

        Args:
            target: Ingest destination and encoding profile

        Returns:
            List of command arguments for subprocess
        """
        cmd = [self.settings.ffmpeg_binary]

        # Global options
        cmd.extend(self._build_global_options())

        # Raw PCM input on stdin
        cmd.extend(self._build_input_options(target))

        # Audio encoding
        cmd.extend(self._build_audio_encoding(target))

        # Station metadata
        cmd.extend(self._build_metadata_options(target))

        # Output options
        cmd.extend(self._build_output_options(target))

        logger.debug(f"Built encoder command: {redact(' '.join(cmd))}")
        return cmd

    def build_destination_url(self, target: TargetConfig) -> str:
        """
        Assemble the ingest URL, e.g. ``icecast://source:pw@host:8000/stream``.

        The username and password are percent-encoded so reserved characters
        cannot corrupt the authority section.
        """
        user = quote(target.username, safe="")
        password = quote(target.password, safe="")
        return f"{target.protocol}://{user}:{password}@{target.host}:{target.port}{target.mountpoint}"

    def _build_global_options(self) -> List[str]:
        """Build global FFmpeg options."""
        return [
            "-hide_banner",
            "-nostdin",  # stdin carries audio, not keyboard commands
            "-loglevel",
            self.settings.ffmpeg_log_level,
        ]

    def _build_input_options(self, target: TargetConfig) -> List[str]:
        """Build raw PCM input options."""
        return [
            "-f", "s16le",
            "-ar", str(target.sample_rate),
            "-ac", str(target.channels),
            "-i", "pipe:0",
        ]

    def _build_audio_encoding(self, target: TargetConfig) -> List[str]:
        """Build audio encoding options."""
        profile = target.output_profile
        return [
            "-c:a", profile.audio_codec,
            "-b:a", f"{target.bitrate}k",
        ]

    def _build_metadata_options(self, target: TargetConfig) -> List[str]:
        """Build Icecast metadata options."""
        if target.protocol != "icecast":
            return []

        options = [
            "-content_type", target.output_profile.content_type,
            "-ice_name", target.station_name,
            "-ice_genre", target.station_genre,
            "-ice_public", "1" if target.station_public else "0",
        ]
        if target.station_description:
            options.extend(["-ice_description", target.station_description])
        if target.legacy_icecast:
            options.extend(["-legacy_icecast", "1"])
        return options

    def _build_output_options(self, target: TargetConfig) -> List[str]:
        """Build output format options."""
        return [
            "-f", target.output_profile.container,
            self.build_destination_url(target),
        ]
