"""
Relay bridge configuration and output profiles.

Process-wide settings are loaded from the environment once. The per-session
ingest target is an immutable value built from those defaults plus the
overrides a sender supplies with its ``connect`` message.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class OutputFormat(str, Enum):
    """Compressed formats the encoder can push to the ingest server."""

    MP3 = "mp3"
    AAC = "aac"
    OGG = "ogg"


@dataclass(frozen=True)
class OutputProfile:
    """Encoder settings for a specific output format."""

    name: str
    audio_codec: str  # FFmpeg encoder name, e.g. "libmp3lame"
    container: str  # FFmpeg muxer, e.g. "mp3" or "adts"
    content_type: str  # MIME type announced to the ingest server


OUTPUT_PROFILES: Dict[OutputFormat, OutputProfile] = {
    OutputFormat.MP3: OutputProfile(
        name="MP3 (LAME)",
        audio_codec="libmp3lame",
        container="mp3",
        content_type="audio/mpeg",
    ),
    OutputFormat.AAC: OutputProfile(
        name="AAC (ADTS)",
        audio_codec="aac",
        container="adts",
        content_type="audio/aac",
    ),
    OutputFormat.OGG: OutputProfile(
        name="Ogg Vorbis",
        audio_codec="libvorbis",
        container="ogg",
        content_type="audio/ogg",
    ),
}


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class TargetConfig(BaseModel):
    """Ingest destination and encoding profile for one encoder process.

    Instances are frozen. ``merge`` returns a new configuration, so an encoder
    already started from one instance never observes later overrides.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    host: str = Field(default="localhost", min_length=1)
    port: int = Field(default=8000, ge=1, le=65535)
    username: str = Field(default="source")
    password: str = Field(default="hackme")
    mountpoint: str = Field(
        default="/stream", validation_alias=_aliases("mountpoint", "mountPoint", "mount")
    )
    protocol: Literal["icecast", "http"] = "icecast"
    legacy_icecast: bool = Field(
        default=False, validation_alias=_aliases("legacy_icecast", "legacyIcecast")
    )

    sample_rate: int = Field(
        default=44100, ge=8000, le=192000, validation_alias=_aliases("sample_rate", "sampleRate")
    )
    channels: int = Field(default=2, ge=1, le=8)
    bitrate: int = Field(default=128, ge=8, le=512, description="Output bitrate in kbit/s")
    output_format: OutputFormat = Field(
        default=OutputFormat.MP3,
        validation_alias=_aliases("output_format", "outputFormat", "encoder"),
    )

    station_name: str = Field(
        default="Web Radio", validation_alias=_aliases("station_name", "stationName", "name")
    )
    station_genre: str = Field(
        default="Various", validation_alias=_aliases("station_genre", "stationGenre", "genre")
    )
    station_description: str = Field(
        default="",
        validation_alias=_aliases("station_description", "stationDescription", "description"),
    )
    station_public: bool = Field(
        default=True, validation_alias=_aliases("station_public", "stationPublic", "public")
    )

    @field_validator(
        "host", "username", "password", "mountpoint", "station_name", "station_genre",
        "station_description",
    )
    @classmethod
    def _reject_control_characters(cls, value: str) -> str:
        # Values end up as encoder arguments; NUL cannot be passed to exec
        if any(ord(ch) < 32 or ord(ch) == 127 for ch in value):
            raise ValueError("must not contain control characters")
        return value

    @field_validator("mountpoint")
    @classmethod
    def _normalize_mountpoint(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith("/"):
            value = "/" + value
        return value

    @field_validator("bitrate", mode="before")
    @classmethod
    def _normalize_bitrate(cls, value: Any) -> Any:
        # Browsers describe bitrate in bit/s (128000), FFmpeg profiles in kbit/s.
        if isinstance(value, str) and value.lower().endswith("k"):
            value = value[:-1]
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("bitrate must be a finite number")
        if isinstance(value, (int, float)) and value >= 8000:
            value = int(value) // 1000
        return value

    @property
    def output_profile(self) -> OutputProfile:
        """Encoder profile for the configured output format."""
        return OUTPUT_PROFILES[self.output_format]

    @classmethod
    def field_for_key(cls, key: str) -> Optional[str]:
        """Map a snake_case or camelCase override key to its field name."""
        for name, field in cls.model_fields.items():
            if key == name:
                return name
            alias = field.validation_alias
            if isinstance(alias, AliasChoices) and key in alias.choices:
                return name
        return None

    def merge(self, overrides: Optional[Mapping[str, Any]]) -> "TargetConfig":
        """
        Build a new configuration with ``overrides`` applied on top of this one.

        Args:
            overrides: Partial configuration, keys in snake_case or camelCase.
                Unknown keys are ignored.

        Returns:
            New TargetConfig; ``self`` is left untouched.

        Raises:
            pydantic.ValidationError: If an override value is invalid.
        """
        if not overrides:
            return self

        updates: Dict[str, Any] = {}
        for key, value in overrides.items():
            name = self.field_for_key(key)
            if name is None:
                logger.debug(f"Ignoring unknown target override: {key}")
                continue
            updates[name] = value

        if not updates:
            return self

        return type(self).model_validate({**self.model_dump(), **updates})


class BridgeSettings(BaseSettings):
    """Relay bridge settings from environment variables."""

    # Default ingest target
    target_host: str = Field(default="localhost", description="Ingest server host")
    target_port: int = Field(default=8000, ge=1, le=65535, description="Ingest server port")
    target_username: str = Field(default="source", description="Source username")
    target_password: str = Field(default="hackme", description="Source password")
    target_mountpoint: str = Field(default="/stream", description="Mountpoint on the ingest server")
    target_protocol: Literal["icecast", "http"] = Field(default="icecast")
    target_legacy_icecast: bool = Field(
        default=False, description="Use the SOURCE method for SHOUTcast and old Icecast servers"
    )

    # Default encoding profile
    sample_rate: int = Field(default=44100, ge=8000, le=192000)
    channels: int = Field(default=2, ge=1, le=8)
    bitrate: int = Field(default=128, ge=8, le=512, description="Output bitrate in kbit/s")
    output_format: OutputFormat = Field(default=OutputFormat.MP3)

    # Station metadata
    station_name: str = Field(default="Web Radio")
    station_genre: str = Field(default="Various")
    station_description: str = Field(default="")
    station_public: bool = Field(default=True)

    # FFmpeg binary
    ffmpeg_binary: str = Field(default="ffmpeg", description="Path to FFmpeg binary")
    ffmpeg_log_level: str = Field(
        default="info",
        description="FFmpeg log level; 'info' or more verbose is needed to detect connection",
    )

    # Process management
    write_buffer_limit: int = Field(
        default=256 * 1024,
        ge=4096,
        description="Pending stdin bytes above which audio blocks are dropped",
    )
    connect_timeout: float = Field(
        default=15.0,
        ge=0.0,
        description="Seconds to wait for the encoder to report a connection (0 disables)",
    )
    stop_grace: float = Field(
        default=0.5, ge=0.0, le=10.0, description="Seconds to let the encoder flush after EOF"
    )
    stop_timeout: float = Field(
        default=5.0, ge=0.1, le=60.0, description="Seconds to wait after SIGTERM before SIGKILL"
    )
    kill_timeout: float = Field(default=2.0, ge=0.1, le=30.0)

    model_config = ConfigDict(
        env_prefix="RELAY_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def default_target(self) -> TargetConfig:
        """Build the default ingest target from these settings."""
        return TargetConfig(
            host=self.target_host,
            port=self.target_port,
            username=self.target_username,
            password=self.target_password,
            mountpoint=self.target_mountpoint,
            protocol=self.target_protocol,
            legacy_icecast=self.target_legacy_icecast,
            sample_rate=self.sample_rate,
            channels=self.channels,
            bitrate=self.bitrate,
            output_format=self.output_format,
            station_name=self.station_name,
            station_genre=self.station_genre,
            station_description=self.station_description,
            station_public=self.station_public,
        )


def get_settings() -> BridgeSettings:
    """
    Get relay bridge settings from environment variables.

    Returns:
        BridgeSettings: Configuration instance
    """
    return BridgeSettings()
