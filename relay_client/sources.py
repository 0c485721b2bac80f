"""Audio sources producing float sample blocks for the broadcast client."""

import logging
import wave
from pathlib import Path
from typing import Iterator, List, Union

from relay_bridge.frame_converter import BYTES_PER_SAMPLE, pcm16_to_float

logger = logging.getLogger(__name__)


class WavFileSource:
    """Reads a 16-bit PCM WAV file as blocks of interleaved float samples.

    Attributes:
        sample_rate: Frames per second of the file
        channels: Channel count of the file
        block_frames: Frames per block (the last block may be shorter)
        loop: Restart from the beginning at end of file
    """

    def __init__(self, path: Union[str, Path], block_frames: int = 2048, loop: bool = False):
        """Open ``path`` and read its header.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is not 16-bit PCM or block_frames is invalid
        """
        if block_frames <= 0:
            raise ValueError(f"Invalid block_frames: {block_frames}")

        self.path = Path(path)
        self.block_frames = block_frames
        self.loop = loop

        try:
            with wave.open(str(self.path), "rb") as wav:
                sample_width = wav.getsampwidth()
                self.sample_rate = wav.getframerate()
                self.channels = wav.getnchannels()
                self.total_frames = wav.getnframes()
        except wave.Error as e:
            raise ValueError(f"Not a PCM WAV file: {self.path} ({e})") from e

        if sample_width != BYTES_PER_SAMPLE:
            raise ValueError(
                f"Unsupported sample width {sample_width * 8} bits in {self.path}; "
                "only 16-bit PCM is supported"
            )

        logger.info(
            f"Opened {self.path.name}: {self.sample_rate} Hz, {self.channels} ch, "
            f"{self.duration_seconds:.1f}s"
        )

    @property
    def duration_seconds(self) -> float:
        return self.total_frames / self.sample_rate if self.sample_rate else 0.0

    @property
    def block_duration(self) -> float:
        """Playback time of one full block in seconds."""
        return self.block_frames / self.sample_rate

    def blocks(self) -> Iterator[List[float]]:
        """Yield blocks of interleaved float samples until end of file.

        With ``loop`` enabled the file repeats indefinitely (an empty file
        yields nothing).
        """
        with wave.open(str(self.path), "rb") as wav:
            while True:
                data = wav.readframes(self.block_frames)
                if data:
                    yield pcm16_to_float(data)
                    continue

                if not self.loop or self.total_frames == 0:
                    return

                logger.debug(f"Looping {self.path.name}")
                wav.rewind()
