"""
Sample format conversion between the browser and the encoder.

Browsers capture audio as 32-bit floats in [-1.0, 1.0]; the encoder reads
signed 16-bit little-endian PCM from its stdin. Channel layout is never
touched: interleaved input stays interleaved.
"""

import sys
from array import array
from typing import Iterable, List

PCM16_MAX = 32767
BYTES_PER_SAMPLE = 2

_BIG_ENDIAN = sys.byteorder == "big"


def _to_int16(sample: float) -> int:
    # NaN compares false against everything; treat it as silence.
    if sample != sample:
        return 0
    if sample > 1.0:
        return PCM16_MAX
    if sample < -1.0:
        return -PCM16_MAX
    return int(sample * PCM16_MAX)


def float_to_pcm16(samples: Iterable[float]) -> bytes:
    """
    Convert floating-point samples to signed 16-bit little-endian PCM.

    Each sample is clamped to [-1.0, 1.0] before scaling by 32767 and
    truncated toward zero, so 1.0 maps to 32767 and -1.0 to -32767.

    Args:
        samples: Interleaved float samples

    Returns:
        PCM bytes, two per input sample, in input order
    """
    pcm = array("h", map(_to_int16, samples))
    if _BIG_ENDIAN:
        pcm.byteswap()
    return pcm.tobytes()


def pcm16_to_float(data: bytes) -> List[float]:
    """
    Convert signed 16-bit little-endian PCM to floats in [-1.0, 1.0].

    Args:
        data: PCM bytes; a trailing odd byte is ignored

    Returns:
        List of float samples
    """
    usable = len(data) - (len(data) % BYTES_PER_SAMPLE)
    pcm = array("h")
    pcm.frombytes(data[:usable])
    if _BIG_ENDIAN:
        pcm.byteswap()
    return [max(-1.0, value / PCM16_MAX) for value in pcm]
