"""Conversion between raw 16-bit PCM and normalised float samples."""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

from ..errors import MalformedAudioData

SAMPLE_WIDTH = 2
_SCALE = 32768.0
_PCM_DTYPE = np.dtype("<i2")

Samples = Union[np.ndarray, Sequence[float]]


def decode(data: bytes) -> np.ndarray:
    """Return little-endian int16 ``data`` as float32 samples in [-1, 1).

    A trailing partial sample is rejected rather than truncated.
    """
    if len(data) % SAMPLE_WIDTH:
        raise MalformedAudioData(
            f"PCM buffer of {len(data)} bytes is not a whole number of 16-bit samples"
        )
    return np.frombuffer(data, dtype=_PCM_DTYPE).astype(np.float32) / _SCALE


def encode(samples: Samples) -> bytes:
    """Return float samples as little-endian int16 bytes.

    Values outside [-1, 1] are clamped to the boundary.
    """
    array = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.clip(np.rint(array * _SCALE), -32768, 32767)
    return scaled.astype(_PCM_DTYPE).tobytes()


class PcmChunkDecoder:
    """Decode a PCM byte stream whose reads may split a sample in two.

    A dangling odd byte is held back and prefixed to the next chunk.
    """

    def __init__(self) -> None:
        self._remainder = b""

    @property
    def pending(self) -> int:
        return len(self._remainder)

    def feed(self, data: bytes) -> np.ndarray:
        data = self._remainder + data
        whole = len(data) - (len(data) % SAMPLE_WIDTH)
        self._remainder = data[whole:]
        return decode(data[:whole])


__all__ = ["SAMPLE_WIDTH", "PcmChunkDecoder", "Samples", "decode", "encode"]
