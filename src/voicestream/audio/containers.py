"""Container encoders used when persisting decoded audio."""

from __future__ import annotations

import asyncio
import io
import logging

import numpy as np
import soundfile as sf

from ..errors import EncodingFailure
from .pcm import Samples, encode

logger = logging.getLogger(__name__)


def _frames(samples: Samples, sample_rate: int, channels: int) -> np.ndarray:
    """Return interleaved ``samples`` shaped as (frames, channels)."""

    if channels < 1:
        raise EncodingFailure(f"Unsupported channel count: {channels}")
    if sample_rate <= 0:
        raise EncodingFailure(f"Unsupported sample rate: {sample_rate}")

    data = np.asarray(samples, dtype=np.float32).reshape(-1)
    if data.size % channels:
        raise EncodingFailure(
            f"{data.size} samples cannot be split evenly into {channels} channels"
        )
    return data.reshape(-1, channels)


def _write(
    frames: np.ndarray,
    sample_rate: int,
    *,
    container: str,
    subtype: str,
) -> bytes:
    buffer = io.BytesIO()
    try:
        sf.write(buffer, frames, sample_rate, format=container, subtype=subtype)
    except (sf.LibsndfileError, RuntimeError, ValueError, TypeError) as exc:
        logger.error("%s encoding failed: %s", container, exc)
        raise EncodingFailure(f"{container} encoding failed: {exc}") from exc
    return buffer.getvalue()


def to_wav(samples: Samples, sample_rate: int, channels: int = 1) -> bytes:
    """Encode interleaved float samples as a 16-bit PCM WAV file.

    Samples are quantised the same way as raw PCM output, so a WAV read back
    as int16 matches the bytes the API sent.
    """
    frames = _frames(samples, sample_rate, channels)
    quantised = np.frombuffer(encode(frames), dtype="<i2").reshape(frames.shape)
    return _write(quantised, sample_rate, container="WAV", subtype="PCM_16")


def to_ogg(samples: Samples, sample_rate: int, channels: int = 1) -> bytes:
    """Encode interleaved float samples as an Ogg Vorbis file."""

    frames = _frames(samples, sample_rate, channels)
    return _write(frames, sample_rate, container="OGG", subtype="VORBIS")


async def to_ogg_async(samples: Samples, sample_rate: int, channels: int = 1) -> bytes:
    """Run :func:`to_ogg` in a worker thread; the Vorbis encoder is slow."""

    return await asyncio.to_thread(to_ogg, samples, sample_rate, channels)


__all__ = ["to_ogg", "to_ogg_async", "to_wav"]
