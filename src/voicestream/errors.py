"""Typed failures raised by the synthesis pipeline.

Every error except a malformed timestamp line aborts the current request and
reaches the caller as one of these classes. Nothing here is retried
automatically; retry is a caller policy wrapping the whole call.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class SynthesisError(RuntimeError):
    """Base error raised for synthesis failures."""


class ValidationError(SynthesisError):
    """Raised when a request is rejected before any network or disk I/O."""

    def __init__(self, message: str, field: str | None = None):
        self.message = message
        self.field = field
        super().__init__(self.message)


class ProtocolViolation(SynthesisError):
    """Raised when the server response does not honour the expected contract."""


class MalformedAudioData(SynthesisError):
    """Raised when a PCM buffer does not hold a whole number of samples."""


class EncodingFailure(SynthesisError):
    """Raised when a container encoder rejects its parameters."""


class CacheWriteConflict(SynthesisError):
    """Raised when another writer created a cache file with different content."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Cache entry {path} was written concurrently with different content")


class Cancelled(SynthesisError):
    """Raised when a cancellation signal is observed mid-request."""


class ConfigurationError(SynthesisError):
    """Raised when configuration needed for a request is missing."""

    def __init__(self, message: str, key: str | None = None):
        self.message = message
        self.key = key
        super().__init__(self.message)


class ApiError(SynthesisError):
    """Wrap transport or API failures when communicating with ElevenLabs."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


__all__ = [
    "ApiError",
    "CacheWriteConflict",
    "Cancelled",
    "ConfigurationError",
    "EncodingFailure",
    "MalformedAudioData",
    "ProtocolViolation",
    "SynthesisError",
    "ValidationError",
]
