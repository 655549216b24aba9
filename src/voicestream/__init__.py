"""Streaming ElevenLabs text-to-speech with transcript alignment and disk caching."""

from .client import ElevenLabsClient
from .config import Settings, get_settings
from .errors import (
    ApiError,
    CacheWriteConflict,
    Cancelled,
    ConfigurationError,
    EncodingFailure,
    MalformedAudioData,
    ProtocolViolation,
    SynthesisError,
    ValidationError,
)
from .schemas import (
    CacheFormat,
    OutputFormat,
    SynthesisRequest,
    TimestampedCharacter,
    VoiceClip,
    VoiceSettings,
)
from .services import CacheStore, TextToSpeechService, VoiceCatalog

__all__ = [
    "ApiError",
    "CacheFormat",
    "CacheStore",
    "CacheWriteConflict",
    "Cancelled",
    "ConfigurationError",
    "ElevenLabsClient",
    "EncodingFailure",
    "MalformedAudioData",
    "OutputFormat",
    "ProtocolViolation",
    "Settings",
    "SynthesisError",
    "SynthesisRequest",
    "TextToSpeechService",
    "TimestampedCharacter",
    "ValidationError",
    "VoiceCatalog",
    "VoiceClip",
    "VoiceSettings",
    "get_settings",
]
