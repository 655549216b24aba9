"""Pydantic schemas and value types shared across voicestream."""

from .synthesis import (
    MAX_TEXT_LENGTH,
    AlignmentRecord,
    CacheFormat,
    OutputFormat,
    StreamChunk,
    SynthesisRequest,
    TimestampedCharacter,
    VoiceClip,
    VoiceSettings,
)
from .voices import HistoryItem, HistoryPage, Model, Voice, VoiceList

__all__ = [
    "MAX_TEXT_LENGTH",
    "AlignmentRecord",
    "CacheFormat",
    "HistoryItem",
    "HistoryPage",
    "Model",
    "OutputFormat",
    "StreamChunk",
    "SynthesisRequest",
    "TimestampedCharacter",
    "Voice",
    "VoiceClip",
    "VoiceList",
    "VoiceSettings",
]
