"""Services built on the ElevenLabs client."""

from .cache_store import CacheStore
from .history import HistoryService
from .tts_service import (
    PipelineState,
    SynthesisMode,
    SynthesisPipeline,
    TextToSpeechService,
)
from .voice_catalog import VoiceCatalog, list_models

__all__ = [
    "CacheStore",
    "HistoryService",
    "PipelineState",
    "SynthesisMode",
    "SynthesisPipeline",
    "TextToSpeechService",
    "VoiceCatalog",
    "list_models",
]
