"""Request and response schemas for text-to-speech synthesis."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_TEXT_LENGTH = 5000


class OutputFormat(str, Enum):
    """Audio encodings the API can return, in their lower-case wire form."""

    MP3_22050_32 = "mp3_22050_32"
    MP3_44100_32 = "mp3_44100_32"
    MP3_44100_64 = "mp3_44100_64"
    MP3_44100_96 = "mp3_44100_96"
    MP3_44100_128 = "mp3_44100_128"
    MP3_44100_192 = "mp3_44100_192"
    PCM_16000 = "pcm_16000"
    PCM_22050 = "pcm_22050"
    PCM_24000 = "pcm_24000"
    PCM_44100 = "pcm_44100"

    @property
    def is_pcm(self) -> bool:
        return self.value.startswith("pcm_")

    @property
    def is_mp3(self) -> bool:
        return self.value.startswith("mp3_")

    @property
    def sample_rate(self) -> int:
        return int(self.value.split("_")[1])


class CacheFormat(str, Enum):
    """Container used when persisting generated audio."""

    NONE = "none"
    WAV = "wav"
    OGG = "ogg"


class VoiceSettings(BaseModel):
    """Voice style parameters sent with every synthesis request."""

    model_config = ConfigDict(frozen=True)

    stability: float = Field(ge=0.0, le=1.0)
    similarity_boost: float = Field(ge=0.0, le=1.0)
    style: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    use_speaker_boost: Optional[bool] = None


class SynthesisRequest(BaseModel):
    """Immutable description of one text-to-speech generation."""

    model_config = ConfigDict(frozen=True)

    voice_id: str
    text: str
    voice_settings: Optional[VoiceSettings] = None
    output_format: OutputFormat = OutputFormat.MP3_44100_128
    optimize_streaming_latency: Optional[int] = Field(default=None, ge=0, le=4)
    with_timestamps: bool = False
    cache_format: CacheFormat = CacheFormat.NONE
    model_id: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON body for the text-to-speech endpoint."""

        payload: dict[str, Any] = {"text": self.text}
        if self.voice_settings is not None:
            payload["voice_settings"] = self.voice_settings.model_dump(
                exclude_none=True
            )
        if self.model_id:
            payload["model_id"] = self.model_id
        return payload

    def to_query_params(self) -> dict[str, str]:
        params = {"output_format": self.output_format.value}
        if self.optimize_streaming_latency is not None:
            params["optimize_streaming_latency"] = str(
                self.optimize_streaming_latency
            )
        return params


@dataclass(frozen=True)
class TimestampedCharacter:
    """One transcript character with its position in the audio, in seconds."""

    character: str
    start: float
    end: float


class Alignment(BaseModel):
    characters: list[str] = Field(default_factory=list)
    character_start_times_seconds: list[float] = Field(default_factory=list)
    character_end_times_seconds: list[float] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_lengths(self) -> "Alignment":
        count = len(self.characters)
        if (
            len(self.character_start_times_seconds) != count
            or len(self.character_end_times_seconds) != count
        ):
            raise ValueError("alignment arrays must have equal lengths")
        return self


class AlignmentRecord(BaseModel):
    """A timestamped audio payload: one streamed line or a full buffered body."""

    model_config = ConfigDict(extra="ignore")

    audio_base64: str = ""
    alignment: Optional[Alignment] = None

    @model_validator(mode="after")
    def _check_audio(self) -> "AlignmentRecord":
        try:
            base64.b64decode(self.audio_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"audio_base64 is not valid base64: {exc}") from exc
        return self

    @property
    def audio_bytes(self) -> bytes:
        return base64.b64decode(self.audio_base64)

    def timestamped_characters(self) -> tuple[TimestampedCharacter, ...]:
        if self.alignment is None:
            return ()
        return tuple(
            TimestampedCharacter(character=char, start=start, end=end)
            for char, start, end in zip(
                self.alignment.characters,
                self.alignment.character_start_times_seconds,
                self.alignment.character_end_times_seconds,
            )
        )


@dataclass(frozen=True)
class StreamChunk:
    """One unit emitted by the demultiplexer, in wire order."""

    index: int
    audio: bytes
    characters: tuple[TimestampedCharacter, ...] = ()


@dataclass
class VoiceClip:
    """Generated speech: a partial chunk during streaming or the final result."""

    id: str
    text: str
    voice_id: str
    output_format: OutputFormat
    audio: bytes
    samples: Optional[np.ndarray] = None
    characters: tuple[TimestampedCharacter, ...] = ()
    cached_path: Optional[Path] = None
    part: Optional[int] = None

    @property
    def sample_rate(self) -> int:
        return self.output_format.sample_rate

    @property
    def is_partial(self) -> bool:
        return self.part is not None

    @property
    def duration_seconds(self) -> float | None:
        if self.samples is None:
            return None
        return len(self.samples) / float(self.sample_rate)


__all__ = [
    "MAX_TEXT_LENGTH",
    "Alignment",
    "AlignmentRecord",
    "CacheFormat",
    "OutputFormat",
    "StreamChunk",
    "SynthesisRequest",
    "TimestampedCharacter",
    "VoiceClip",
    "VoiceSettings",
]
