"""Schemas for voices, models and history items returned by the API."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .synthesis import VoiceSettings


class Voice(BaseModel):
    """A voice available to the account."""

    model_config = ConfigDict(extra="ignore")

    voice_id: str
    name: str = ""
    category: Optional[str] = None
    settings: Optional[VoiceSettings] = None


class VoiceList(BaseModel):
    voices: list[Voice] = Field(default_factory=list)


class Model(BaseModel):
    """A synthesis model offered by the platform."""

    model_config = ConfigDict(extra="ignore")

    model_id: str
    name: str = ""
    can_do_text_to_speech: bool = True
    max_characters_request_free_user: Optional[int] = None


class HistoryItem(BaseModel):
    """Metadata about a previously generated clip."""

    model_config = ConfigDict(extra="ignore")

    history_item_id: str
    voice_id: Optional[str] = None
    voice_name: Optional[str] = None
    text: str = ""
    date_unix: Optional[int] = None
    content_type: Optional[str] = None


class HistoryPage(BaseModel):
    history: list[HistoryItem] = Field(default_factory=list)
    last_history_item_id: Optional[str] = None
    has_more: bool = False


__all__ = ["HistoryItem", "HistoryPage", "Model", "Voice", "VoiceList"]
