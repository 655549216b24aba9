"""Voice and model lookups backed by the ElevenLabs API."""

from __future__ import annotations

import logging
from typing import Iterator, Optional

from pydantic import ValidationError as SchemaValidationError

from ..client import ElevenLabsClient
from ..errors import ProtocolViolation
from ..schemas.synthesis import VoiceSettings
from ..schemas.voices import Model, Voice, VoiceList

logger = logging.getLogger(__name__)


class VoiceCatalog:
    """Lookup table of the account's voices.

    The table is owned by whoever creates it and is only refreshed or
    cleared through :meth:`refresh` and :meth:`invalidate`.
    """

    def __init__(self, client: ElevenLabsClient):
        self._client = client
        self._voices: dict[str, Voice] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def __contains__(self, voice_id: object) -> bool:
        return voice_id in self._voices

    def __len__(self) -> int:
        return len(self._voices)

    def __iter__(self) -> Iterator[Voice]:
        return iter(self._voices.values())

    async def refresh(self) -> list[Voice]:
        """Replace the table with the voices currently on the account."""

        payload = await self._client.get_json("/voices")
        try:
            voices = VoiceList.model_validate(payload).voices
        except SchemaValidationError as exc:
            raise ProtocolViolation(f"Unexpected /voices payload: {exc}") from exc

        self._voices = {voice.voice_id: voice for voice in voices}
        self._loaded = True
        logger.info("Loaded %d voices", len(self._voices))
        return voices

    async def ensure_loaded(self) -> None:
        if not self._loaded:
            await self.refresh()

    def invalidate(self) -> None:
        self._voices.clear()
        self._loaded = False

    def get(self, voice_id: str) -> Optional[Voice]:
        return self._voices.get(voice_id)

    def find_by_name(self, name: str) -> Optional[Voice]:
        wanted = name.strip().lower()
        for voice in self._voices.values():
            if voice.name.lower() == wanted:
                return voice
        return None

    async def default_settings(self) -> VoiceSettings:
        payload = await self._client.get_json("/voices/settings/default")
        try:
            return VoiceSettings.model_validate(payload)
        except SchemaValidationError as exc:
            raise ProtocolViolation(f"Unexpected default settings payload: {exc}") from exc

    async def settings_for(self, voice_id: str) -> VoiceSettings:
        """Return the voice's own settings, falling back to the account defaults."""

        voice = self.get(voice_id)
        if voice is not None and voice.settings is not None:
            return voice.settings
        return await self.default_settings()


async def list_models(client: ElevenLabsClient) -> list[Model]:
    """Return the synthesis models available to the account."""

    payload = await client.get_json("/models")
    if not isinstance(payload, list):
        raise ProtocolViolation("Expected a list from /models")
    try:
        return [Model.model_validate(item) for item in payload]
    except SchemaValidationError as exc:
        raise ProtocolViolation(f"Unexpected /models payload: {exc}") from exc


__all__ = ["VoiceCatalog", "list_models"]
