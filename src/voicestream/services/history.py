"""Access to previously generated clips."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from pydantic import ValidationError as SchemaValidationError

from ..client import ElevenLabsClient
from ..errors import ProtocolViolation, ValidationError
from ..schemas.voices import HistoryPage
from .cache_store import CacheStore

logger = logging.getLogger(__name__)


def _item_path(history_item_id: str) -> str:
    if not history_item_id or history_item_id.strip() in {".", ".."}:
        raise ValidationError("history_item_id is required", field="history_item_id")
    return "/history/" + quote(history_item_id, safe="")


class HistoryService:
    """List, download and delete history items."""

    def __init__(self, client: ElevenLabsClient, cache_store: CacheStore):
        self._client = client
        self._cache_store = cache_store

    async def list_items(
        self,
        *,
        page_size: int = 100,
        start_after: Optional[str] = None,
    ) -> HistoryPage:
        params = {"page_size": str(page_size)}
        if start_after:
            params["start_after_history_item_id"] = start_after
        payload = await self._client.get_json("/history", params=params)
        try:
            return HistoryPage.model_validate(payload)
        except SchemaValidationError as exc:
            raise ProtocolViolation(f"Unexpected /history payload: {exc}") from exc

    async def download_audio(self, history_item_id: str) -> Path:
        """Return the cached MP3 for a history item, downloading it if needed."""

        item_path = _item_path(history_item_id)
        path = self._cache_store.history_path(history_item_id)

        async def render() -> bytes:
            return await self._client.get_bytes(f"{item_path}/audio")

        if await self._cache_store.write_once(path, render):
            logger.info("Downloaded history item %s", history_item_id)
        return path

    async def delete_item(self, history_item_id: str) -> None:
        await self._client.delete(_item_path(history_item_id))
        logger.info("Deleted history item %s", history_item_id)


__all__ = ["HistoryService"]
