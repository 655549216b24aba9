"""Deterministic on-disk cache for generated audio."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import unicodedata
from pathlib import Path
from typing import Awaitable, Callable
from uuid import uuid4

from ..errors import CacheWriteConflict
from ..schemas.synthesis import CacheFormat, OutputFormat

logger = logging.getLogger(__name__)

_NAMESPACE = ("ElevenLabs", "TextToSpeech")
_HISTORY_NAMESPACE = ("ElevenLabs", "History")
_segment_pattern = re.compile(r"[^A-Za-z0-9._-]+")


def normalize_text(text: str) -> str:
    return unicodedata.normalize("NFC", text).strip()


def cache_key(voice_id: str, text: str, output_format: OutputFormat) -> str:
    """Return the stable identity of a generation.

    The key depends only on its inputs, so it is identical across processes
    and runs.
    """
    material = "\n".join((voice_id, normalize_text(text), output_format.value))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def cache_extension(output_format: OutputFormat, cache_format: CacheFormat) -> str:
    """Return the file extension an output is cached under.

    MP3 output is always stored as-is; PCM goes through the selected container.
    """
    if output_format.is_mp3:
        return ".mp3"
    if cache_format is CacheFormat.WAV:
        return ".wav"
    if cache_format is CacheFormat.OGG:
        return ".ogg"
    raise ValueError(f"PCM output cannot be cached with cache format {cache_format.value!r}")


def _safe_segment(value: str) -> str:
    safe = _segment_pattern.sub("_", value or "").strip("._-")
    return safe or "unknown"


class CacheStore:
    """File-per-entry cache where the file's existence is the only index.

    Entries are written once and never updated; a present file is treated as
    valid.
    """

    def __init__(self, root: Path | str):
        self._root = Path(root)
        self._locks: dict[Path, asyncio.Lock] = {}
        self._lock_users: dict[Path, int] = {}

    @property
    def root(self) -> Path:
        return self._root

    def resolve_path(
        self,
        voice_id: str,
        text: str,
        output_format: OutputFormat,
        cache_format: CacheFormat,
    ) -> Path:
        extension = cache_extension(output_format, cache_format)
        key = cache_key(voice_id, text, output_format)
        return self._root.joinpath(*_NAMESPACE, _safe_segment(voice_id), f"{key}{extension}")

    def history_path(self, history_item_id: str) -> Path:
        return self._root.joinpath(*_HISTORY_NAMESPACE, f"{_safe_segment(history_item_id)}.mp3")

    def exists(self, path: Path) -> bool:
        return path.is_file()

    def write(self, path: Path, data: bytes) -> bool:
        """Create ``path`` holding ``data`` unless it already exists.

        Returns True when this call created the file. The bytes are staged in
        a temporary sibling and hard-linked into place, so readers never see
        a partially written entry.
        """
        if self.exists(path):
            logger.debug("Cache entry %s already present; keeping it", path)
            return False

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            with open(tmp_path, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                if path.read_bytes() != data:
                    raise CacheWriteConflict(path) from None
                logger.debug("Concurrent writer stored identical bytes at %s", path)
                return False
        finally:
            tmp_path.unlink(missing_ok=True)

        logger.info("Cached %d bytes at %s", len(data), path)
        return True

    async def write_once(
        self, path: Path, render: Callable[[], Awaitable[bytes]]
    ) -> bool:
        """Render and write ``path`` only if no entry exists yet.

        Concurrent callers for the same path are serialised, so duplicate
        requests resolve to the first writer's file. A path's lock is
        dropped once no caller holds or waits on it.
        """
        lock = self._locks.setdefault(path, asyncio.Lock())
        self._lock_users[path] = self._lock_users.get(path, 0) + 1
        try:
            async with lock:
                if self.exists(path):
                    logger.debug("Cache hit for %s", path)
                    return False
                data = await render()
                return await asyncio.to_thread(self.write, path, data)
        finally:
            self._release_lock(path)

    def _release_lock(self, path: Path) -> None:
        remaining = self._lock_users[path] - 1
        if remaining:
            self._lock_users[path] = remaining
        else:
            del self._lock_users[path]
            del self._locks[path]


__all__ = [
    "CacheStore",
    "cache_extension",
    "cache_key",
    "normalize_text",
]
