"""Text-to-speech synthesis pipeline.

One pipeline handles both response modes. The mode is a strategy value:

- ``BUFFERED``: read the whole body, no partial results
- ``STREAMING``: drive the demultiplexer and hand each chunk to the caller
  as a partial :class:`VoiceClip`, strictly in wire order

States::

    IDLE -> REQUEST_ISSUED -> BUFFERING | STREAMING -> ASSEMBLING
         -> CACHED (optional) -> COMPLETE

``FAILED`` is reachable from every non-terminal state.

Usage:
    service = TextToSpeechService(ElevenLabsClient(settings))
    clip = await service.synthesize(request, on_partial, cancel_event=stop)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import aclosing
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import (
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Union,
)
from urllib.parse import quote

import httpx
import numpy as np
import soundfile as sf
from pydantic import ValidationError as SchemaValidationError

from ..audio import pcm
from ..audio.containers import to_ogg_async, to_wav
from ..client import ElevenLabsClient
from ..errors import Cancelled, ProtocolViolation, ValidationError
from ..schemas.synthesis import (
    MAX_TEXT_LENGTH,
    AlignmentRecord,
    CacheFormat,
    StreamChunk,
    SynthesisRequest,
    TimestampedCharacter,
    VoiceClip,
)
from .cache_store import CacheStore, cache_key
from .demux import demultiplex

logger = logging.getLogger(__name__)

HISTORY_ITEM_HEADER = "history-item-id"

PartialCallback = Callable[[VoiceClip], Union[None, Awaitable[None]]]


class SynthesisMode(str, Enum):
    BUFFERED = "buffered"
    STREAMING = "streaming"


class PipelineState(str, Enum):
    IDLE = "idle"
    REQUEST_ISSUED = "request_issued"
    BUFFERING = "buffering"
    STREAMING = "streaming"
    ASSEMBLING = "assembling"
    CACHED = "cached"
    COMPLETE = "complete"
    FAILED = "failed"


_TERMINAL_STATES = frozenset({PipelineState.COMPLETE, PipelineState.FAILED})


def validate_request(request: SynthesisRequest) -> None:
    """Reject requests the API would refuse, before any I/O happens."""

    if not request.voice_id or not request.voice_id.strip():
        raise ValidationError("A voice id is required", field="voice_id")
    if request.voice_id.strip() in {".", ".."}:
        raise ValidationError(f"Invalid voice id {request.voice_id!r}", field="voice_id")
    if request.voice_settings is None:
        raise ValidationError("Voice settings are required", field="voice_settings")
    if not request.text or not request.text.strip():
        raise ValidationError("Text cannot be empty", field="text")
    if len(request.text) > MAX_TEXT_LENGTH:
        raise ValidationError(
            f"Text cannot exceed {MAX_TEXT_LENGTH} characters (got {len(request.text)})",
            field="text",
        )


def select_mode(partial_callback: Optional[PartialCallback]) -> SynthesisMode:
    return SynthesisMode.STREAMING if partial_callback is not None else SynthesisMode.BUFFERED


def endpoint_for(request: SynthesisRequest, mode: SynthesisMode) -> str:
    path = "/text-to-speech/" + quote(request.voice_id, safe="")
    if mode is SynthesisMode.STREAMING:
        path += "/stream"
    if request.with_timestamps:
        path += "/with-timestamps"
    return path


async def guard_cancellation(
    source: AsyncIterable[bytes], cancel_event: Optional[asyncio.Event]
) -> AsyncIterator[bytes]:
    """Relay ``source`` until it ends or ``cancel_event`` is set.

    Each pending read races the event, so a stalled network read is abandoned
    as soon as cancellation is requested.
    """
    if cancel_event is None:
        async for item in source:
            yield item
        return

    iterator = source.__aiter__()
    cancel_wait = asyncio.ensure_future(cancel_event.wait())
    read: Optional[asyncio.Future] = None
    try:
        while True:
            if cancel_event.is_set():
                raise Cancelled("Synthesis cancelled")
            read = asyncio.ensure_future(iterator.__anext__())
            await asyncio.wait({read, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            if not read.done():
                read.cancel()
                await asyncio.wait({read})
                if not read.cancelled():
                    read.exception()
                raise Cancelled("Synthesis cancelled during network read")
            try:
                item = read.result()
            except StopAsyncIteration:
                return
            read = None
            yield item
    finally:
        if read is not None and not read.done():
            read.cancel()
        cancel_wait.cancel()


async def deliver_partial(
    callback: Optional[PartialCallback], clip: VoiceClip
) -> None:
    """Hand ``clip`` to ``callback``; its exceptions are logged, never raised."""

    if callback is None:
        return
    try:
        result = callback(clip)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Partial clip callback failed for %s", clip.id)


def is_monotonic(characters: Iterable[TimestampedCharacter]) -> bool:
    previous: Optional[float] = None
    for character in characters:
        if previous is not None and character.start < previous:
            return False
        previous = character.start
    return True


class SynthesisPipeline:
    """Drive one :class:`SynthesisRequest` from validation to a final clip.

    A pipeline runs once; build a new one per request.
    """

    def __init__(
        self,
        client: ElevenLabsClient,
        cache_store: CacheStore,
        request: SynthesisRequest,
        *,
        partial_callback: Optional[PartialCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self._client = client
        self._cache_store = cache_store
        self._request = request
        self._partial_callback = partial_callback
        self._cancel_event = cancel_event
        self._mode = select_mode(partial_callback)
        self._state = PipelineState.IDLE

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def mode(self) -> SynthesisMode:
        return self._mode

    def _transition(self, state: PipelineState) -> None:
        logger.debug(
            "Pipeline %s -> %s (voice=%s)", self._state.value, state.value, self._request.voice_id
        )
        self._state = state

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise Cancelled("Synthesis cancelled")

    async def run(self) -> VoiceClip:
        if self._state is not PipelineState.IDLE:
            raise RuntimeError("A synthesis pipeline can only run once")

        request = self._request
        try:
            validate_request(request)
            self._check_cancelled()

            self._transition(PipelineState.REQUEST_ISSUED)
            logger.info(
                "Requesting speech (voice=%s format=%s mode=%s timestamps=%s)",
                request.voice_id,
                request.output_format.value,
                self._mode.value,
                request.with_timestamps,
            )
            async with self._client.stream_post(
                endpoint_for(request, self._mode),
                json_body=request.to_payload(),
                params=request.to_query_params(),
            ) as response:
                clip_id = self._require_clip_id(response.headers)
                async with aclosing(
                    guard_cancellation(response.aiter_bytes(), self._cancel_event)
                ) as body:
                    if self._mode is SynthesisMode.STREAMING:
                        self._transition(PipelineState.STREAMING)
                        audio, characters = await self._consume_stream(body, clip_id)
                    else:
                        self._transition(PipelineState.BUFFERING)
                        audio, characters = await self._consume_buffered(body)

            self._transition(PipelineState.ASSEMBLING)
            clip = self._assemble(clip_id, audio, characters)

            if request.cache_format is not CacheFormat.NONE:
                self._check_cancelled()
                clip.cached_path = await self._cache(clip)
                self._transition(PipelineState.CACHED)

            self._transition(PipelineState.COMPLETE)
            return clip
        except BaseException:
            if self._state not in _TERMINAL_STATES:
                self._transition(PipelineState.FAILED)
            raise

    @staticmethod
    def _require_clip_id(headers: Mapping[str, str] | httpx.Headers) -> str:
        clip_id = headers.get(HISTORY_ITEM_HEADER)
        if not clip_id:
            raise ProtocolViolation(
                f"Response is missing the {HISTORY_ITEM_HEADER!r} header"
            )
        return clip_id

    async def _consume_buffered(
        self, body: AsyncIterable[bytes]
    ) -> tuple[bytes, list[TimestampedCharacter]]:
        data = bytearray()
        async for piece in body:
            data.extend(piece)

        if not self._request.with_timestamps:
            return bytes(data), []

        try:
            record = AlignmentRecord.model_validate_json(bytes(data))
        except SchemaValidationError as exc:
            raise ProtocolViolation(f"Unparsable timestamped response: {exc}") from exc
        return record.audio_bytes, list(record.timestamped_characters())

    async def _consume_stream(
        self, body: AsyncIterable[bytes], clip_id: str
    ) -> tuple[bytes, list[TimestampedCharacter]]:
        audio = bytearray()
        characters: list[TimestampedCharacter] = []
        decoder = pcm.PcmChunkDecoder() if self._request.output_format.is_pcm else None

        async with aclosing(
            demultiplex(body, with_timestamps=self._request.with_timestamps)
        ) as chunks:
            async for chunk in chunks:
                audio.extend(chunk.audio)
                characters.extend(chunk.characters)
                await deliver_partial(
                    self._partial_callback, self._partial_clip(clip_id, chunk, decoder)
                )

        return bytes(audio), characters

    def _partial_clip(
        self,
        clip_id: str,
        chunk: StreamChunk,
        decoder: Optional[pcm.PcmChunkDecoder],
    ) -> VoiceClip:
        request = self._request
        return VoiceClip(
            id=f"{clip_id}_{chunk.index}",
            text=request.text,
            voice_id=request.voice_id,
            output_format=request.output_format,
            audio=chunk.audio,
            samples=decoder.feed(chunk.audio) if decoder is not None else None,
            characters=chunk.characters,
            part=chunk.index,
        )

    def _assemble(
        self, clip_id: str, audio: bytes, characters: list[TimestampedCharacter]
    ) -> VoiceClip:
        request = self._request
        samples = pcm.decode(audio) if request.output_format.is_pcm else None
        if not is_monotonic(characters):
            logger.warning(
                "Alignment for %s is not ordered by start time (%d characters)",
                clip_id,
                len(characters),
            )
        return VoiceClip(
            id=clip_id,
            text=request.text,
            voice_id=request.voice_id,
            output_format=request.output_format,
            audio=audio,
            samples=samples,
            characters=tuple(characters),
        )

    async def _cache(self, clip: VoiceClip) -> Path:
        request = self._request
        path = self._cache_store.resolve_path(
            request.voice_id, request.text, request.output_format, request.cache_format
        )

        async def render() -> bytes:
            if request.output_format.is_mp3:
                return clip.audio
            if request.cache_format is CacheFormat.WAV:
                return await asyncio.to_thread(to_wav, clip.samples, clip.sample_rate, 1)
            return await to_ogg_async(clip.samples, clip.sample_rate, 1)

        await self._cache_store.write_once(path, render)
        return path


class TextToSpeechService:
    """Entry point for synthesising speech with optional streaming and caching."""

    def __init__(
        self,
        client: ElevenLabsClient,
        cache_store: Optional[CacheStore] = None,
    ):
        self._client = client
        self._cache_store = cache_store or CacheStore(client.settings.cache_dir)

    @property
    def cache_store(self) -> CacheStore:
        return self._cache_store

    def pipeline(
        self,
        request: SynthesisRequest,
        partial_callback: Optional[PartialCallback] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SynthesisPipeline:
        return SynthesisPipeline(
            self._client,
            self._cache_store,
            request,
            partial_callback=partial_callback,
            cancel_event=cancel_event,
        )

    async def synthesize(
        self,
        request: SynthesisRequest,
        partial_callback: Optional[PartialCallback] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> VoiceClip:
        """Generate speech for ``request``.

        Passing ``partial_callback`` switches to streaming; it receives one
        partial clip per chunk in arrival order and may be sync or async.
        Exceptions it raises are logged and do not stop the stream.

        When ``request`` asks for caching and the entry already exists, the
        cached clip is returned without a network call; a streaming caller
        then receives it as a single partial.
        """
        if request.cache_format is not CacheFormat.NONE:
            if cancel_event is not None and cancel_event.is_set():
                raise Cancelled("Synthesis cancelled")
            cached = await self.find_cached(request)
            if cached is not None:
                await deliver_partial(
                    partial_callback, replace(cached, id=f"{cached.id}_1", part=1)
                )
                return cached

        return await self.pipeline(
            request, partial_callback, cancel_event=cancel_event
        ).run()

    async def find_cached(self, request: SynthesisRequest) -> Optional[VoiceClip]:
        """Return the cached clip for ``request`` without touching the network.

        Cached entries carry no transcript; the clip id is the cache key.
        """
        validate_request(request)
        if request.output_format.is_pcm and request.cache_format is CacheFormat.NONE:
            return None

        path = self._cache_store.resolve_path(
            request.voice_id, request.text, request.output_format, request.cache_format
        )
        if not self._cache_store.exists(path):
            return None

        logger.info("Serving %s from cache", path)
        if request.output_format.is_mp3:
            audio = await asyncio.to_thread(path.read_bytes)
            samples = None
        else:
            data, _ = await asyncio.to_thread(sf.read, str(path), dtype="float32")
            samples = np.asarray(data, dtype=np.float32).reshape(-1)
            audio = pcm.encode(samples)

        return VoiceClip(
            id=cache_key(request.voice_id, request.text, request.output_format),
            text=request.text,
            voice_id=request.voice_id,
            output_format=request.output_format,
            audio=audio,
            samples=samples,
            cached_path=path,
        )


__all__ = [
    "HISTORY_ITEM_HEADER",
    "PartialCallback",
    "PipelineState",
    "SynthesisMode",
    "SynthesisPipeline",
    "TextToSpeechService",
    "endpoint_for",
    "guard_cancellation",
    "is_monotonic",
    "select_mode",
    "validate_request",
]
