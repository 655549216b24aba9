"""Tests for the synthesis pipeline and service."""

import asyncio
import base64
import io
import json
import logging
from pathlib import Path
from typing import AsyncIterator

import httpx
import numpy as np
import pytest
import soundfile as sf

from voicestream.audio import pcm
from voicestream.errors import (
    ApiError,
    Cancelled,
    ConfigurationError,
    MalformedAudioData,
    ProtocolViolation,
    ValidationError,
)
from voicestream.schemas.synthesis import (
    CacheFormat,
    OutputFormat,
    SynthesisRequest,
    TimestampedCharacter as TC,
    VoiceClip,
    VoiceSettings,
)
from voicestream.services.cache_store import CacheStore, cache_key
from voicestream.services.tts_service import (
    HISTORY_ITEM_HEADER,
    PipelineState,
    SynthesisMode,
    TextToSpeechService,
    endpoint_for,
    guard_cancellation,
    is_monotonic,
)

VOICE_SETTINGS = VoiceSettings(stability=0.5, similarity_boost=0.75)
PCM_AUDIO = np.array([0, 1000, -1000, 32767, -32768], dtype="<i2").tobytes()


def _request(**overrides) -> SynthesisRequest:
    values = {
        "voice_id": "voice-1",
        "text": "Hello world",
        "voice_settings": VOICE_SETTINGS,
        "output_format": OutputFormat.PCM_16000,
    }
    values.update(overrides)
    return SynthesisRequest(**values)


async def _body(pieces) -> AsyncIterator[bytes]:
    for piece in pieces:
        yield piece


def _line(audio: bytes, text: str, offset: float = 0.0) -> bytes:
    starts = [offset + i * 0.05 for i in range(len(text))]
    record = {
        "audio_base64": base64.b64encode(audio).decode("ascii"),
        "alignment": {
            "characters": list(text),
            "character_start_times_seconds": starts,
            "character_end_times_seconds": [start + 0.05 for start in starts],
        },
    }
    return (json.dumps(record) + "\n").encode("utf-8")


class RecordingHandler:
    """MockTransport handler that records requests and replays one body."""

    def __init__(self, pieces=None, *, headers=None, status_code: int = 200, content=None):
        self.pieces = pieces
        self.content = content
        self.headers = {HISTORY_ITEM_HEADER: "clip-1"} if headers is None else headers
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.pieces is not None:
            return httpx.Response(self.status_code, headers=self.headers, content=_body(self.pieces))
        return httpx.Response(self.status_code, headers=self.headers, content=self.content or b"")


def test_endpoint_for_each_mode() -> None:
    request = _request()
    stamped = _request(with_timestamps=True)

    assert endpoint_for(request, SynthesisMode.BUFFERED) == "/text-to-speech/voice-1"
    assert endpoint_for(request, SynthesisMode.STREAMING) == "/text-to-speech/voice-1/stream"
    assert endpoint_for(stamped, SynthesisMode.BUFFERED) == "/text-to-speech/voice-1/with-timestamps"
    assert (
        endpoint_for(stamped, SynthesisMode.STREAMING)
        == "/text-to-speech/voice-1/stream/with-timestamps"
    )


def test_endpoint_escapes_voice_id() -> None:
    request = _request(voice_id="../voices")

    assert endpoint_for(request, SynthesisMode.BUFFERED) == "/text-to-speech/..%2Fvoices"


def test_is_monotonic() -> None:
    assert is_monotonic([])
    assert is_monotonic([TC("a", 0.0, 0.1), TC("b", 0.1, 0.2), TC("c", 0.1, 0.3)])
    assert not is_monotonic([TC("a", 0.2, 0.3), TC("b", 0.1, 0.2)])


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"text": "x" * 5001}, "text"),
        ({"text": ""}, "text"),
        ({"text": "   "}, "text"),
        ({"voice_id": ""}, "voice_id"),
        ({"voice_id": ".."}, "voice_id"),
        ({"voice_settings": None}, "voice_settings"),
    ],
)
async def test_invalid_requests_fail_before_any_io(make_client, overrides, field) -> None:
    handler = RecordingHandler(content=PCM_AUDIO)
    service = TextToSpeechService(make_client(handler))
    pipeline = service.pipeline(_request(**overrides))

    with pytest.raises(ValidationError) as excinfo:
        await pipeline.run()

    assert excinfo.value.field == field
    assert handler.requests == []
    assert pipeline.state is PipelineState.FAILED


@pytest.mark.asyncio
async def test_text_at_limit_is_accepted(make_client) -> None:
    handler = RecordingHandler(content=PCM_AUDIO)
    service = TextToSpeechService(make_client(handler))

    clip = await service.synthesize(_request(text="x" * 5000))

    assert clip.audio == PCM_AUDIO
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_buffered_plain_request(make_client) -> None:
    handler = RecordingHandler(content=PCM_AUDIO)
    service = TextToSpeechService(make_client(handler))
    pipeline = service.pipeline(_request(optimize_streaming_latency=2, model_id="eleven_turbo_v2"))

    clip = await pipeline.run()

    request = handler.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/text-to-speech/voice-1"
    assert request.url.params["output_format"] == "pcm_16000"
    assert request.url.params["optimize_streaming_latency"] == "2"
    assert request.headers["xi-api-key"] == "test-key"
    assert json.loads(request.content) == {
        "text": "Hello world",
        "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
        "model_id": "eleven_turbo_v2",
    }

    assert pipeline.mode is SynthesisMode.BUFFERED
    assert pipeline.state is PipelineState.COMPLETE
    assert clip.id == "clip-1"
    assert clip.audio == PCM_AUDIO
    assert pcm.encode(clip.samples) == PCM_AUDIO
    assert clip.duration_seconds == pytest.approx(5 / 16000)
    assert clip.characters == ()
    assert clip.cached_path is None
    assert not clip.is_partial


@pytest.mark.asyncio
async def test_buffered_timestamped_request(make_client) -> None:
    handler = RecordingHandler(content=_line(PCM_AUDIO, "Hi!").rstrip(b"\n"))
    service = TextToSpeechService(make_client(handler))

    clip = await service.synthesize(_request(text="Hi!", with_timestamps=True))

    assert handler.requests[0].url.path == "/v1/text-to-speech/voice-1/with-timestamps"
    assert clip.audio == PCM_AUDIO
    assert [c.character for c in clip.characters] == ["H", "i", "!"]
    assert clip.characters[1].start == pytest.approx(0.05)


@pytest.mark.asyncio
async def test_buffered_timestamped_garbage_is_a_protocol_violation(make_client) -> None:
    handler = RecordingHandler(content=b"not json at all")
    service = TextToSpeechService(make_client(handler))
    pipeline = service.pipeline(_request(with_timestamps=True))

    with pytest.raises(ProtocolViolation):
        await pipeline.run()
    assert pipeline.state is PipelineState.FAILED


@pytest.mark.asyncio
async def test_out_of_order_alignment_is_kept_and_logged(make_client, caplog) -> None:
    record = {
        "audio_base64": base64.b64encode(PCM_AUDIO[:4]).decode(),
        "alignment": {
            "characters": ["a", "b"],
            "character_start_times_seconds": [0.2, 0.1],
            "character_end_times_seconds": [0.3, 0.2],
        },
    }
    handler = RecordingHandler(content=json.dumps(record).encode())
    service = TextToSpeechService(make_client(handler))

    with caplog.at_level(logging.WARNING, logger="voicestream.services.tts_service"):
        clip = await service.synthesize(_request(text="ab", with_timestamps=True))

    assert [c.start for c in clip.characters] == [0.2, 0.1]
    assert "not ordered by start time" in caplog.text


@pytest.mark.asyncio
async def test_missing_history_header_fails_without_callbacks(make_client) -> None:
    handler = RecordingHandler([PCM_AUDIO], headers={})
    service = TextToSpeechService(make_client(handler))
    partials: list[VoiceClip] = []
    pipeline = service.pipeline(_request(cache_format=CacheFormat.WAV), partials.append)

    with pytest.raises(ProtocolViolation):
        await pipeline.run()

    assert partials == []
    assert pipeline.state is PipelineState.FAILED
    assert not service.cache_store.root.exists()


@pytest.mark.asyncio
async def test_odd_length_pcm_body_is_rejected(make_client) -> None:
    handler = RecordingHandler(content=PCM_AUDIO + b"\x00")
    service = TextToSpeechService(make_client(handler))

    with pytest.raises(MalformedAudioData):
        await service.synthesize(_request())


@pytest.mark.asyncio
async def test_api_error_status_is_surfaced(make_client) -> None:
    handler = RecordingHandler(
        status_code=401,
        content=json.dumps({"detail": {"status": "invalid_api_key"}}).encode(),
    )
    service = TextToSpeechService(make_client(handler))
    pipeline = service.pipeline(_request())

    with pytest.raises(ApiError) as excinfo:
        await pipeline.run()

    assert excinfo.value.status_code == 401
    assert excinfo.value.detail == {"status": "invalid_api_key"}
    assert pipeline.state is PipelineState.FAILED


@pytest.mark.asyncio
async def test_missing_api_key_is_a_configuration_error(make_client, settings) -> None:
    handler = RecordingHandler(content=PCM_AUDIO)
    keyless = settings.model_copy(update={"elevenlabs_api_key": None})
    service = TextToSpeechService(make_client(handler, keyless))

    with pytest.raises(ConfigurationError):
        await service.synthesize(_request())
    assert handler.requests == []


@pytest.mark.asyncio
async def test_streaming_plain_partials_in_order(make_client) -> None:
    pieces = [PCM_AUDIO[:3], PCM_AUDIO[3:8], PCM_AUDIO[8:]]
    handler = RecordingHandler(pieces)
    service = TextToSpeechService(make_client(handler))
    partials: list[VoiceClip] = []
    pipeline = service.pipeline(_request(), partials.append)

    clip = await pipeline.run()

    assert handler.requests[0].url.path == "/v1/text-to-speech/voice-1/stream"
    assert pipeline.mode is SynthesisMode.STREAMING
    assert [p.id for p in partials] == ["clip-1_1", "clip-1_2", "clip-1_3"]
    assert [p.part for p in partials] == [1, 2, 3]
    assert all(p.is_partial for p in partials)
    assert [p.audio for p in partials] == pieces
    assert [len(p.samples) for p in partials] == [1, 3, 1]
    assert b"".join(p.audio for p in partials) == clip.audio == PCM_AUDIO
    assert pcm.encode(np.concatenate([p.samples for p in partials])) == PCM_AUDIO
    assert clip.id == "clip-1"


@pytest.mark.asyncio
async def test_streaming_timestamps_concatenate_to_final_clip(make_client) -> None:
    body = _line(PCM_AUDIO[:4], "He") + _line(PCM_AUDIO[4:], "y!", 0.1)
    handler = RecordingHandler([body[:10], body[10:57], body[57:]])
    service = TextToSpeechService(make_client(handler))
    partials: list[VoiceClip] = []

    clip = await service.synthesize(_request(text="Hey!", with_timestamps=True), partials.append)

    assert handler.requests[0].url.path == "/v1/text-to-speech/voice-1/stream/with-timestamps"
    assert len(partials) == 2
    assert b"".join(p.audio for p in partials) == clip.audio == PCM_AUDIO
    assert tuple(c for p in partials for c in p.characters) == clip.characters
    assert "".join(c.character for c in clip.characters) == "Hey!"


@pytest.mark.asyncio
async def test_async_callback_is_awaited(make_client) -> None:
    handler = RecordingHandler([PCM_AUDIO[:4], PCM_AUDIO[4:]])
    service = TextToSpeechService(make_client(handler))
    seen: list[str] = []

    async def on_partial(partial: VoiceClip) -> None:
        await asyncio.sleep(0)
        seen.append(partial.id)

    await service.synthesize(_request(), on_partial)

    assert seen == ["clip-1_1", "clip-1_2"]


@pytest.mark.asyncio
async def test_failing_callback_does_not_abort_stream(make_client, caplog) -> None:
    handler = RecordingHandler([PCM_AUDIO[:4], PCM_AUDIO[4:6], PCM_AUDIO[6:]])
    service = TextToSpeechService(make_client(handler))
    calls: list[int] = []

    def on_partial(partial: VoiceClip) -> None:
        calls.append(partial.part)
        if partial.part == 1:
            raise RuntimeError("consumer exploded")

    with caplog.at_level(logging.ERROR, logger="voicestream.services.tts_service"):
        clip = await service.synthesize(_request(), on_partial)

    assert calls == [1, 2, 3]
    assert clip.audio == PCM_AUDIO
    assert "Partial clip callback failed for clip-1_1" in caplog.text


@pytest.mark.asyncio
async def test_mp3_stream_is_cached_verbatim(make_client) -> None:
    mp3 = [b"ID3\x04\x00", b"\xff\xfb\x90\x00", b"\x00\x00"]
    handler = RecordingHandler(mp3)
    service = TextToSpeechService(make_client(handler))
    partials: list[VoiceClip] = []
    pipeline = service.pipeline(
        _request(output_format=OutputFormat.MP3_44100_128, cache_format=CacheFormat.OGG),
        partials.append,
    )

    clip = await pipeline.run()

    assert pipeline.state is PipelineState.COMPLETE
    assert clip.samples is None
    assert all(p.samples is None for p in partials)
    assert clip.cached_path.suffix == ".mp3"
    assert clip.cached_path.read_bytes() == b"".join(mp3)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("cache_format", "suffix", "magic"),
    [(CacheFormat.WAV, ".wav", b"RIFF"), (CacheFormat.OGG, ".ogg", b"OggS")],
)
async def test_pcm_is_cached_in_container(make_client, cache_format, suffix, magic) -> None:
    samples = (0.2 * np.sin(np.linspace(0, 40 * np.pi, 4000))).astype(np.float32)
    audio = pcm.encode(samples)
    handler = RecordingHandler(content=audio)
    service = TextToSpeechService(make_client(handler))

    clip = await service.synthesize(_request(cache_format=cache_format))

    path = clip.cached_path
    assert path.suffix == suffix
    assert path.read_bytes()[:4] == magic
    info = sf.info(str(path))
    assert info.samplerate == 16000
    assert info.channels == 1
    if cache_format is CacheFormat.WAV:
        assert info.frames == 4000


@pytest.mark.asyncio
async def test_wav_cache_round_trips_samples(make_client) -> None:
    handler = RecordingHandler(content=PCM_AUDIO)
    service = TextToSpeechService(make_client(handler))

    clip = await service.synthesize(_request(cache_format=CacheFormat.WAV))

    data, rate = sf.read(io.BytesIO(clip.cached_path.read_bytes()), dtype="int16")
    assert rate == 16000
    assert data.astype("<i2").tobytes() == PCM_AUDIO


@pytest.mark.asyncio
async def test_concurrent_identical_requests_write_once(make_client, monkeypatch) -> None:
    writes: list[Path] = []
    original_write = CacheStore.write

    def spy(self, path, data):
        writes.append(path)
        return original_write(self, path, data)

    monkeypatch.setattr(CacheStore, "write", spy)
    handler = RecordingHandler(content=PCM_AUDIO)
    service = TextToSpeechService(make_client(handler))
    request = _request(cache_format=CacheFormat.WAV)

    first, second = await asyncio.gather(service.synthesize(request), service.synthesize(request))

    assert len(handler.requests) == 2
    assert first.cached_path == second.cached_path
    assert len(writes) == 1


@pytest.mark.asyncio
async def test_cancel_before_start_makes_no_request(make_client) -> None:
    handler = RecordingHandler(content=PCM_AUDIO)
    service = TextToSpeechService(make_client(handler))
    cancel = asyncio.Event()
    cancel.set()
    pipeline = service.pipeline(_request(), cancel_event=cancel)

    with pytest.raises(Cancelled):
        await pipeline.run()

    assert handler.requests == []
    assert pipeline.state is PipelineState.FAILED


@pytest.mark.asyncio
async def test_cancel_during_stalled_read(make_client, settings) -> None:
    stalled = asyncio.Event()

    async def stalling_body() -> AsyncIterator[bytes]:
        yield PCM_AUDIO[:4]
        await stalled.wait()
        yield PCM_AUDIO[4:]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={HISTORY_ITEM_HEADER: "clip-1"}, content=stalling_body())

    service = TextToSpeechService(make_client(handler))
    cancel = asyncio.Event()
    partials: list[VoiceClip] = []

    def on_partial(partial: VoiceClip) -> None:
        partials.append(partial)
        asyncio.get_running_loop().call_later(0.01, cancel.set)

    pipeline = service.pipeline(
        _request(cache_format=CacheFormat.WAV), on_partial, cancel_event=cancel
    )

    with pytest.raises(Cancelled):
        await asyncio.wait_for(pipeline.run(), timeout=5)

    assert len(partials) == 1
    assert pipeline.state is PipelineState.FAILED
    assert not settings.cache_dir.exists() or not any(settings.cache_dir.rglob("*"))


@pytest.mark.asyncio
async def test_guard_cancellation_relays_until_event() -> None:
    cancel = asyncio.Event()

    async def source() -> AsyncIterator[bytes]:
        yield b"a"
        yield b"b"
        await asyncio.Event().wait()

    received: list[bytes] = []
    with pytest.raises(Cancelled):
        async for item in guard_cancellation(source(), cancel):
            received.append(item)
            if len(received) == 2:
                asyncio.get_running_loop().call_later(0.01, cancel.set)

    assert received == [b"a", b"b"]


@pytest.mark.asyncio
async def test_guard_cancellation_without_event_is_passthrough() -> None:
    received = [item async for item in guard_cancellation(_body([b"a", b"b"]), None)]

    assert received == [b"a", b"b"]


@pytest.mark.asyncio
async def test_pipeline_runs_only_once(make_client) -> None:
    handler = RecordingHandler(content=PCM_AUDIO)
    pipeline = TextToSpeechService(make_client(handler)).pipeline(_request())

    await pipeline.run()

    with pytest.raises(RuntimeError):
        await pipeline.run()


@pytest.mark.asyncio
async def test_find_cached_reads_wav_without_network(make_client) -> None:
    handler = RecordingHandler(content=PCM_AUDIO)
    service = TextToSpeechService(make_client(handler))
    request = _request(cache_format=CacheFormat.WAV)
    generated = await service.synthesize(request)

    offline = TextToSpeechService(make_client(RecordingHandler()), service.cache_store)
    cached = await offline.find_cached(request)

    assert cached is not None
    assert cached.id == cache_key("voice-1", "Hello world", OutputFormat.PCM_16000)
    assert cached.audio == generated.audio
    assert cached.cached_path == generated.cached_path
    assert cached.characters == ()


@pytest.mark.asyncio
async def test_find_cached_mp3_and_miss(make_client) -> None:
    handler = RecordingHandler(content=b"\xff\xfb\x90\x00")
    service = TextToSpeechService(make_client(handler))
    request = _request(output_format=OutputFormat.MP3_44100_128, cache_format=CacheFormat.WAV)

    assert await service.find_cached(request) is None
    await service.synthesize(request)
    cached = await service.find_cached(request)

    assert cached.audio == b"\xff\xfb\x90\x00"
    assert cached.samples is None
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_find_cached_pcm_without_container(make_client) -> None:
    service = TextToSpeechService(make_client(RecordingHandler()))

    assert await service.find_cached(_request()) is None


@pytest.mark.asyncio
async def test_cached_request_is_served_without_network(make_client) -> None:
    handler = RecordingHandler(content=PCM_AUDIO)
    service = TextToSpeechService(make_client(handler))
    request = _request(cache_format=CacheFormat.WAV)

    first = await service.synthesize(request)
    second = await service.synthesize(request)

    assert len(handler.requests) == 1
    assert second.cached_path == first.cached_path
    assert second.audio == first.audio


@pytest.mark.asyncio
async def test_cached_request_streams_one_partial(make_client) -> None:
    handler = RecordingHandler([PCM_AUDIO[:4], PCM_AUDIO[4:]])
    service = TextToSpeechService(make_client(handler))
    request = _request(cache_format=CacheFormat.WAV)
    await service.synthesize(request)
    partials: list[VoiceClip] = []

    clip = await service.synthesize(request, partials.append)

    assert len(handler.requests) == 1
    assert [p.part for p in partials] == [1]
    assert partials[0].id == f"{clip.id}_1"
    assert partials[0].audio == clip.audio == PCM_AUDIO


@pytest.mark.asyncio
async def test_uncached_request_always_hits_network(make_client) -> None:
    handler = RecordingHandler(content=PCM_AUDIO)
    service = TextToSpeechService(make_client(handler))

    await service.synthesize(_request())
    await service.synthesize(_request())

    assert len(handler.requests) == 2
