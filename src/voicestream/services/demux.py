"""Split a streamed response body into ordered audio/transcript chunks.

Two state machines share one interface:

- plain mode: every transport read is one opaque audio chunk
- timestamp mode: the body is newline-delimited JSON; each complete line is
  an :class:`AlignmentRecord` holding base64 audio and character alignment

Both are async generators over an async iterable of ``bytes``. The consumer
pulls chunks in wire order; stopping iteration stops reading.
"""

from __future__ import annotations

import codecs
import logging
from typing import AsyncIterable, AsyncIterator, Optional

from pydantic import ValidationError as SchemaValidationError

from ..schemas.synthesis import AlignmentRecord, StreamChunk

logger = logging.getLogger(__name__)


class LineBuffer:
    """Accumulate decoded text and hand out complete lines.

    The final, possibly incomplete line is kept until more text arrives, so
    the lines produced never depend on where reads were split.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._fragments: list[str] = []

    def feed(self, data: bytes) -> list[str]:
        text = self._decoder.decode(data)
        if "\n" not in text:
            if text:
                self._fragments.append(text)
            return []
        first, *rest = text.split("\n")
        self._fragments.append(first)
        lines = ["".join(self._fragments), *rest[:-1]]
        self._fragments = [rest[-1]] if rest[-1] else []
        return lines

    def flush(self) -> str:
        """Return and clear whatever is left once the stream has ended."""

        leftover = "".join(self._fragments) + self._decoder.decode(b"", final=True)
        self._fragments = []
        return leftover


def parse_record(line: str) -> Optional[AlignmentRecord]:
    """Parse one timestamp line, returning None for blank or malformed input."""

    stripped = line.strip()
    if not stripped:
        return None
    try:
        return AlignmentRecord.model_validate_json(stripped)
    except SchemaValidationError as exc:
        logger.warning(
            "Skipping malformed timestamp line (%d chars): %s",
            len(stripped),
            exc.errors(include_url=False)[0].get("msg", exc),
        )
        return None


async def iter_plain_chunks(source: AsyncIterable[bytes]) -> AsyncIterator[StreamChunk]:
    """Yield each non-empty read as-is."""

    index = 0
    async for data in source:
        if not data:
            continue
        index += 1
        yield StreamChunk(index=index, audio=bytes(data))


async def iter_timestamp_records(
    source: AsyncIterable[bytes],
) -> AsyncIterator[StreamChunk]:
    """Yield one chunk per well-formed JSON line, skipping malformed lines."""

    buffer = LineBuffer()
    index = 0
    async for data in source:
        if not data:
            continue
        for line in buffer.feed(data):
            record = parse_record(line)
            if record is None:
                continue
            index += 1
            yield StreamChunk(
                index=index,
                audio=record.audio_bytes,
                characters=record.timestamped_characters(),
            )

    leftover = buffer.flush()
    if leftover.strip():
        logger.warning(
            "Discarding %d characters of unterminated JSON at end of stream",
            len(leftover),
        )


def demultiplex(
    source: AsyncIterable[bytes], *, with_timestamps: bool
) -> AsyncIterator[StreamChunk]:
    if with_timestamps:
        return iter_timestamp_records(source)
    return iter_plain_chunks(source)


__all__ = [
    "LineBuffer",
    "demultiplex",
    "iter_plain_chunks",
    "iter_timestamp_records",
    "parse_record",
]
