"""Split a raw byte stream into text lines.

output-streamer streaming module v0.1.0

One LineFramer wraps one pipe (stdout or stderr). It reads fixed-size chunks,
so a line longer than the chunk size is assembled across reads instead of
hitting asyncio.StreamReader.readline()'s 64 KiB limit.

Behaviour:
- ``\\n`` terminates a line, a trailing ``\\r`` is dropped (CRLF output)
- bytes are decoded with ``errors="replace"``, decoding never fails
- a final line without terminator is flushed at EOF
- a read error yields one system line and ends the stream
- optional ``max_line_bytes`` splits oversized lines and reports it;
  a multibyte character is never cut in half
- ``flush()`` hands back whatever was read but not yet yielded
"""

from __future__ import annotations

import codecs
import logging
from collections.abc import AsyncIterator
from typing import NamedTuple, Protocol

from .lines import LineSource

__all__ = [
    "ByteReader",
    "FramedLine",
    "LineFramer",
    "DEFAULT_CHUNK_SIZE",
]

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 4096


class ByteReader(Protocol):
    """Anything with an asyncio.StreamReader-style ``read``."""

    async def read(self, n: int = -1) -> bytes: ...


class FramedLine(NamedTuple):
    """A line before the engine has assigned it a sequence number."""

    source: LineSource
    text: str


class LineFramer:
    """Lazy, single-pass line splitter over one byte stream.

    Example:
        framer = LineFramer(process.stdout, LineSource.STDOUT)
        async for source, text in framer:
            await engine.ingest(source, text)
    """

    def __init__(
        self,
        reader: ByteReader,
        source: LineSource,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_line_bytes: int | None = None,
        encoding: str = "utf-8",
    ) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self._reader = reader
        self._source = source
        self._chunk_size = chunk_size
        self._max_line_bytes = max_line_bytes or None
        # Pieces of a split line share one decoder so a character spanning
        # the cut is carried over instead of replaced
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = bytearray()
        self._oversized = False
        self._started = False

    @property
    def source(self) -> LineSource:
        return self._source

    def __aiter__(self) -> AsyncIterator[FramedLine]:
        return self._frame()

    def flush(self) -> list[FramedLine]:
        """Take the bytes read but not yet yielded as lines.

        Used when reading is abandoned before EOF (e.g. the pump is
        cancelled); the buffer is empty afterwards.
        """
        pending, self._pending = self._pending, bytearray()
        *complete, tail = pending.split(b"\n")
        lines: list[FramedLine] = []
        for raw in complete:
            lines.extend(self._complete(raw))
        if tail:
            lines.extend(self._complete(tail))
        return lines

    def _decode(self, raw: bytes | bytearray, final: bool = True) -> FramedLine:
        return FramedLine(self._source, self._decoder.decode(bytes(raw), final))

    def _system(self, message: str) -> FramedLine:
        return FramedLine(LineSource.SYSTEM, message)

    def _warn_oversized(self) -> list[FramedLine]:
        if self._oversized:
            return []
        self._oversized = True
        return [
            self._system(
                f"{self._source.value} line exceeded {self._max_line_bytes} bytes and was split"
            )
        ]

    def _cut(self, raw: bytes | bytearray) -> int:
        """Split offset at most max_line_bytes, moved back onto a character start."""
        limit = self._max_line_bytes
        cut = limit
        while cut > 0 and (raw[cut] & 0xC0) == 0x80:
            cut -= 1
        # A single character wider than the limit goes out whole
        if cut == 0:
            cut = limit
            while cut < len(raw) and (raw[cut] & 0xC0) == 0x80:
                cut += 1
        return cut

    def _complete(self, raw: bytes | bytearray) -> list[FramedLine]:
        """A terminated line, split into pieces if it is too long."""
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        limit = self._max_line_bytes
        lines: list[FramedLine] = []
        if limit is not None:
            while len(raw) > limit:
                cut = self._cut(raw)
                lines.append(self._decode(raw[:cut], final=False))
                lines.extend(self._warn_oversized())
                raw = raw[cut:]
        last = self._decode(raw)
        if last.text or not lines:
            lines.append(last)
        self._oversized = False
        return lines

    async def _frame(self) -> AsyncIterator[FramedLine]:
        # The reader can only be consumed once
        if self._started:
            return
        self._started = True

        pending = self._pending
        limit = self._max_line_bytes
        name = self._source.value

        while True:
            try:
                chunk = await self._reader.read(self._chunk_size)
            except (OSError, ValueError) as e:
                logger.warning(f"{name} read error: {e}")
                for line in self.flush():
                    yield line
                yield self._system(f"{name} read error: {e}")
                return

            if not chunk:
                break
            # Bytes before scan were already searched for a terminator
            scan = len(pending)
            pending.extend(chunk)

            while (end := pending.find(b"\n", scan)) >= 0:
                raw = bytes(pending[:end])
                del pending[: end + 1]
                scan = 0
                for line in self._complete(raw):
                    yield line

            # Unterminated line already over the limit: emit what we have
            if limit is not None:
                while len(pending) > limit:
                    cut = self._cut(pending)
                    piece = bytes(pending[:cut])
                    del pending[:cut]
                    yield self._decode(piece, final=False)
                    for line in self._warn_oversized():
                        yield line

        for line in self.flush():
            yield line
        logger.debug(f"{name} reached end of stream")
