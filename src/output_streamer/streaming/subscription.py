"""Viewer handle returned by BroadcastEngine.connect().

output-streamer streaming module v0.1.0

A Subscription decouples the engine from the viewer's transport: ``deliver``
only enqueues, the transport drains the queue at its own pace. When the
queue is full the viewer is too slow and delivery fails, which gets it
dropped from the registry instead of stalling the broadcast.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from ..errors import EngineInvariantError, SubscriberOverflowError
from .lines import TaggedLine

__all__ = ["Subscription", "DEFAULT_QUEUE_SIZE"]

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000

_END = object()


class Subscription:
    """Replay snapshot plus a live line queue for one viewer.

    Attributes:
        snapshot: Lines replayed at join time, oldest first
        error: Why the subscription failed, None otherwise

    Example:
        async with await engine.connect() as sub:
            async for line in sub.lines():
                await send(line.to_payload())
    """

    def __init__(
        self,
        snapshot: tuple[TaggedLine, ...] = (),
        *,
        start_sequence: int = 0,
        maxsize: int = DEFAULT_QUEUE_SIZE,
        on_close: Callable[["Subscription"], Awaitable[None]] | None = None,
    ) -> None:
        if maxsize <= 0:
            raise ValueError(f"maxsize must be positive, got {maxsize}")
        self.snapshot = snapshot
        self.error: BaseException | None = None
        self._maxsize = maxsize
        # Bounded by hand so the end marker always fits
        self._queue: asyncio.Queue[TaggedLine | object] = asyncio.Queue()
        self._next_sequence = start_sequence + 1
        self._finished = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._finished

    async def deliver(self, line: TaggedLine) -> None:
        if self._finished:
            # Closed viewers discard lines until the engine unregisters them
            return
        if line.sequence != self._next_sequence:
            raise EngineInvariantError(
                f"expected line #{self._next_sequence}, got #{line.sequence}"
            )
        if self._queue.qsize() >= self._maxsize:
            raise SubscriberOverflowError(self._maxsize)
        self._queue.put_nowait(line)
        self._next_sequence += 1

    def finish(self) -> None:
        """End of stream: iteration stops after the queued lines."""
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(_END)

    def fail(self, error: BaseException) -> None:
        """Mark the subscription failed and end iteration."""
        if self._finished:
            return
        logger.debug(f"Subscription failed: {type(error).__name__}: {error}")
        self.error = error
        # Queued lines are useless once the viewer is gone
        while not self._queue.empty():
            self._queue.get_nowait()
        self.finish()

    async def close(self) -> None:
        """Detach from the engine. Safe to call more than once."""
        self.finish()
        if self._on_close is not None:
            on_close, self._on_close = self._on_close, None
            await on_close(self)

    async def get(self, timeout: float | None = None) -> TaggedLine | None:
        """Next live line, or None once the stream has ended.

        Args:
            timeout: Seconds to wait (None = forever)

        Raises:
            asyncio.TimeoutError: No line arrived within ``timeout``
        """
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _END:
            # Keep the marker so later calls also see the end
            self._queue.put_nowait(_END)
            return None
        return item  # type: ignore[return-value]

    def __aiter__(self) -> AsyncIterator[TaggedLine]:
        return self._live()

    async def _live(self) -> AsyncIterator[TaggedLine]:
        while (line := await self.get()) is not None:
            yield line

    async def lines(self) -> AsyncIterator[TaggedLine]:
        """Snapshot followed by live lines: the viewer's whole transcript."""
        for line in self.snapshot:
            yield line
        async for line in self:
            yield line

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        state = "failed" if self.error else ("closed" if self._finished else "open")
        return (
            f"Subscription(snapshot={len(self.snapshot)}, "
            f"next=#{self._next_sequence}, {state})"
        )
