"""Live broadcast engine.

output-streamer streaming module v0.1.0

The engine is the single serialization point of the system. One coordinating
task owns the ReplayBuffer and the SubscriberRegistry and executes commands
from an inbox one at a time, so:

- "assign sequence + append + fan-out" of one line never interleaves with
  another line or with a join
- "snapshot + register" of a join is atomic with respect to ingestion: every
  line after the snapshot is delivered live, none twice

State machine:
    IDLE --first ingest--> STREAMING --process exit--> DRAINING
    DRAINING --last stream closed--> CLOSED (final system line appended)

Lines from stdout and stderr are ordered by arrival at the engine, which is
not necessarily the order the child process wrote them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import anyio

from ..errors import EngineClosedError, EngineInvariantError
from .framer import ByteReader, LineFramer
from .lines import LineSource, TaggedLine
from .registry import DEFAULT_DELIVERY_TIMEOUT, SubscriberRegistry
from .replay import ReplayBuffer
from .subscription import DEFAULT_QUEUE_SIZE, Subscription

__all__ = [
    "BroadcastEngine",
    "EngineState",
    "ProcessOutcome",
]

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    """Lifecycle of a BroadcastEngine."""

    IDLE = "idle"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(frozen=True)
class ProcessOutcome:
    """The "process completed" event delivered by the process driver.

    Attributes:
        success: True when the command exited with status 0
        exit_code: Exit status, None if the process never started
        detail: Error detail (launch failure, signal, ...)
    """

    success: bool
    exit_code: int | None = None
    detail: str = ""

    def describe(self) -> str:
        if self.success:
            return "Command completed successfully"
        if self.detail:
            return f"Command exited with error: {self.detail}"
        return f"Command exited with error: exit status {self.exit_code}"


_Handler = Callable[..., Awaitable[Any]]


class BroadcastEngine:
    """Fan captured lines out to viewers, with replay for late joiners.

    Example:
        async with BroadcastEngine(capacity=1000) as engine:
            async with anyio.create_task_group() as tg:
                tg.start_soon(engine.pump, process.stdout, LineSource.STDOUT)
                tg.start_soon(engine.pump, process.stderr, LineSource.STDERR)
            await engine.process_exited(ProcessOutcome(success=True, exit_code=0))

        # viewer side
        async with await engine.connect() as sub:
            async for line in sub.lines():
                ...
    """

    def __init__(
        self,
        capacity: int,
        *,
        delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT,
        client_queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._buffer = ReplayBuffer(capacity)
        self._registry = SubscriberRegistry(delivery_timeout)
        self._client_queue_size = client_queue_size

        self._state = EngineState.IDLE
        self._sequence = 0
        self._open_streams: Counter[LineSource] = Counter()
        self._outcome: ProcessOutcome | None = None

        self._inbox: asyncio.Queue[tuple[_Handler, tuple[Any, ...], asyncio.Future[Any]]] = (
            asyncio.Queue()
        )
        self._task: asyncio.Task[None] | None = None
        self._failure: BaseException | None = None
        self._closed_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Properties (read-only views, safe from any task on the loop)
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def last_sequence(self) -> int:
        """Sequence number of the most recently ingested line (0 if none)."""
        return self._sequence

    @property
    def subscriber_count(self) -> int:
        return len(self._registry)

    @property
    def capacity(self) -> int:
        return self._buffer.capacity

    @property
    def outcome(self) -> ProcessOutcome | None:
        return self._outcome

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle of the coordinating task
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the coordinating task. Must be called inside the event loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="broadcast-engine")
        logger.debug("Broadcast engine started")

    async def stop(self) -> None:
        """Stop the coordinating task and end every open subscription."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        elif task is not None and not task.cancelled() and task.exception() is not None:
            logger.debug(f"Broadcast engine had failed: {task.exception()}")
        self._fail_pending(EngineClosedError("engine stopped"))
        for subscriber in self._registry.subscribers:
            self._registry.unregister(subscriber)
            _finish(subscriber)
        logger.debug("Broadcast engine stopped")

    async def __aenter__(self) -> "BroadcastEngine":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def wait_closed(self) -> None:
        """Wait until the engine reached CLOSED."""
        await self._closed_event.wait()

    # ------------------------------------------------------------------
    # Public operations (each one is a command for the coordinating task)
    # ------------------------------------------------------------------

    async def ingest(self, source: LineSource | str, text: str) -> TaggedLine:
        """Sequence, buffer and fan out one line.

        Returns:
            The TaggedLine as delivered to subscribers

        Raises:
            EngineClosedError: The engine is CLOSED
        """
        return await self._submit(self._do_ingest, LineSource(source), text)

    async def open_stream(self, source: LineSource | str) -> None:
        """Announce a line framer that will feed the engine."""
        await self._submit(self._do_open_stream, LineSource(source))

    async def close_stream(self, source: LineSource | str) -> None:
        """Announce that a line framer reached the end of its stream."""
        await self._submit(self._do_close_stream, LineSource(source))

    async def pump(
        self,
        reader: ByteReader,
        source: LineSource | str,
        **framer_options: Any,
    ) -> int:
        """Frame ``reader`` into lines and ingest them until EOF.

        Runs inside open_stream/close_stream. Stops early without error if
        the engine is closed underneath it.

        Returns:
            Number of lines ingested
        """
        source = LineSource(source)
        try:
            await self.open_stream(source)
        except EngineClosedError:
            logger.debug(f"{source.value} pump not started: engine closed")
            return 0
        count = 0
        framer = LineFramer(reader, source, **framer_options)
        interrupted = False
        try:
            async for line_source, text in framer:
                await self.ingest(line_source, text)
                count += 1
        except EngineClosedError:
            logger.debug(f"{source.value} pump stopped: engine closed")
        except anyio.get_cancelled_exc_class():
            interrupted = True
            raise
        finally:
            # Must reach the engine even when the pump is cancelled
            with anyio.CancelScope(shield=True):
                if interrupted:
                    await self._ingest_cut_off(framer)
                with contextlib.suppress(EngineClosedError):
                    await self.close_stream(source)
        logger.debug(f"{source.value} pump finished after {count} line(s)")
        return count

    async def _ingest_cut_off(self, framer: LineFramer) -> None:
        """Hand over the partial output of an abandoned stream and say so."""
        name = framer.source.value
        try:
            for line_source, text in framer.flush():
                await self.ingest(line_source, text)
            await self.ingest(
                LineSource.SYSTEM, f"{name} still open, stopped reading before end of output"
            )
        except EngineClosedError:
            logger.debug(f"{name} partial output dropped: engine closed")

    async def process_exited(self, outcome: ProcessOutcome) -> None:
        """Deliver the process completion event (first call wins)."""
        await self._submit(self._do_process_exited, outcome)

    async def shutdown(self, reason: str = "streaming stopped") -> None:
        """Close immediately, even if framers are still blocked in a read."""
        await self._submit(self._do_shutdown, reason)

    async def connect(
        self,
        *,
        queue_size: int | None = None,
        after_sequence: int | None = None,
    ) -> Subscription:
        """Race-free join: snapshot and registration in one step.

        Args:
            queue_size: Per-viewer live queue bound (default from engine)
            after_sequence: Last sequence the viewer already has; replayed
                lines up to it are skipped (reconnect resume)

        Returns:
            A Subscription; on a CLOSED engine it carries the full history
            and is already finished
        """
        return await self._submit(self._do_connect, queue_size, after_sequence)

    async def disconnect(self, subscription: Subscription) -> bool:
        """Unregister a viewer. Returns False if it was not registered."""
        if not self.is_running:
            subscription.finish()
            return self._registry.unregister(subscription)
        return await self._submit(self._do_disconnect, subscription)

    async def snapshot(self) -> tuple[TaggedLine, ...]:
        """Consistent copy of the replay buffer."""
        return await self._submit(self._do_snapshot)

    # ------------------------------------------------------------------
    # Coordinating task
    # ------------------------------------------------------------------

    async def _submit(self, handler: _Handler, *args: Any) -> Any:
        if self._failure is not None:
            raise self._failure
        if not self.is_running:
            raise RuntimeError("BroadcastEngine is not running; use 'async with engine'")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((handler, args, future))
        return await future

    async def _run(self) -> None:
        while True:
            handler, args, future = await self._inbox.get()
            try:
                result = await handler(*args)
            except EngineInvariantError as e:
                logger.critical(f"Broadcast engine invariant violated: {e}")
                self._failure = e
                if not future.done():
                    future.set_exception(e)
                self._fail_pending(e)
                raise
            except asyncio.CancelledError:
                if not future.done():
                    future.set_exception(EngineClosedError("engine stopped"))
                raise
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

    def _fail_pending(self, error: BaseException) -> None:
        while not self._inbox.empty():
            _, _, future = self._inbox.get_nowait()
            if not future.done():
                future.set_exception(error)

    # ------------------------------------------------------------------
    # Command handlers (run on the coordinating task only)
    # ------------------------------------------------------------------

    def _set_state(self, state: EngineState) -> None:
        if state is self._state:
            return
        logger.info(f"Engine state: {self._state.value} -> {state.value}")
        self._state = state

    async def _broadcast(self, source: LineSource, text: str) -> TaggedLine:
        line = TaggedLine(text=text, source=source, sequence=self._sequence + 1)
        previous = self._buffer.last_sequence
        if previous is not None and previous != self._sequence:
            raise EngineInvariantError(
                f"replay buffer ends at #{previous}, engine is at #{self._sequence}"
            )
        self._sequence = line.sequence
        self._buffer.append(line)
        failures = await self._registry.for_each(line)
        if failures:
            logger.info(
                f"Line #{line.sequence}: dropped {len(failures)} subscriber(s), "
                f"{len(self._registry)} remaining"
            )
        return line

    async def _do_ingest(self, source: LineSource, text: str) -> TaggedLine:
        if self._state is EngineState.CLOSED:
            raise EngineClosedError(f"engine closed, {source.value} line rejected")
        if self._state is EngineState.IDLE:
            self._set_state(EngineState.STREAMING)
        return await self._broadcast(source, text)

    async def _do_open_stream(self, source: LineSource) -> None:
        if self._state is EngineState.CLOSED:
            raise EngineClosedError(f"engine closed, cannot open {source.value}")
        self._open_streams[source] += 1
        logger.debug(f"Stream opened: {source.value}")

    async def _do_close_stream(self, source: LineSource) -> None:
        if self._open_streams[source] <= 0:
            logger.debug(f"close_stream({source.value}) without open stream")
            return
        self._open_streams[source] -= 1
        logger.debug(f"Stream closed: {source.value}")
        await self._maybe_close()

    async def _do_process_exited(self, outcome: ProcessOutcome) -> None:
        if self._state is EngineState.CLOSED:
            logger.debug(f"Process completion after close ignored: {outcome}")
            return
        if self._outcome is not None:
            logger.warning(f"Duplicate process completion ignored: {outcome}")
            return
        self._outcome = outcome
        logger.info(f"Process completed: {outcome.describe()}")
        if self._has_open_streams():
            self._set_state(EngineState.DRAINING)
        await self._maybe_close()

    async def _do_shutdown(self, reason: str) -> None:
        if self._state is EngineState.CLOSED:
            return
        pending = sum(self._open_streams.values())
        logger.info(f"Engine shutdown requested ({reason}), {pending} stream(s) still open")
        if self._outcome is None:
            self._outcome = ProcessOutcome(success=False, detail=reason)
        self._open_streams.clear()
        await self._close()

    def _has_open_streams(self) -> bool:
        return any(count > 0 for count in self._open_streams.values())

    async def _maybe_close(self) -> None:
        if self._outcome is None or self._state is EngineState.CLOSED:
            return
        if self._has_open_streams():
            return
        await self._close()

    async def _close(self) -> None:
        assert self._outcome is not None
        await self._broadcast(LineSource.SYSTEM, self._outcome.describe())
        self._set_state(EngineState.CLOSED)
        for subscriber in self._registry.subscribers:
            self._registry.unregister(subscriber)
            _finish(subscriber)
        self._closed_event.set()

    async def _do_connect(
        self,
        queue_size: int | None,
        after_sequence: int | None,
    ) -> Subscription:
        snapshot = self._buffer.snapshot()
        # A viewer ahead of us saw a previous engine; give it everything
        if after_sequence is not None and after_sequence <= self._sequence:
            snapshot = tuple(line for line in snapshot if line.sequence > after_sequence)

        subscription = Subscription(
            snapshot,
            start_sequence=self._sequence,
            maxsize=queue_size or self._client_queue_size,
            on_close=self.disconnect,
        )
        if self._state is EngineState.CLOSED:
            subscription.finish()
        else:
            self._registry.register(subscription)
        logger.info(
            f"Viewer connected: replay={len(snapshot)} line(s), "
            f"viewers={len(self._registry)}, state={self._state.value}"
        )
        return subscription

    async def _do_disconnect(self, subscription: Subscription) -> bool:
        subscription.finish()
        removed = self._registry.unregister(subscription)
        if removed:
            logger.info(f"Viewer disconnected, viewers={len(self._registry)}")
        return removed

    async def _do_snapshot(self) -> tuple[TaggedLine, ...]:
        return self._buffer.snapshot()


def _finish(subscriber: object) -> None:
    finish = getattr(subscriber, "finish", None)
    if callable(finish):
        finish()
