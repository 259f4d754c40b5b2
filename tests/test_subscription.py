"""Subscription 单元测试。"""

from __future__ import annotations

import asyncio

import pytest

from output_streamer.errors import EngineInvariantError, SubscriberOverflowError
from output_streamer.streaming import LineSource, Subscription, TaggedLine


def make_line(sequence: int) -> TaggedLine:
    return TaggedLine(text=f"line {sequence}", source=LineSource.STDOUT, sequence=sequence)


class TestDeliver:
    """投递到观众队列。"""

    @pytest.mark.asyncio
    async def test_out_of_order_line_rejected(self):
        sub = Subscription(start_sequence=3)
        await sub.deliver(make_line(4))
        with pytest.raises(EngineInvariantError):
            await sub.deliver(make_line(6))

    @pytest.mark.asyncio
    async def test_overflow(self):
        sub = Subscription(maxsize=2)
        await sub.deliver(make_line(1))
        await sub.deliver(make_line(2))
        with pytest.raises(SubscriberOverflowError) as exc_info:
            await sub.deliver(make_line(3))
        assert exc_info.value.maxsize == 2

    @pytest.mark.asyncio
    async def test_deliver_after_finish_discarded(self):
        sub = Subscription()
        sub.finish()
        await sub.deliver(make_line(1))
        assert await sub.get(timeout=1) is None

    def test_invalid_maxsize(self):
        with pytest.raises(ValueError):
            Subscription(maxsize=0)


class TestConsume:
    """读取实时行。"""

    @pytest.mark.asyncio
    async def test_get_timeout(self):
        sub = Subscription()
        with pytest.raises(asyncio.TimeoutError):
            await sub.get(timeout=0.05)

    @pytest.mark.asyncio
    async def test_lines_yields_snapshot_then_live(self):
        sub = Subscription((make_line(1), make_line(2)), start_sequence=2)
        await sub.deliver(make_line(3))
        sub.finish()
        assert [line.sequence async for line in sub.lines()] == [1, 2, 3]
        # 结束标记保留，之后的读取仍然立即结束
        assert await sub.get(timeout=1) is None

    @pytest.mark.asyncio
    async def test_fail_discards_queued_lines(self):
        sub = Subscription()
        await sub.deliver(make_line(1))
        error = ConnectionResetError("gone")
        sub.fail(error)
        assert sub.error is error
        assert sub.closed
        assert [line async for line in sub] == []

    @pytest.mark.asyncio
    async def test_close_calls_hook_once(self):
        calls = []

        async def on_close(subscription: Subscription) -> None:
            calls.append(subscription)

        sub = Subscription(on_close=on_close)
        async with sub:
            pass
        await sub.close()
        assert calls == [sub]
