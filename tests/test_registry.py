"""SubscriberRegistry 单元测试。

测试覆盖:
- 注册/注销幂等
- 慢订阅者超时后被移除，不影响其他订阅者
- 抛出异常的订阅者被移除
- 内部不变量错误向上传播
"""

from __future__ import annotations

import asyncio
import time

import pytest

from output_streamer.errors import DeliveryTimeoutError, EngineInvariantError
from output_streamer.streaming import LineSource, SubscriberRegistry, TaggedLine


def make_line(sequence: int = 1) -> TaggedLine:
    return TaggedLine(text=f"line {sequence}", source=LineSource.STDOUT, sequence=sequence)


class TestRegistration:
    """注册和注销。"""

    def test_register_twice(self, make_subscriber):
        registry = SubscriberRegistry()
        sub = make_subscriber()
        assert registry.register(sub) is True
        assert registry.register(sub) is False
        assert len(registry) == 1
        assert sub in registry

    def test_unregister_unknown(self, make_subscriber):
        registry = SubscriberRegistry()
        assert registry.unregister(make_subscriber()) is False

    def test_unregister_twice(self, make_subscriber):
        registry = SubscriberRegistry()
        sub = make_subscriber()
        registry.register(sub)
        assert registry.unregister(sub) is True
        assert registry.unregister(sub) is False
        assert len(registry) == 0

    def test_invalid_timeout(self):
        with pytest.raises(ValueError):
            SubscriberRegistry(delivery_timeout=0)


class TestForEach:
    """广播投递。"""

    @pytest.mark.asyncio
    async def test_no_subscribers(self):
        assert await SubscriberRegistry().for_each(make_line()) == []

    @pytest.mark.asyncio
    async def test_delivers_to_all(self, make_subscriber):
        registry = SubscriberRegistry()
        subs = [make_subscriber() for _ in range(3)]
        for sub in subs:
            registry.register(sub)

        failures = await registry.for_each(make_line(1))

        assert failures == []
        assert all(sub.sequences == [1] for sub in subs)

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_slow_subscriber_isolated(self, make_subscriber):
        """一个挂起的订阅者只会让广播等待到超时，然后被移除。"""
        registry = SubscriberRegistry(delivery_timeout=0.2)
        fast = make_subscriber()
        hanging = make_subscriber(delay=60)
        registry.register(fast)
        registry.register(hanging)

        started = time.monotonic()
        failures = await registry.for_each(make_line(1))
        elapsed = time.monotonic() - started

        assert elapsed < 2
        assert fast.sequences == [1]
        assert len(failures) == 1
        assert failures[0].subscriber is hanging
        assert isinstance(failures[0].error, DeliveryTimeoutError)
        assert hanging not in registry
        assert isinstance(hanging.failed_with, DeliveryTimeoutError)

        # 后续行不再等待被移除的订阅者
        started = time.monotonic()
        assert await registry.for_each(make_line(2)) == []
        assert time.monotonic() - started < 0.2
        assert fast.sequences == [1, 2]

    @pytest.mark.asyncio
    async def test_failing_subscriber_removed(self, make_subscriber):
        registry = SubscriberRegistry()
        good = make_subscriber()
        broken = make_subscriber(error=ConnectionResetError("gone"))
        registry.register(good)
        registry.register(broken)

        failures = await registry.for_each(make_line(1))

        assert [f.subscriber for f in failures] == [broken]
        assert isinstance(failures[0].error, ConnectionResetError)
        assert failures[0].line.sequence == 1
        assert len(registry) == 1
        assert good.sequences == [1]

    @pytest.mark.asyncio
    async def test_invariant_error_propagates(self, make_subscriber):
        registry = SubscriberRegistry()
        registry.register(make_subscriber(error=EngineInvariantError("out of order")))

        with pytest.raises(EngineInvariantError):
            await registry.for_each(make_line(1))

    @pytest.mark.asyncio
    async def test_subscriber_without_fail_hook(self):
        class Plain:
            async def deliver(self, line):
                raise RuntimeError("nope")

        registry = SubscriberRegistry()
        sub = Plain()
        registry.register(sub)
        failures = await registry.for_each(make_line(1))
        assert failures[0].subscriber is sub
        assert len(registry) == 0
