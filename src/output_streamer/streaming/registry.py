"""Subscriber registry with isolated, deadline-bounded fan-out.

output-streamer streaming module v0.1.0

Delivery failures are returned as explicit DeliveryFailure results and the
failed subscriber is removed before ``for_each`` returns. Nothing is retried:
a viewer that wants to continue has to connect again as a new subscriber.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ..errors import DeliveryTimeoutError, EngineInvariantError
from .lines import TaggedLine

__all__ = [
    "DeliveryFailure",
    "Subscriber",
    "SubscriberRegistry",
    "DEFAULT_DELIVERY_TIMEOUT",
]

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_TIMEOUT = 2.0  # seconds per subscriber per line


@runtime_checkable
class Subscriber(Protocol):
    """Sink for tagged lines. The instance itself is the registry key."""

    async def deliver(self, line: TaggedLine) -> None: ...


@dataclass(frozen=True, eq=False)
class DeliveryFailure:
    """Outcome of a failed delivery.

    Attributes:
        subscriber: The subscriber that failed (already unregistered)
        line: The line that could not be delivered
        error: Exception raised by the subscriber, or DeliveryTimeoutError
    """

    subscriber: Subscriber
    line: TaggedLine
    error: BaseException


class SubscriberRegistry:
    """Set of live subscribers.

    Not thread-safe: owned by the broadcast engine's coordinating task,
    which is the only caller of register/unregister/for_each.

    Example:
        registry = SubscriberRegistry(delivery_timeout=1.0)
        registry.register(sub)
        failures = await registry.for_each(line)
        for failure in failures:
            print(f"dropped {failure.subscriber}: {failure.error}")
    """

    def __init__(self, delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT) -> None:
        if delivery_timeout <= 0:
            raise ValueError(f"delivery_timeout must be positive, got {delivery_timeout}")
        self.delivery_timeout = delivery_timeout
        # dict as an insertion-ordered set
        self._subscribers: dict[Subscriber, None] = {}

    def register(self, subscriber: Subscriber) -> bool:
        """Add a subscriber. Returns False if it was already registered."""
        if subscriber in self._subscribers:
            return False
        self._subscribers[subscriber] = None
        logger.debug(f"Subscriber registered, total: {len(self._subscribers)}")
        return True

    def unregister(self, subscriber: Subscriber) -> bool:
        """Remove a subscriber. Returns False if it was not registered."""
        if self._subscribers.pop(subscriber, _MISSING) is _MISSING:
            return False
        logger.debug(f"Subscriber unregistered, remaining: {len(self._subscribers)}")
        return True

    async def for_each(self, line: TaggedLine) -> list[DeliveryFailure]:
        """Deliver ``line`` to every registered subscriber.

        Deliveries run concurrently, each bounded by ``delivery_timeout``,
        so a slow subscriber delays nobody else past the deadline. Errors
        never propagate; they come back as DeliveryFailure entries.

        Args:
            line: Line to deliver

        Returns:
            One DeliveryFailure per subscriber that was dropped
        """
        targets = list(self._subscribers)
        if not targets:
            return []

        results = await asyncio.gather(
            *(self._deliver_one(subscriber, line) for subscriber in targets)
        )
        failures = [result for result in results if result is not None]
        for failure in failures:
            self._drop(failure)
        return failures

    async def _deliver_one(
        self,
        subscriber: Subscriber,
        line: TaggedLine,
    ) -> DeliveryFailure | None:
        try:
            await asyncio.wait_for(subscriber.deliver(line), timeout=self.delivery_timeout)
        except EngineInvariantError:
            raise
        except asyncio.TimeoutError:
            return DeliveryFailure(subscriber, line, DeliveryTimeoutError(self.delivery_timeout))
        except Exception as e:
            return DeliveryFailure(subscriber, line, e)
        return None

    def _drop(self, failure: DeliveryFailure) -> None:
        if not self.unregister(failure.subscriber):
            return
        logger.warning(
            f"Dropping subscriber after failed delivery of line "
            f"#{failure.line.sequence}: {type(failure.error).__name__}: {failure.error}"
        )
        # Let the viewer's own connection handler stop
        fail = getattr(failure.subscriber, "fail", None)
        if callable(fail):
            fail(failure.error)

    @property
    def subscribers(self) -> tuple[Subscriber, ...]:
        return tuple(self._subscribers)

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, subscriber: object) -> bool:
        return subscriber in self._subscribers


_MISSING = object()
