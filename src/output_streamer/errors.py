"""Exception hierarchy for output-streamer."""

from __future__ import annotations

__all__ = [
    "StreamerError",
    "EngineClosedError",
    "EngineInvariantError",
    "SubscriberOverflowError",
    "DeliveryTimeoutError",
]


class StreamerError(Exception):
    """Base class for all output-streamer errors."""


class EngineClosedError(StreamerError):
    """Raised when a line is ingested after the engine reached CLOSED."""


class EngineInvariantError(StreamerError):
    """An internal ordering invariant was broken. Always a bug."""


class SubscriberOverflowError(StreamerError):
    """A subscriber's outbound queue is full; the viewer is not keeping up."""

    def __init__(self, maxsize: int):
        self.maxsize = maxsize
        super().__init__(f"subscriber queue full ({maxsize} lines pending)")


class DeliveryTimeoutError(StreamerError):
    """Delivery to a subscriber did not finish within its deadline."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"delivery did not complete within {timeout:.2f}s")
