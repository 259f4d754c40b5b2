"""Live broadcast core: line framing, replay history and viewer fan-out."""

from __future__ import annotations

from .engine import BroadcastEngine, EngineState, ProcessOutcome
from .framer import FramedLine, LineFramer
from .lines import LineSource, TaggedLine
from .registry import DeliveryFailure, Subscriber, SubscriberRegistry
from .replay import ReplayBuffer
from .subscription import Subscription

__all__ = [
    "BroadcastEngine",
    "DeliveryFailure",
    "EngineState",
    "FramedLine",
    "LineFramer",
    "LineSource",
    "ProcessOutcome",
    "ReplayBuffer",
    "Subscriber",
    "SubscriberRegistry",
    "Subscription",
    "TaggedLine",
]
