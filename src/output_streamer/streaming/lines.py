"""Tagged line model.

output-streamer streaming module v0.1.0

A TaggedLine is one unit of captured output: the text of a line, the stream
it came from and the global sequence number the engine assigned on ingest.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "LineSource",
    "TaggedLine",
]


class LineSource(str, Enum):
    """Origin of a captured line."""

    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"


class TaggedLine(BaseModel):
    """One captured line.

    Attributes:
        text: Line content without its terminator
        source: Stream the line was read from (or system for synthetic lines)
        sequence: Engine-wide order key, starts at 1, never reassigned
        timestamp: Unix time of ingestion (informational only)
    """

    model_config = ConfigDict(frozen=True)

    text: str
    source: LineSource
    sequence: int = Field(ge=1)
    timestamp: float = Field(default_factory=time.time)

    def display(self) -> str:
        """Render the line the way the terminal view prints it."""
        if self.source is LineSource.SYSTEM:
            return f"[SYSTEM] {self.text}"
        return f"[{self.source.value}] {self.text}"

    def to_payload(self) -> dict[str, Any]:
        """Viewer-facing representation used by the transports."""
        return {
            "line": self.display(),
            "source": self.source.value,
            "text": self.text,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
        }
