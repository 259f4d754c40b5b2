"""Viewer colour scheme.

output-streamer web v0.1.0

Dark terminal theme, VS Code style.
"""

from __future__ import annotations

__all__ = [
    "COLORS",
    "SOURCE_COLORS",
]

COLORS = {
    "bg": "#1E1E1E",
    "bg_secondary": "#252526",
    "border": "#3C3C3C",
    "fg": "#D4D4D4",
    "fg_dim": "#5A5A5A",
    "success": "#89D185",
    "error": "#F44747",
}

# Per-stream line colours
SOURCE_COLORS = {
    "stdout": "#A8FF60",
    "stderr": "#F08080",
    "system": "#80A0FF",
}
