"""Browser-facing transport: HTTP page, SSE and WebSocket streams."""

from __future__ import annotations

from .server import ServerConfig, ViewerServer
from .template import render_page

__all__ = [
    "ServerConfig",
    "ViewerServer",
    "render_page",
]
