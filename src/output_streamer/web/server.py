"""HTTP viewer transport (aiohttp).

output-streamer web v0.1.0

Routes:
    GET /           viewer page
    GET /events     Server-Sent Events, honours Last-Event-ID
    GET /ws         WebSocket, JSON message per line (``?after=N`` to resume)
    GET /api/lines  replay buffer snapshot as JSON
    GET /healthz    engine state

Every viewer gets its own Subscription. Each send is bounded by
``send_timeout``; a viewer that times out or drops its connection fails its
subscription and is removed from the engine.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass

from aiohttp import WSMsgType, web

from ..streaming.engine import BroadcastEngine, EngineState
from ..streaming.lines import TaggedLine
from ..streaming.subscription import Subscription
from .template import render_page

__all__ = [
    "ServerConfig",
    "ViewerServer",
]

logger = logging.getLogger(__name__)

# Errors that mean the viewer is gone or stuck
_SEND_ERRORS = (ConnectionError, asyncio.TimeoutError)


@dataclass
class ServerConfig:
    """Viewer server configuration."""

    host: str = "127.0.0.1"
    port: int = 8080  # 0 = random port
    max_clients: int = 50
    send_timeout: float = 5.0  # seconds per message
    keepalive_interval: float = 15.0  # SSE ping / WebSocket heartbeat
    title: str = "Terminal Output"
    command: str = ""


def _parse_sequence(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        sequence = int(value.strip())
    except ValueError:
        return None
    return sequence if sequence >= 0 else None


def _sse_message(line: TaggedLine) -> bytes:
    data = json.dumps(line.to_payload(), ensure_ascii=False)
    return f"id: {line.sequence}\ndata: {data}\n\n".encode("utf-8")


class ViewerServer:
    """aiohttp server exposing the engine's transcript to browsers.

    Example:
        server = ViewerServer(engine, ServerConfig(port=0))
        port = await server.start()
        print(server.url)
        ...
        await server.stop()
    """

    def __init__(self, engine: BroadcastEngine, config: ServerConfig | None = None):
        self.engine = engine
        self.config = config or ServerConfig()
        self.app = self._create_app()
        self._clients = 0
        self._runner: web.AppRunner | None = None
        self._actual_port: int = 0

    @property
    def port(self) -> int:
        """Port actually bound."""
        return self._actual_port

    @property
    def url(self) -> str:
        return f"http://{self.config.host}:{self._actual_port}"

    @property
    def client_count(self) -> int:
        return self._clients

    def _create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._serve_html)
        app.router.add_get("/events", self._serve_sse)
        app.router.add_get("/ws", self._serve_ws)
        app.router.add_get("/api/lines", self._serve_lines)
        app.router.add_get("/healthz", self._serve_health)
        return app

    async def start(self) -> int:
        """Bind and start serving. Returns the actual port."""
        self._runner = web.AppRunner(
            self.app,
            access_log=None,
            shutdown_timeout=self.config.send_timeout,
        )
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()

        self._actual_port = self._runner.addresses[0][1]
        logger.info(f"Viewer server started at {self.url}")
        return self._actual_port

    async def stop(self) -> None:
        if self._runner is not None:
            runner, self._runner = self._runner, None
            await runner.cleanup()
            logger.debug("Viewer server stopped")

    def _client_connected(self) -> bool:
        """Reserve a client slot, False when the server is full."""
        if self._clients >= self.config.max_clients:
            logger.warning(f"Max clients ({self.config.max_clients}) reached")
            return False
        self._clients += 1
        logger.debug(f"Client connected, total: {self._clients}")
        return True

    def _client_disconnected(self) -> None:
        self._clients -= 1
        logger.debug(f"Client disconnected, remaining: {self._clients}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _serve_html(self, request: web.Request) -> web.Response:
        page = render_page(title=self.config.title, command=self.config.command)
        return web.Response(text=page, content_type="text/html", charset="utf-8")

    async def _serve_health(self, request: web.Request) -> web.Response:
        engine = self.engine
        return web.json_response({
            "state": engine.state.value,
            "subscribers": engine.subscriber_count,
            "last_sequence": engine.last_sequence,
            "clients": self._clients,
        })

    async def _serve_lines(self, request: web.Request) -> web.Response:
        try:
            lines = await self.engine.snapshot()
        except RuntimeError as e:
            raise web.HTTPServiceUnavailable(text=str(e))
        return web.json_response({
            "state": self.engine.state.value,
            "last_sequence": self.engine.last_sequence,
            "capacity": self.engine.capacity,
            "lines": [line.to_payload() for line in lines],
        })

    async def _serve_sse(self, request: web.Request) -> web.StreamResponse:
        if not self._client_connected():
            raise web.HTTPServiceUnavailable(text="Too many clients")
        try:
            after = _parse_sequence(request.headers.get("Last-Event-ID"))
            response = web.StreamResponse(headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            })
            await response.prepare(request)

            async with await self.engine.connect(after_sequence=after) as subscription:
                try:
                    await self._stream_sse(response, subscription)
                except _SEND_ERRORS as e:
                    logger.info(f"SSE viewer dropped: {type(e).__name__}: {e}")
                    subscription.fail(e)
            return response
        finally:
            self._client_disconnected()

    async def _stream_sse(self, response: web.StreamResponse, subscription: Subscription) -> None:
        timeout = self.config.send_timeout

        for line in subscription.snapshot:
            await asyncio.wait_for(response.write(_sse_message(line)), timeout)

        while True:
            try:
                line = await subscription.get(timeout=self.config.keepalive_interval)
            except asyncio.TimeoutError:
                await asyncio.wait_for(response.write(b": ping\n\n"), timeout)
                continue
            if line is None:
                break
            await asyncio.wait_for(response.write(_sse_message(line)), timeout)

        if subscription.error is None and self.engine.state is EngineState.CLOSED:
            await asyncio.wait_for(response.write(b"event: end\ndata: {}\n\n"), timeout)

    async def _serve_ws(self, request: web.Request) -> web.WebSocketResponse:
        if not self._client_connected():
            raise web.HTTPServiceUnavailable(text="Too many clients")
        try:
            after = _parse_sequence(request.query.get("after"))
            ws = web.WebSocketResponse(heartbeat=self.config.keepalive_interval)
            await ws.prepare(request)

            async with await self.engine.connect(after_sequence=after) as subscription:
                watcher = asyncio.create_task(self._watch_ws(ws, subscription))
                try:
                    await self._stream_ws(ws, subscription)
                except _SEND_ERRORS as e:
                    logger.info(f"WebSocket viewer dropped: {type(e).__name__}: {e}")
                    subscription.fail(e)
                finally:
                    watcher.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await watcher

            if not ws.closed:
                await ws.close()
            return ws
        finally:
            self._client_disconnected()

    async def _stream_ws(self, ws: web.WebSocketResponse, subscription: Subscription) -> None:
        timeout = self.config.send_timeout
        async for line in subscription.lines():
            if ws.closed:
                return
            await asyncio.wait_for(ws.send_json(line.to_payload()), timeout)

    async def _watch_ws(self, ws: web.WebSocketResponse, subscription: Subscription) -> None:
        # Incoming messages are ignored; we only care about the close
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.debug(f"WebSocket error: {ws.exception()}")
        subscription.fail(ConnectionResetError("viewer closed the connection"))
