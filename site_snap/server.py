"""
WebSocket backend: one :class:`~site_snap.session.CrawlSession` per accepted
connection, fed by the content exchange protocol.

Routes
------
``GET /ws``      WebSocket upgrade; see :mod:`site_snap.protocol`.
``GET /health``  plain liveness probe.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from typing import Any, Set

from aiohttp import WSCloseCode, WSMsgType, web

from site_snap.config import AppConfig
from site_snap.crawler.fetcher import Fetcher
from site_snap.protocol import (
    Heartbeat,
    Ping,
    Pong,
    ProtocolError,
    RequestContent,
    StartCrawl,
    error_message,
    parse_inbound,
    pong_message,
)
from site_snap.resources import ResourceCache
from site_snap.session import CrawlSession

__all__ = ["CrawlConnection", "create_app", "run_server"]

logger = logging.getLogger("SiteSnap")

CONFIG_KEY = web.AppKey("config", AppConfig)
FETCHER_KEY = web.AppKey("fetcher", Fetcher)
RESOURCES_KEY = web.AppKey("resources", ResourceCache)
SESSIONS_KEY = web.AppKey("sessions", set)
WEBSOCKETS_KEY = web.AppKey("websockets", weakref.WeakSet)

HEARTBEAT_CLOSE_MESSAGE = b"heartbeat timeout"


class CrawlConnection:
    """Protocol handler bound to one WebSocket and the session it owns."""

    def __init__(self, ws: web.WebSocketResponse, session: CrawlSession, config: AppConfig) -> None:
        self.id = uuid.uuid4().hex
        self.ws = ws
        self.session = session
        self.heartbeat = Heartbeat(
            self.send,
            self._close_on_timeout,
            interval=config.server.heartbeat_interval,
            timeout=config.server.heartbeat_timeout,
        )
        self._tasks: Set[asyncio.Task[Any]] = set()

    async def send(self, message: dict[str, Any]) -> None:
        if self.ws.closed:
            raise ConnectionResetError("WebSocket is closed")
        await self.ws.send_json(message)

    async def _close_on_timeout(self) -> None:
        await self.ws.close(code=WSCloseCode.GOING_AWAY, message=HEARTBEAT_CLOSE_MESSAGE)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle(self, raw: str | bytes) -> None:
        try:
            frame = parse_inbound(raw)
        except ProtocolError as exc:
            logger.info("[%s] rejected message: %s", self.id[:8], exc)
            await self.session.emit(error_message(str(exc)))
            return

        if isinstance(frame, StartCrawl):
            await self.session.start(frame.url)
        elif isinstance(frame, RequestContent):
            logger.debug("[%s] content requested for %s", self.id[:8], frame.url)
            self._spawn(self.session.fetch_one(frame.url))
        elif isinstance(frame, Pong):
            self.heartbeat.pong()
        elif isinstance(frame, Ping):
            await self.session.emit(pong_message())

    async def serve(self) -> None:
        self.session.attach(self.send)
        self.heartbeat.start()
        logger.info("[%s] client connected", self.id[:8])
        try:
            async for msg in self.ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self.handle(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("[%s] connection error: %s", self.id[:8], self.ws.exception())
        finally:
            await self.heartbeat.stop()
            self.session.detach()
            logger.info("[%s] client disconnected", self.id[:8])


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    if not ws.can_prepare(request).ok:
        raise web.HTTPBadRequest(text="Connection is not upgradable to WebSocket")
    await ws.prepare(request)

    app = request.app
    app[WEBSOCKETS_KEY].add(ws)
    config = app[CONFIG_KEY]
    session = CrawlSession(config.crawler, app[FETCHER_KEY], resources=app[RESOURCES_KEY])
    sessions: set = app[SESSIONS_KEY]
    sessions.add(session)

    await CrawlConnection(ws, session, config).serve()

    # the crawl may outlive its subscriber; forget the session once it is done
    if session.task is not None and not session.task.done():
        session.task.add_done_callback(lambda _t: sessions.discard(session))
    else:
        sessions.discard(session)
    return ws


async def health_handler(_: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=204)
    else:
        response = await handler(request)
    if not response.prepared:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


async def _close_websockets(app: web.Application) -> None:
    for ws in set(app[WEBSOCKETS_KEY]):
        await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")


async def _fetcher_ctx(app: web.Application):
    yield
    for session in list(app[SESSIONS_KEY]):
        await session.close()
    await app[FETCHER_KEY].close()


def create_app(config: AppConfig | None = None) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app[CONFIG_KEY] = config = config or AppConfig()
    app[FETCHER_KEY] = Fetcher(config.crawler)
    app[RESOURCES_KEY] = ResourceCache()
    app[SESSIONS_KEY] = set()
    app[WEBSOCKETS_KEY] = weakref.WeakSet()
    app.router.add_get("/ws", websocket_handler)
    app.router.add_get("/health", health_handler)
    app.on_shutdown.append(_close_websockets)
    app.cleanup_ctx.append(_fetcher_ctx)
    return app


def run_server(config: AppConfig) -> None:
    logger.info("Server running on http://%s:%d", config.server.host, config.server.port)
    web.run_app(create_app(config), host=config.server.host, port=config.server.port, print=None)
