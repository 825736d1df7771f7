"""
Reconnecting WebSocket client the renderer uses to talk to the crawl backend.
"""
from __future__ import annotations

import asyncio
import logging
import random
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional

from aiohttp import ClientError, ClientSession, WSMsgType

from site_snap.protocol import (
    Ping,
    ProtocolError,
    parse_backend,
    pong_message,
    request_content_message,
    start_crawl_message,
)

__all__ = ("BackendClient",)

logger = logging.getLogger("SiteSnap")

FrameHandler = Callable[[Any], Awaitable[None]]
ConnectHandler = Callable[[], Awaitable[None]]


class BackendClient:
    """Keeps one WebSocket to the backend open, reconnecting with backoff.

    Frames are decoded and passed to *on_frame*; ``ping`` is answered here.
    Sending while disconnected raises :class:`ConnectionResetError`, nothing
    is buffered.
    """

    def __init__(
        self,
        url: str,
        *,
        on_frame: Optional[FrameHandler] = None,
        on_connect: Optional[ConnectHandler] = None,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.url = url
        self.on_frame = on_frame
        self.on_connect = on_connect
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.connected = asyncio.Event()
        self.connections = 0
        self._session = session
        self._owns_session = session is None
        self._ws = None
        self._task: Optional[asyncio.Task[None]] = None

    async def send(self, message: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise ConnectionResetError(f"Not connected to {self.url}")
        await ws.send_json(message)

    async def request_content(self, url: str) -> None:
        await self.send(request_content_message(url))

    async def start_crawl(self, url: str) -> None:
        await self.send(start_crawl_message(url))

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="backend-client")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def _backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.initial_delay * 2 ** (attempt - 1) + random.random())

    async def _run(self) -> None:
        if self._session is None:
            self._session = ClientSession()
        attempt = 0
        while True:
            try:
                async with self._session.ws_connect(self.url) as ws:
                    self._ws = ws
                    attempt = 0
                    self.connections += 1
                    self.connected.set()
                    logger.info("Connected to backend %s", self.url)
                    if self.on_connect is not None:
                        await self.on_connect()
                    async for msg in ws:
                        if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                            await self._dispatch(msg.data)
                        elif msg.type == WSMsgType.ERROR:
                            logger.warning("Backend connection error: %s", ws.exception())
                            break
                    logger.warning("Backend closed the connection (code %s)", ws.close_code)
            except (ClientError, OSError, asyncio.TimeoutError) as exc:
                logger.warning("Backend %s unreachable: %s", self.url, exc)
            finally:
                self._ws = None
                self.connected.clear()
            attempt += 1
            delay = self._backoff(attempt)
            logger.info("Reconnecting in %.1f s", delay)
            await asyncio.sleep(delay)

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            frame = parse_backend(raw)
        except ProtocolError as exc:
            logger.warning("Ignoring backend message: %s", exc)
            return
        if isinstance(frame, Ping):
            await self.send(pong_message())
            return
        if self.on_frame is not None:
            await self.on_frame(frame)
