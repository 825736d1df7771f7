# File: tests/conftest.py
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web

from site_snap.config import CrawlerConfig


def pytest_configure(config):
    """Register custom markers so that `--strict-markers` does not fail."""
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow (deselect with '-m \"not slow\"')",
    )


class EventLog:
    """Async emitter that records every protocol frame it receives."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []
        self._changed = asyncio.Event()

    async def __call__(self, message: Dict[str, Any]) -> None:
        self.messages.append(message)
        self._changed.set()

    def of(self, kind: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m["type"] == kind]

    def types(self) -> List[str]:
        return [m["type"] for m in self.messages]

    async def wait_for(self, kind: str, count: int = 1, timeout: float = 5.0) -> None:
        async def _wait() -> None:
            while len(self.of(kind)) < count:
                self._changed.clear()
                await self._changed.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)


class Site:
    """aiohttp application serving a fixed set of HTML pages, with hit counters.

    ``pages`` maps a path to its body; every path is also served with and
    without a trailing slash since the crawler appends one to extension-less
    paths.
    """

    def __init__(
        self,
        pages: Dict[str, str],
        *,
        delays: Optional[Dict[str, float]] = None,
        content_types: Optional[Dict[str, str]] = None,
        statuses: Optional[Dict[str, int]] = None,
    ) -> None:
        self.pages = pages
        self.delays = delays or {}
        self.content_types = content_types or {}
        self.statuses = statuses or {}
        self.hits: Dict[str, int] = {}
        self.started: Dict[str, float] = {}
        self.finished: Dict[str, float] = {}
        self.current = 0
        self.peak = 0
        self.app = web.Application()
        for path in pages:
            self.app.router.add_get(path, self._handler(path))
            alias = path.rstrip("/") if path.endswith("/") else path + "/"
            if alias and alias != path and alias not in pages:
                self.app.router.add_get(alias, self._handler(path))

    def _handler(self, path: str) -> Callable[[web.Request], Awaitable[web.Response]]:
        async def handle(_: web.Request) -> web.Response:
            loop = asyncio.get_running_loop()
            self.hits[path] = self.hits.get(path, 0) + 1
            self.started.setdefault(path, loop.time())
            self.current += 1
            self.peak = max(self.peak, self.current)
            try:
                await asyncio.sleep(self.delays.get(path, 0))
            finally:
                self.current -= 1
                self.finished.setdefault(path, loop.time())
            return web.Response(
                text=self.pages[path],
                status=self.statuses.get(path, 200),
                content_type=self.content_types.get(path, "text/html"),
            )

        return handle


@pytest_asyncio.fixture
async def serve_app() -> AsyncIterator[Callable[[web.Application, int], Awaitable[str]]]:
    """Start aiohttp apps on given ports; everything is cleaned up after the test."""
    runners: List[web.AppRunner] = []

    async def _serve(app: web.Application, port: int) -> str:
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "localhost", port)
        await site.start()
        runners.append(runner)
        return f"http://localhost:{port}"

    yield _serve
    for runner in reversed(runners):
        await runner.cleanup()


@pytest.fixture()
def events() -> EventLog:
    return EventLog()


@pytest.fixture()
def crawler_config() -> CrawlerConfig:
    return CrawlerConfig(max_concurrent=5, timeout=2.0, user_agent="TestAgent/1.0")
