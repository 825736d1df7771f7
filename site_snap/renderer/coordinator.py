"""
Renderer-side coordinator: gates screenshot requests on crawled content.

The coordinator keeps three pieces of state:

* ``pending_urls``: pages announced with ``link`` but not delivered yet;
* a :class:`~site_snap.renderer.cache.ContentCache` of delivered pages;
* a FIFO queue of :class:`RenderRequest` objects.

A request is rendered only once its URL is in the cache. Submitting a
request for an uncached URL sends ``request_content`` to the backend, so ad
hoc screenshots make progress without a running crawl.

Queue policies
--------------
``strict-fifo``
    Only the head of the queue may render. A head without content blocks
    everything behind it, even ready entries.
``scan-for-ready``
    The oldest entry whose content is cached renders first.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set

from site_snap.config import QueuePolicy
from site_snap.crawler.models import PageRecord
from site_snap.crawler.urls import normalize_url
from site_snap.protocol import (
    ContentPayload,
    CrawlingComplete,
    ErrorEvent,
    InfoEvent,
    LinkEvent,
    ProcessedContent,
    decode_resources,
)
from site_snap.renderer.cache import ContentCache
from site_snap.renderer.engine import RenderError, Viewport

__all__ = ("ContentUnavailable", "RenderRequest", "RenderCoordinator")

logger = logging.getLogger("SiteSnap")

RenderFn = Callable[[str, str, Viewport, Dict[str, bytes]], Awaitable[bytes]]
RequestContentFn = Callable[[str], Awaitable[None]]


class ContentUnavailable(Exception):
    """The backend reported that content for a requested URL cannot be produced."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"No content for {url}: {reason}")
        self.url = url
        self.reason = reason


@dataclass(slots=True)
class RenderRequest:
    url: str
    result: "asyncio.Future[bytes]"
    submitted_at: float = field(default_factory=time.monotonic)


class RenderCoordinator:
    def __init__(
        self,
        render: RenderFn,
        cache: ContentCache,
        request_content: RequestContentFn,
        *,
        policy: QueuePolicy = "strict-fifo",
        viewport: Viewport = (1280, 720),
    ) -> None:
        if policy not in ("strict-fifo", "scan-for-ready"):
            raise ValueError(f"Unknown queue policy: {policy!r}")
        self.cache = cache
        self.policy = policy
        self.viewport = viewport
        self.pending_urls: Set[str] = set()
        self.queue: Deque[RenderRequest] = deque()
        self.rendered_count = 0
        self._render = render
        self._request_content = request_content
        self._requested: Set[str] = set()
        self._drain_task: Optional[asyncio.Task[None]] = None
        self._tasks: Set[asyncio.Task[Any]] = set()

    @staticmethod
    def _key(url: str) -> str:
        return normalize_url(url) or url

    # ------------------------------------------------------------------ #
    # Backend events                                                      #
    # ------------------------------------------------------------------ #

    async def handle_frame(self, frame: Any) -> None:
        """Route one decoded backend frame to the matching handler."""
        if isinstance(frame, ProcessedContent):
            self.on_processed_content(frame.data)
        elif isinstance(frame, LinkEvent):
            self.on_link(frame.data)
        elif isinstance(frame, CrawlingComplete):
            self.on_crawling_complete()
        elif isinstance(frame, ErrorEvent):
            self.on_error(frame.data, frame.url)
        elif isinstance(frame, InfoEvent):
            logger.debug("backend: %s", frame.data)

    def on_link(self, url: str) -> None:
        key = self._key(url)
        if key not in self.cache:
            self.pending_urls.add(key)

    def on_processed_content(self, payload: ContentPayload) -> None:
        key = self._key(payload.url)
        record = PageRecord(
            url=key,
            sanitized_html=payload.html,
            resources=decode_resources(payload.resources),
        )
        for evicted in self.cache.put(record):
            if any(r.url == evicted for r in self.queue):
                logger.debug("Evicted %s while still queued, requesting it again", evicted)
                self._requested.discard(evicted)
                self._spawn(self._ask_for(evicted))
        self.pending_urls.discard(key)
        self._requested.discard(key)
        self._kick()

    def on_crawling_complete(self) -> None:
        logger.info("Crawl complete: %d pages cached, %d requests queued", len(self.cache), len(self.queue))
        if not self.pending_urls and self.queue:
            self._kick()

    def on_error(self, message: str, url: Optional[str] = None) -> None:
        """Fail queued requests for *url* that have no content to wait for any more."""
        if url is None:
            logger.warning("backend error: %s", message)
            return
        key = self._key(url)
        self.pending_urls.discard(key)
        if key in self.cache or key not in self._requested:
            return
        self._requested.discard(key)
        waiting = [r for r in self.queue if r.url == key]
        for request in waiting:
            self.queue.remove(request)
            if not request.result.done():
                request.result.set_exception(ContentUnavailable(key, message))
        if waiting:
            logger.warning("Giving up on %d request(s) for %s: %s", len(waiting), key, message)
            self._kick()

    # ------------------------------------------------------------------ #
    # Screenshot requests                                                 #
    # ------------------------------------------------------------------ #

    async def submit(self, url: str) -> "asyncio.Future[bytes]":
        """Queue a screenshot of *url*; the returned future resolves with image bytes."""
        key = normalize_url(url)
        if key is None:
            raise ValueError(f"Invalid URL: {url}")
        future: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
        self.queue.append(RenderRequest(key, future))
        if key not in self.cache and key not in self._requested:
            await self._ask_for(key)
        self._kick()
        return future

    async def resend_requests(self) -> None:
        """Ask again for every queued URL still without content (after a reconnect)."""
        missing = dict.fromkeys(r.url for r in self.queue if r.url not in self.cache)
        for url in missing:
            await self._ask_for(url)

    async def _ask_for(self, url: str) -> None:
        self._requested.add(url)
        try:
            await self._request_content(url)
        except (ConnectionError, RuntimeError) as exc:
            # resend_requests() picks it up once the backend is reachable
            logger.info("Could not request content for %s yet: %s", url, exc)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------ #
    # Drain                                                               #
    # ------------------------------------------------------------------ #

    def _kick(self) -> None:
        if not self.queue:
            return
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain(), name="render-drain")

    def _next_ready(self) -> Optional[RenderRequest]:
        # callers that gave up (timeout/cancel) leave a finished future behind
        for request in [r for r in self.queue if r.result.done()]:
            self.queue.remove(request)
        if self.policy == "strict-fifo":
            if self.queue and self.queue[0].url in self.cache:
                return self.queue.popleft()
            return None
        for request in self.queue:
            if request.url in self.cache:
                self.queue.remove(request)
                return request
        return None

    async def _drain(self) -> None:
        while (request := self._next_ready()) is not None:
            record = self.cache.get(request.url)
            if record is None:
                logger.warning("Content for %s vanished from the cache before rendering", request.url)
                if not request.result.done():
                    request.result.set_exception(ContentUnavailable(request.url, "content no longer cached"))
                continue
            try:
                image = await self._render(record.sanitized_html, request.url, self.viewport, record.resources)
            except RenderError as exc:
                logger.error("%s", exc)
                if not request.result.done():
                    request.result.set_exception(exc)
                continue
            except Exception as exc:
                logger.exception("Render of %s failed", request.url)
                if not request.result.done():
                    request.result.set_exception(RenderError(f"Failed to take screenshot of {request.url}: {exc}"))
                continue
            self.rendered_count += 1
            if not request.result.done():
                request.result.set_result(image)
            logger.info(
                "Rendered %s (%d bytes, waited %.2f s)",
                request.url,
                len(image),
                time.monotonic() - request.submitted_at,
            )

    async def close(self) -> None:
        for request in self.queue:
            if not request.result.done():
                request.result.cancel()
        self.queue.clear()
        tasks = list(self._tasks)
        if self._drain_task is not None:
            tasks.append(self._drain_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
