# File: site_snap/session.py
"""site_snap.session: одна сессия обхода на одно WebSocket-подключение.

A session owns the Frontier and WorkerPool of the crawl it is currently
running and forwards their events to whatever emitter is attached. Starting
a new crawl throws the previous one away; events still in the pipe from the
old crawl are dropped by generation number.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Any, Optional

from site_snap.config import CrawlerConfig
from site_snap.crawler.fetcher import Fetcher, FetchError
from site_snap.crawler.frontier import Frontier
from site_snap.crawler.models import PageRecord
from site_snap.crawler.pool import Emit, Sanitizer, WorkerPool, build_record
from site_snap.crawler.urls import AllowedDomainSet, normalize_url
from site_snap.protocol import crawling_complete_message, error_message, processed_content_message
from site_snap.resources import ResourceCache
from site_snap.sanitizer import sanitize

__all__ = ["CrawlSession", "crawl_site"]

logger = logging.getLogger("SiteSnap")


class CrawlSession:
    """Crawl state for a single connection."""

    def __init__(
        self,
        config: CrawlerConfig,
        fetcher: Fetcher,
        emit: Optional[Emit] = None,
        *,
        resources: Optional[ResourceCache] = None,
        sanitizer: Sanitizer = sanitize,
    ) -> None:
        self.config = config
        self.fetcher = fetcher
        self.resources = resources
        self.sanitizer = sanitizer
        self._target = emit
        self.generation = 0
        self.frontier: Optional[Frontier] = None
        self.pool: Optional[WorkerPool] = None
        self.completed = False
        self._task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------ #
    # Event delivery                                                      #
    # ------------------------------------------------------------------ #

    def attach(self, emit: Emit) -> None:
        self._target = emit

    def detach(self) -> None:
        """Forget the subscriber; the crawl keeps going, its events are dropped."""
        self._target = None

    async def emit(self, message: dict[str, Any]) -> None:
        target = self._target
        if target is None:
            return
        try:
            await target(message)
        except (ConnectionError, RuntimeError) as exc:
            logger.debug("Dropping %s event, subscriber gone: %s", message.get("type"), exc)

    def _scoped(self, generation: int) -> Emit:
        async def emit(message: dict[str, Any]) -> None:
            if generation == self.generation:
                await self.emit(message)

        return emit

    # ------------------------------------------------------------------ #
    # Crawl lifecycle                                                     #
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> Optional[asyncio.Task[None]]:
        return self._task

    async def start(self, seed: str) -> bool:
        """Start crawling from *seed*. Returns False (and emits an error) if it is invalid."""
        root = normalize_url(seed)
        if root is None:
            logger.warning("Invalid seed URL %r", seed)
            await self.emit(error_message(f"Invalid URL: {seed}", seed))
            return False

        self.generation += 1
        generation = self.generation
        await self.cancel()
        self.completed = False
        allowed = AllowedDomainSet(root, self.config.allowed_cdns)
        self.frontier = Frontier(root)
        self.pool = WorkerPool(
            self.frontier,
            self.fetcher,
            self._scoped(generation),
            allowed,
            resources=self.resources,
            sanitizer=self.sanitizer,
            max_concurrent=self.config.max_concurrent,
        )
        self._task = asyncio.create_task(self._run(generation, root, self.pool), name=f"crawl-{generation}")
        return True

    async def _run(self, generation: int, root: str, pool: WorkerPool) -> None:
        logger.info("Старт обхода: %s", root)
        started = time.monotonic()
        await pool.run()
        duration = time.monotonic() - started
        if generation != self.generation or self.completed:
            return
        self.completed = True
        logger.info(
            "Завершено: %d страниц за %.2f с (%d адресов, пик %d загрузок)",
            pool.pages_processed,
            duration,
            len(pool.frontier.visited),
            pool.peak_active,
        )
        await self.emit(crawling_complete_message())

    async def wait(self) -> None:
        """Block until the current crawl (if any) reaches quiescence."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info("Previous crawl discarded")

    async def close(self) -> None:
        """Server shutdown: drop the subscriber and stop the crawl task."""
        self.detach()
        await self.cancel()

    # ------------------------------------------------------------------ #
    # On-demand content                                                   #
    # ------------------------------------------------------------------ #

    async def fetch_one(self, url: str) -> Optional[PageRecord]:
        """Fetch and sanitize *url* outside any crawl, replying on the event stream."""
        target = normalize_url(url)
        if target is None:
            await self.emit(error_message(f"Invalid URL: {url}", url))
            return None
        try:
            allowed = AllowedDomainSet(target, self.config.allowed_cdns)
            page = await self.fetcher.fetch(target)
            record = await build_record(page, allowed, self.fetcher, self.resources, self.sanitizer)
        except FetchError as exc:
            logger.warning("%s", exc)
            await self.emit(error_message(str(exc), target))
            return None
        except Exception as exc:
            logger.exception("Unexpected failure while fetching %s", target)
            await self.emit(error_message(f"Error processing {target}: {exc}", target))
            return None
        await self.emit(processed_content_message(record))
        return record


async def crawl_site(config: CrawlerConfig, url: str, emit: Emit) -> bool:
    """
    Run one crawl to quiescence outside any server, sending events to *emit*.

    Returns False if the seed URL was rejected.
    """
    async with Fetcher(config) as fetcher:
        session = CrawlSession(config, fetcher, emit, resources=ResourceCache())
        if not await session.start(url):
            return False
        await session.wait()
    return True
