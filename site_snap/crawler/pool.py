"""
Bounded-concurrency fetch worker pool driving one :class:`Frontier`.

``max_concurrent`` long-lived workers pull URLs from the frontier. A worker
that finds nothing pending waits on a shared condition until another worker
either admits new links or completes its URL; once the frontier is
quiescent every worker exits and :meth:`WorkerPool.run` returns.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from site_snap.crawler.fetcher import Fetcher, FetchError
from site_snap.crawler.frontier import Frontier
from site_snap.crawler.link_extractor import extract_links
from site_snap.crawler.models import PageData, PageRecord
from site_snap.crawler.urls import AllowedDomainSet, is_crawlable, normalize_url
from site_snap.protocol import error_message, info_message, link_message, processed_content_message
from site_snap.resources import ResourceCache
from site_snap.sanitizer import sanitize

__all__ = ("Emit", "Sanitizer", "WorkerPool", "build_record")

Emit = Callable[[dict[str, Any]], Awaitable[None]]
Sanitizer = Callable[[str, str], str]

logger = logging.getLogger("SiteSnap")


async def build_record(
    page: PageData,
    allowed: AllowedDomainSet,
    fetcher: Fetcher,
    resources: Optional[ResourceCache] = None,
    sanitizer: Sanitizer = sanitize,
) -> PageRecord:
    """Sanitize a fetched page and attach its cached stylesheets."""
    html = await asyncio.to_thread(sanitizer, page.content, page.url)
    assets: dict[str, bytes] = {}
    if resources is not None:
        assets = await resources.collect(page.content, page.url, allowed, fetcher)
    return PageRecord(url=page.url, sanitized_html=html, resources=assets)


class WorkerPool:
    """Saturating producer/consumer pool: a slot is refilled as soon as it frees up."""

    def __init__(
        self,
        frontier: Frontier,
        fetcher: Fetcher,
        emit: Emit,
        allowed: AllowedDomainSet,
        *,
        resources: Optional[ResourceCache] = None,
        sanitizer: Sanitizer = sanitize,
        max_concurrent: int = 5,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.frontier = frontier
        self.fetcher = fetcher
        self.allowed = allowed
        self.resources = resources
        self.sanitizer = sanitizer
        self.max_concurrent = max_concurrent
        self._emit = emit
        self._cond = asyncio.Condition()
        self.active = 0
        self.peak_active = 0
        self.pages_processed = 0

    async def run(self) -> None:
        """Process the frontier until it is quiescent."""
        workers = [
            asyncio.create_task(self._worker(), name=f"crawl-worker-{i}")
            for i in range(self.max_concurrent)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for w in workers:
                w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def _wake_all(self) -> None:
        async with self._cond:
            self._cond.notify_all()

    async def _next_url(self) -> Optional[str]:
        async with self._cond:
            while True:
                url = self.frontier.dispatch()
                if url is not None:
                    return url
                if self.frontier.is_quiescent():
                    return None
                await self._cond.wait()

    async def _worker(self) -> None:
        while True:
            url = await self._next_url()
            if url is None:
                await self._wake_all()
                return
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
            try:
                await self.process(url)
            except Exception as exc:
                logger.exception("Unexpected failure while processing %s", url)
                await self._emit(error_message(f"Error processing {url}: {exc}", url))
            finally:
                self.active -= 1
                self.frontier.complete(url)
                await self._wake_all()

    async def process(self, url: str) -> None:
        """One fetch, extract, admit and deliver cycle for a dispatched URL."""
        if not self.allowed.is_allowed(url):
            await self._emit(error_message(f"Domain not allowed: {url}", url))
            return

        await self._emit(info_message(f"Crawling: {url}"))
        try:
            page = await self.fetcher.fetch(url)
        except FetchError as exc:
            logger.warning("%s", exc)
            await self._emit(error_message(str(exc), url))
            return

        admitted = []
        for href in extract_links(page.content):
            link = normalize_url(href, page.url)
            if link and is_crawlable(link, self.allowed.domain) and self.frontier.try_admit(link):
                admitted.append(link)
        if admitted:
            await self._wake_all()
        for link in admitted:
            await self._emit(link_message(link))

        record = await build_record(page, self.allowed, self.fetcher, self.resources, self.sanitizer)
        self.pages_processed += 1
        await self._emit(processed_content_message(record))
