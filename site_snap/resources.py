"""
Static resource (stylesheet) cache shared by every crawl of the backend
process. Resources are only fetched from hosts in the crawl's
:class:`~site_snap.crawler.urls.AllowedDomainSet`.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable

from site_snap.crawler.fetcher import Fetcher
from site_snap.crawler.link_extractor import extract_stylesheets
from site_snap.crawler.urls import AllowedDomainSet

logger = logging.getLogger("SiteSnap")


class ResourceCache:
    """url -> raw bytes; failed downloads are not cached and retried later."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}

    def get(self, url: str) -> bytes | None:
        return self._data.get(url)

    def cached(self, urls: Iterable[str]) -> Dict[str, bytes]:
        return {u: self._data[u] for u in urls if u in self._data}

    def __contains__(self, url: str) -> bool:
        return url in self._data

    def __len__(self) -> int:
        return len(self._data)

    async def collect(
        self, html: str, page_url: str, allowed: AllowedDomainSet, fetcher: Fetcher
    ) -> Dict[str, bytes]:
        """Fetch the page's allowed stylesheets if missing and return the cached ones."""
        urls = [u for u in extract_stylesheets(html, page_url) if allowed.is_allowed(u)]
        missing = [u for u in urls if u not in self._data]
        if missing:
            results = await asyncio.gather(*(fetcher.fetch_bytes(u) for u in missing))
            for url, body in zip(missing, results):
                if body is not None:
                    self._data[url] = body
            logger.debug("Cached %d/%d stylesheets for %s", sum(r is not None for r in results), len(missing), page_url)
        return self.cached(urls)
