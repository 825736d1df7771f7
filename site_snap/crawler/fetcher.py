"""
Fetcher module: HTTP GET of HTML pages and static resources with timeout,
redirect following and optional retry/backoff on server errors.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Optional, Sequence

from aiohttp import ClientError, ClientSession, ClientTimeout

from site_snap.config import CrawlerConfig
from site_snap.crawler.models import PageData

_HTML_TYPES = ("text/html", "application/xhtml+xml")


class FetchError(Exception):
    """A single URL could not be fetched as HTML. Never fatal to a crawl."""

    def __init__(self, url: str, reason: str, status: Optional[int] = None) -> None:
        super().__init__(f"Error processing {url}: {reason}")
        self.url = url
        self.reason = reason
        self.status = status


class Fetcher:
    """Fetches pages for the worker pool and the on-demand content path.

    The session may be shared; when none is given one is created lazily and
    owned (closed by :meth:`close`).
    """

    RETRY_STATUS: Sequence[int] = tuple(range(500, 600)) + (429,)

    def __init__(self, config: CrawlerConfig, session: Optional[ClientSession] = None) -> None:
        self.config = config
        self._session = session
        self._owns_session = session is None
        self.logger = logging.getLogger("SiteSnap")

    async def __aenter__(self) -> Fetcher:
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=ClientTimeout(total=self.config.timeout),
                headers={"User-Agent": self.config.user_agent},
                raise_for_status=False,
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def fetch(self, url: str) -> PageData:
        """
        Fetch *url* and return its HTML.

        Raises FetchError on non-2xx status, non-HTML content type, timeout,
        an unusable URL or transport error (after ``retry_times`` retries for 5xx/429).
        """
        session = self._ensure_session()
        attempts = 0
        while True:
            try:
                async with session.get(url, allow_redirects=True) as resp:
                    status = resp.status
                    if status in self.RETRY_STATUS and attempts < self.config.retry_times:
                        raise ClientError(f"retryable status {status}")
                    if not 200 <= status < 300:
                        raise FetchError(url, f"HTTP error! status: {status}", status)
                    mime = resp.headers.get("Content-Type", "").split(";", 1)[0].strip().lower()
                    if mime not in _HTML_TYPES:
                        raise FetchError(url, f"not an HTML page ({mime or 'no content type'})", status)
                    text = await resp.text(errors="replace")
                    return PageData(url, text, mime)
            except asyncio.TimeoutError as exc:
                raise FetchError(url, "request timed out") from exc
            except ValueError as exc:
                # UnicodeError for bad IDNA labels, InvalidURL from aiohttp
                raise FetchError(url, f"invalid URL: {exc}") from exc
            except ClientError as exc:
                attempts += 1
                if attempts > self.config.retry_times:
                    raise FetchError(url, str(exc) or exc.__class__.__name__) from exc
                backoff = min(60, 2**attempts + random.random())
                self.logger.debug(
                    "Retry %d/%d for %s after %.2f s", attempts, self.config.retry_times, url, backoff
                )
                await asyncio.sleep(backoff)

    async def fetch_bytes(self, url: str) -> Optional[bytes]:
        """Download a static resource; ``None`` on any failure."""
        session = self._ensure_session()
        try:
            async with session.get(url, allow_redirects=True) as resp:
                if not 200 <= resp.status < 300:
                    self.logger.debug("Resource %s -> HTTP %s", url, resp.status)
                    return None
                return await resp.read()
        except (ClientError, asyncio.TimeoutError, ValueError) as exc:
            self.logger.debug("Error fetching resource %s: %s", url, exc)
            return None
