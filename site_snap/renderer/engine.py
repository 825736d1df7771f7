"""
Playwright-backed render engine: sanitized HTML in, PNG screenshot out.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Tuple

from playwright.async_api import Browser, Playwright, Route, async_playwright
from playwright.async_api import Error as PlaywrightError

__all__ = ("RenderError", "PlaywrightRenderer", "Viewport")

logger = logging.getLogger("SiteSnap")

Viewport = Tuple[int, int]


class RenderError(Exception):
    """Navigation or screenshot failure for one page."""


class PlaywrightRenderer:
    """Lazily launched headless Chromium shared by all renders.

    Each render gets its own browser context, closed afterwards.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if self._browser is None or not self._browser.is_connected():
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True)
                logger.info("Browser initialized")
            return self._browser

    async def render_page(
        self,
        html: str,
        base_url: str,
        viewport: Viewport = (1280, 720),
        resources: Optional[Dict[str, bytes]] = None,
    ) -> bytes:
        """Render *html* as if served from *base_url*; stylesheets in *resources* are served locally."""
        browser = await self._ensure_browser()
        width, height = viewport
        context = await browser.new_context(viewport={"width": width, "height": height})
        try:
            page = await context.new_page()
            if resources:
                async def _serve_cached(route: Route) -> None:
                    body = resources.get(route.request.url)
                    if body is None:
                        await route.continue_()
                    else:
                        await route.fulfill(status=200, body=body, content_type="text/css")

                await page.route("**/*", _serve_cached)
            await page.set_content(html, wait_until="networkidle", timeout=self.timeout * 1000)
            return await page.screenshot(full_page=True, type="png")
        except PlaywrightError as exc:
            raise RenderError(f"Failed to take screenshot of {base_url}: {exc}") from exc
        finally:
            await context.close()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
