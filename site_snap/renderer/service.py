"""
HTTP front of the renderer process.

Routes
------
``POST /api/screenshot``  ``{"url": ...}`` -> ``image/png`` or a JSON error.
``POST /api/crawl``       ``{"url": ...}`` -> asks the backend to crawl a site,
                          filling the content cache ahead of screenshot requests.
``GET  /health``          connection and queue state.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from aiohttp import web

from site_snap.config import AppConfig
from site_snap.renderer.cache import ContentCache
from site_snap.renderer.client import BackendClient
from site_snap.renderer.coordinator import ContentUnavailable, RenderCoordinator, RenderFn
from site_snap.renderer.engine import PlaywrightRenderer, RenderError

__all__ = ["create_renderer_app", "run_renderer"]

logger = logging.getLogger("SiteSnap")

CONFIG_KEY = web.AppKey("config", AppConfig)
COORDINATOR_KEY = web.AppKey("coordinator", RenderCoordinator)
CLIENT_KEY = web.AppKey("client", BackendClient)


async def _read_url(request: web.Request) -> str:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Body must be JSON"}), content_type="application/json"
        )
    url = body.get("url") if isinstance(body, dict) else None
    if not url or not isinstance(url, str):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "URL is required"}), content_type="application/json"
        )
    return url


async def screenshot_handler(request: web.Request) -> web.Response:
    url = await _read_url(request)
    coordinator = request.app[COORDINATOR_KEY]
    timeout = request.app[CONFIG_KEY].renderer.request_timeout
    logger.info("Processing screenshot for URL: %s", url)
    try:
        future = await coordinator.submit(url)
        image = await asyncio.wait_for(future, timeout=timeout)
    except ValueError as exc:
        return web.json_response({"error": "Invalid URL", "details": str(exc)}, status=400)
    except ContentUnavailable as exc:
        return web.json_response({"error": "Failed to take screenshot", "details": str(exc)}, status=502)
    except RenderError as exc:
        return web.json_response({"error": "Failed to take screenshot", "details": str(exc)}, status=500)
    except asyncio.TimeoutError:
        return web.json_response(
            {"error": "Failed to take screenshot", "details": f"no result within {timeout} s"},
            status=504,
        )
    return web.Response(body=image, content_type="image/png")


async def crawl_handler(request: web.Request) -> web.Response:
    url = await _read_url(request)
    try:
        await request.app[CLIENT_KEY].start_crawl(url)
    except ConnectionError as exc:
        return web.json_response({"error": "Backend unavailable", "details": str(exc)}, status=503)
    return web.json_response({"status": "started", "url": url}, status=202)


async def health_handler(request: web.Request) -> web.Response:
    coordinator = request.app[COORDINATOR_KEY]
    return web.json_response(
        {
            "status": "ok",
            "backend_connected": request.app[CLIENT_KEY].connected.is_set(),
            "cached": len(coordinator.cache),
            "queued": len(coordinator.queue),
            "pending": len(coordinator.pending_urls),
        }
    )


def create_renderer_app(
    config: AppConfig | None = None,
    *,
    render: Optional[RenderFn] = None,
    cache: Optional[ContentCache] = None,
) -> web.Application:
    """Build the renderer app; *render* and *cache* may be injected (tests, embedding)."""
    app = web.Application()
    app[CONFIG_KEY] = config = config or AppConfig()
    cfg = config.renderer

    engine: Optional[PlaywrightRenderer] = None
    if render is None:
        engine = PlaywrightRenderer(timeout=cfg.render_timeout)
        render = engine.render_page
    client = BackendClient(
        cfg.backend_url,
        initial_delay=cfg.reconnect_initial_delay,
        max_delay=cfg.reconnect_max_delay,
    )
    coordinator = RenderCoordinator(
        render,
        cache if cache is not None else ContentCache(cfg.cache_max_entries),
        client.request_content,
        policy=cfg.queue_policy,
        viewport=(cfg.viewport_width, cfg.viewport_height),
    )
    client.on_frame = coordinator.handle_frame
    client.on_connect = coordinator.resend_requests
    app[CLIENT_KEY] = client
    app[COORDINATOR_KEY] = coordinator

    async def _lifecycle(app: web.Application):
        client.start()
        yield
        await client.stop()
        await coordinator.close()
        if engine is not None:
            await engine.close()

    app.cleanup_ctx.append(_lifecycle)
    app.router.add_post("/api/screenshot", screenshot_handler)
    app.router.add_post("/api/crawl", crawl_handler)
    app.router.add_get("/health", health_handler)
    return app


def run_renderer(config: AppConfig) -> None:
    logger.info(
        "Screenshot service on http://%s:%d (backend %s)",
        config.renderer.host,
        config.renderer.port,
        config.renderer.backend_url,
    )
    web.run_app(create_renderer_app(config), host=config.renderer.host, port=config.renderer.port, print=None)
