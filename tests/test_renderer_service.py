# Test-suite for the screenshot service talking to a live crawl backend
from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import aiohttp
import pytest
import pytest_asyncio

from conftest import Site
from site_snap.config import AppConfig, CrawlerConfig, RendererConfig
from site_snap.renderer.engine import RenderError
from site_snap.renderer.service import create_renderer_app
from site_snap.server import create_app

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


class FakeRender:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, html, base_url, viewport, resources):
        self.calls.append({"html": html, "url": base_url, "viewport": viewport, "resources": resources})
        if "explode" in html:
            raise RenderError(f"Failed to take screenshot of {base_url}: page crashed")
        return PNG_MAGIC + base_url.encode()


def renderer_config(backend_port: int, **renderer: Any) -> AppConfig:
    options: Dict[str, Any] = {
        "backend_url": f"ws://localhost:{backend_port}/ws",
        "reconnect_initial_delay": 0.05,
        "reconnect_max_delay": 0.2,
        "request_timeout": 5.0,
    }
    options.update(renderer)
    return AppConfig(crawler=CrawlerConfig(timeout=2.0), renderer=RendererConfig(**options))


async def wait_connected(http: aiohttp.ClientSession, renderer: str, timeout: float = 5.0) -> None:
    async def _poll() -> None:
        while True:
            async with http.get(f"{renderer}/health") as resp:
                if (await resp.json())["backend_connected"]:
                    return
            await asyncio.sleep(0.05)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture()
def site() -> Site:
    return Site(
        {
            "/": '<a href="/about">About</a><a href="/boom">Boom</a>',
            "/about/": '<html><head><link rel="stylesheet" href="/s.css"></head><body>About</body></html>',
            "/boom/": "<p>explode</p>",
            "/slow/": "<p>slow</p>",
            "/s.css": "h1 { color: blue }",
        },
        content_types={"/s.css": "text/css"},
        delays={"/slow/": 1.0},
    )


@pytest_asyncio.fixture
async def stack(serve_app, unused_tcp_port_factory, site):
    """Site, crawl backend and renderer (with a fake engine), all wired together."""
    ports = [unused_tcp_port_factory() for _ in range(3)]
    site_base = await serve_app(site.app, ports[0])
    await serve_app(create_app(AppConfig(crawler=CrawlerConfig(timeout=2.0))), ports[1])
    render = FakeRender()
    config = renderer_config(ports[1], request_timeout=0.5)
    renderer = await serve_app(create_renderer_app(config, render=render), ports[2])
    async with aiohttp.ClientSession() as http:
        await wait_connected(http, renderer)
        yield http, site_base, renderer, render


@pytest.mark.asyncio()
async def test_screenshot_of_uncrawled_page(stack, site):
    http, site_base, renderer, render = stack
    async with http.post(f"{renderer}/api/screenshot", json={"url": f"{site_base}/about"}) as resp:
        assert resp.status == 200
        assert resp.content_type == "image/png"
        body = await resp.read()

    assert body.startswith(PNG_MAGIC)
    (call,) = render.calls
    assert call["url"] == f"{site_base}/about/"
    assert call["viewport"] == (1280, 720)
    assert call["resources"] == {f"{site_base}/s.css": b"h1 { color: blue }"}
    assert site.hits["/about/"] == 1


@pytest.mark.asyncio()
async def test_second_screenshot_uses_cache(stack, site):
    http, site_base, renderer, render = stack
    for _ in range(2):
        async with http.post(f"{renderer}/api/screenshot", json={"url": f"{site_base}/about/"}) as resp:
            assert resp.status == 200
    assert site.hits["/about/"] == 1
    assert len(render.calls) == 2


@pytest.mark.asyncio()
async def test_crawl_then_screenshot(stack, site):
    http, site_base, renderer, render = stack
    async with http.post(f"{renderer}/api/crawl", json={"url": site_base}) as resp:
        assert resp.status == 202

    async def _cached() -> None:
        while True:
            async with http.get(f"{renderer}/health") as resp:
                if (await resp.json())["cached"] == 3:
                    return
            await asyncio.sleep(0.05)

    await asyncio.wait_for(_cached(), timeout=5)
    async with http.post(f"{renderer}/api/screenshot", json={"url": site_base}) as resp:
        assert resp.status == 200
    assert site.hits["/"] == 1


@pytest.mark.asyncio()
@pytest.mark.parametrize(
    ("payload", "status", "error"),
    [
        ({}, 400, "URL is required"),
        ({"url": ""}, 400, "URL is required"),
        ({"url": "not a url"}, 400, "Invalid URL"),
    ],
)
async def test_bad_screenshot_requests(stack, payload, status, error):
    http, _, renderer, render = stack
    async with http.post(f"{renderer}/api/screenshot", json=payload) as resp:
        assert resp.status == status
        assert (await resp.json())["error"] == error
    assert render.calls == []


@pytest.mark.asyncio()
async def test_body_must_be_json(stack):
    http, _, renderer, _ = stack
    async with http.post(f"{renderer}/api/screenshot", data=b"url=x") as resp:
        assert resp.status == 400
        assert (await resp.json())["error"] == "Body must be JSON"


@pytest.mark.asyncio()
async def test_missing_page_reports_backend_failure(stack):
    http, site_base, renderer, render = stack
    async with http.post(f"{renderer}/api/screenshot", json={"url": f"{site_base}/nope"}) as resp:
        assert resp.status == 502
        details = (await resp.json())["details"]
    assert "404" in details
    assert render.calls == []


@pytest.mark.asyncio()
async def test_render_error_is_500(stack):
    http, site_base, renderer, _ = stack
    async with http.post(f"{renderer}/api/screenshot", json={"url": f"{site_base}/boom"}) as resp:
        assert resp.status == 500
        assert "page crashed" in (await resp.json())["details"]


@pytest.mark.asyncio()
async def test_slow_content_times_out(stack):
    http, site_base, renderer, _ = stack
    async with http.post(f"{renderer}/api/screenshot", json={"url": f"{site_base}/slow"}) as resp:
        assert resp.status == 504


@pytest.mark.asyncio()
async def test_client_reconnects_when_backend_appears(serve_app, unused_tcp_port_factory, site):
    site_port, backend_port, renderer_port = (unused_tcp_port_factory() for _ in range(3))
    site_base = await serve_app(site.app, site_port)
    render = FakeRender()
    renderer = await serve_app(create_renderer_app(renderer_config(backend_port), render=render), renderer_port)

    async with aiohttp.ClientSession() as http:
        async with http.get(f"{renderer}/health") as resp:
            assert (await resp.json())["backend_connected"] is False
        async with http.post(f"{renderer}/api/crawl", json={"url": site_base}) as resp:
            assert resp.status == 503

        # queued while offline; the request is sent again once connected
        shot = asyncio.ensure_future(http.post(f"{renderer}/api/screenshot", json={"url": f"{site_base}/about"}))
        await asyncio.sleep(0.1)
        await serve_app(create_app(AppConfig(crawler=CrawlerConfig(timeout=2.0))), backend_port)
        await wait_connected(http, renderer)

        resp = await asyncio.wait_for(shot, timeout=5)
        async with resp:
            assert resp.status == 200
    assert [call["url"] for call in render.calls] == [f"{site_base}/about/"]
