# Test-suite for the SiteSnap frontier scheduler (worker pool + crawl session)
from __future__ import annotations

import base64

import pytest
from aiohttp import web

from conftest import Site
from site_snap.config import CrawlerConfig
from site_snap.crawler.fetcher import Fetcher, FetchError
from site_snap.crawler.frontier import Frontier
from site_snap.crawler.pool import WorkerPool
from site_snap.crawler.urls import AllowedDomainSet, normalize_url
from site_snap.resources import ResourceCache
from site_snap.session import CrawlSession, crawl_site

#: seconds a "slow" handler sleeps
SLOW_SLEEP: float = 0.3


async def run_session(config: CrawlerConfig, seed: str, events, **kwargs) -> CrawlSession:
    async with Fetcher(config) as fetcher:
        session = CrawlSession(config, fetcher, events, **kwargs)
        assert await session.start(seed)
        await session.wait()
    return session


@pytest.mark.asyncio()
async def test_link_scenario(serve_app, unused_tcp_port, crawler_config, events):
    site = Site(
        {
            "/": (
                '<a href="/a">A</a>'
                '<a href="/a#section">A again</a>'
                '<a href="/b.png">image</a>'
                '<a href="https://other.com/c">elsewhere</a>'
            ),
            "/a/": "<h1>A</h1>",
        }
    )
    base = await serve_app(site.app, unused_tcp_port)

    session = await run_session(crawler_config, f"{base}/", events)

    assert site.hits == {"/": 1, "/a/": 1}
    assert [m["data"] for m in events.of("link")] == [f"{base}/a/"]
    processed = [m["data"]["url"] for m in events.of("processed_content")]
    assert sorted(processed) == [f"{base}/", f"{base}/a/"]
    assert len(events.of("crawling_complete")) == 1
    assert events.types()[-1] == "crawling_complete"
    assert session.frontier.is_quiescent()
    assert session.frontier.visited == {f"{base}/", f"{base}/a/"}


@pytest.mark.asyncio()
async def test_each_url_is_dispatched_once(serve_app, unused_tcp_port, crawler_config, events):
    links = "".join(f'<a href="/p{i}">{i}</a>' for i in range(10))
    pages = {"/": links}
    for i in range(10):
        # every page links back to the root and to every other page
        pages[f"/p{i}/"] = links + '<a href="/">home</a><a href="/p0/#x">p0</a>'
    site = Site(pages)
    base = await serve_app(site.app, unused_tcp_port)

    session = await run_session(crawler_config, base, events)

    assert set(site.hits) == set(pages)
    assert all(count == 1 for count in site.hits.values())
    assert session.frontier.dispatched_count == session.frontier.completed_count == 11
    assert len(events.of("link")) == 10
    assert len(events.of("crawling_complete")) == 1


@pytest.mark.asyncio()
async def test_pool_never_exceeds_max_concurrent(serve_app, unused_tcp_port, events):
    paths = [f"/s{i}/" for i in range(5)]
    site = Site({p: "<p>slow</p>" for p in paths}, delays={p: SLOW_SLEEP for p in paths})
    base = await serve_app(site.app, unused_tcp_port)
    config = CrawlerConfig(max_concurrent=2, timeout=5.0)

    frontier = Frontier()
    for path in paths:
        assert frontier.try_admit(f"{base}{path}")
    async with Fetcher(config) as fetcher:
        pool = WorkerPool(frontier, fetcher, events, AllowedDomainSet(base), max_concurrent=2)
        await pool.run()

    assert site.peak == 2
    assert pool.peak_active == 2
    assert set(site.hits) == set(paths)
    assert frontier.is_quiescent()
    assert frontier.completed_count == 5
    assert len(events.of("processed_content")) == 5


@pytest.mark.asyncio()
async def test_free_slot_is_refilled_immediately(serve_app, unused_tcp_port, events):
    """A slow fetch must not hold back the rest of the queue (no batching)."""
    site = Site(
        {
            "/": '<a href="/slow">s</a><a href="/f1">1</a><a href="/f2">2</a><a href="/f3">3</a>',
            "/slow/": "<p>slow</p>",
            "/f1/": "<p>1</p>",
            "/f2/": "<p>2</p>",
            "/f3/": "<p>3</p>",
        },
        delays={"/slow/": 1.0, "/f1/": 0.05, "/f2/": 0.05, "/f3/": 0.05},
    )
    base = await serve_app(site.app, unused_tcp_port)

    await run_session(CrawlerConfig(max_concurrent=2, timeout=5.0), base, events)

    assert site.peak <= 2
    assert site.started["/f3/"] < site.finished["/slow/"]
    assert site.finished["/f3/"] < site.finished["/slow/"]


@pytest.mark.asyncio()
async def test_failures_are_reported_and_crawl_completes(serve_app, unused_tcp_port, events):
    site = Site(
        {
            "/": (
                '<a href="/missing">404</a><a href="/image">png</a>'
                '<a href="/stuck">timeout</a><a href="/ok">ok</a>'
            ),
            "/missing/": "gone",
            "/image/": "PNG",
            "/stuck/": "<p>late</p>",
            "/ok/": "<p>fine</p>",
        },
        statuses={"/missing/": 404},
        content_types={"/image/": "image/png"},
        delays={"/stuck/": 2.0},
    )
    base = await serve_app(site.app, unused_tcp_port)
    config = CrawlerConfig(max_concurrent=3, timeout=0.5)

    session = await run_session(config, base, events)

    errors = {m["url"]: m["data"] for m in events.of("error")}
    assert set(errors) == {f"{base}/missing/", f"{base}/image/", f"{base}/stuck/"}
    assert "404" in errors[f"{base}/missing/"]
    assert "HTML" in errors[f"{base}/image/"]
    assert "timed out" in errors[f"{base}/stuck/"]
    assert sorted(m["data"]["url"] for m in events.of("processed_content")) == [f"{base}/", f"{base}/ok/"]
    assert len(events.of("crawling_complete")) == 1
    assert session.frontier.dispatched_count == session.frontier.completed_count == 5


@pytest.mark.asyncio()
async def test_processed_content_is_sanitized_and_carries_stylesheets(
    serve_app, unused_tcp_port, crawler_config, events
):
    site = Site(
        {
            "/": (
                '<html><head><link rel="stylesheet" href="/site.css">'
                "<script>track()</script></head><body><p>Hi</p></body></html>"
            ),
            "/site.css": "body { color: red; }",
        },
        content_types={"/site.css": "text/css"},
    )
    base = await serve_app(site.app, unused_tcp_port)
    resources = ResourceCache()

    await run_session(crawler_config, base, events, resources=resources)

    (page,) = events.of("processed_content")
    assert "track()" not in page["data"]["html"]
    assert "<p>Hi</p>" in page["data"]["html"]
    css = page["data"]["resources"][f"{base}/site.css"]
    assert base64.b64decode(css) == b"body { color: red; }"
    assert f"{base}/site.css" in resources


@pytest.mark.asyncio()
async def test_invalid_seed_never_starts(crawler_config, events):
    async with Fetcher(crawler_config) as fetcher:
        session = CrawlSession(crawler_config, fetcher, events)
        assert not await session.start("definitely not a url")
        await session.wait()
    assert session.frontier is None
    assert events.types() == ["error"]
    assert "Invalid URL" in events.messages[0]["data"]


@pytest.mark.asyncio()
async def test_fetch_one_replies_even_when_the_host_is_unusable(crawler_config, events):
    # a 70-character label is syntactically fine but the IDNA codec refuses it
    url = "http://a" + "b" * 70 + ".com/"
    async with Fetcher(crawler_config) as fetcher:
        with pytest.raises(FetchError, match="invalid URL"):
            await fetcher.fetch(url)
        assert await fetcher.fetch_bytes(url) is None

        session = CrawlSession(crawler_config, fetcher, events)
        assert await session.fetch_one(url) is None

    assert events.types() == ["error"]
    assert events.messages[0]["url"] == normalize_url(url)


@pytest.mark.asyncio()
async def test_fetch_one_reports_unexpected_failures(serve_app, unused_tcp_port, crawler_config, events):
    site = Site({"/page/": "<p>content</p>"})
    base = await serve_app(site.app, unused_tcp_port)

    def broken_sanitizer(html, base_url):
        raise RuntimeError("sanitizer crashed")

    async with Fetcher(crawler_config) as fetcher:
        session = CrawlSession(crawler_config, fetcher, events, sanitizer=broken_sanitizer)
        assert await session.fetch_one(f"{base}/page") is None

    assert events.types() == ["error"]
    assert events.messages[0]["url"] == f"{base}/page/"
    assert "sanitizer crashed" in events.messages[0]["data"]


@pytest.mark.asyncio()
async def test_new_crawl_discards_previous(serve_app, unused_tcp_port_factory, crawler_config, events):
    slow = Site({"/": '<a href="/x">x</a>', "/x/": "x"}, delays={"/": 1.0})
    fast = Site({"/": '<a href="/y">y</a>', "/y/": "y"})
    slow_base = await serve_app(slow.app, unused_tcp_port_factory())
    fast_base = await serve_app(fast.app, unused_tcp_port_factory())

    async with Fetcher(crawler_config) as fetcher:
        session = CrawlSession(crawler_config, fetcher, events)
        assert await session.start(slow_base)
        first = session.frontier
        assert await session.start(fast_base)
        await session.wait()

    assert session.frontier is not first
    assert session.generation == 2
    assert all(m["data"]["url"].startswith(fast_base) for m in events.of("processed_content"))
    assert all(m["data"].startswith(fast_base) for m in events.of("link"))
    assert len(events.of("crawling_complete")) == 1
    assert "/x/" not in slow.hits


@pytest.mark.asyncio()
async def test_detached_session_keeps_crawling(serve_app, unused_tcp_port, crawler_config, events):
    site = Site({"/": '<a href="/a">a</a>', "/a/": "a"}, delays={"/": 0.2})
    base = await serve_app(site.app, unused_tcp_port)

    async with Fetcher(crawler_config) as fetcher:
        session = CrawlSession(crawler_config, fetcher, events)
        await session.start(base)
        session.detach()
        await session.wait()

    assert site.hits == {"/": 1, "/a/": 1}
    assert events.messages == []
    assert session.completed


@pytest.mark.asyncio()
async def test_fetch_one_on_demand(serve_app, unused_tcp_port, crawler_config, events):
    site = Site({"/page/": "<p>content</p><script>x()</script>"})
    base = await serve_app(site.app, unused_tcp_port)

    async with Fetcher(crawler_config) as fetcher:
        session = CrawlSession(crawler_config, fetcher, events)
        record = await session.fetch_one(f"{base}/Page#frag")
        missing = await session.fetch_one(f"{base}/nowhere")

    assert record is not None and record.url == f"{base}/page/"
    assert missing is None
    assert events.types() == ["processed_content", "error"]
    assert "x()" not in events.messages[0]["data"]["html"]
    assert events.messages[1]["url"] == f"{base}/nowhere/"
    assert session.frontier is None


@pytest.mark.asyncio()
async def test_crawl_site_helper(serve_app, unused_tcp_port, crawler_config, events):
    site = Site({"/": "<p>only page</p>"})
    base = await serve_app(site.app, unused_tcp_port)

    assert await crawl_site(crawler_config, base, events)
    assert not await crawl_site(crawler_config, "::", events)
    assert events.types().count("crawling_complete") == 1


@pytest.mark.asyncio()
@pytest.mark.slow()
async def test_retry_on_server_error(serve_app, unused_tcp_port, events):
    calls = {"n": 0}
    flaky_app = web.Application()

    async def flaky(_):
        calls["n"] += 1
        if calls["n"] == 1:
            return web.Response(status=503)
        return web.Response(text="<h1>Recovered</h1>", content_type="text/html")

    flaky_app.router.add_get("/", flaky)
    base = await serve_app(flaky_app, unused_tcp_port)
    await run_session(CrawlerConfig(retry_times=1, timeout=5.0), base, events)

    assert calls["n"] == 2
    assert len(events.of("processed_content")) == 1
    assert events.of("error") == []
