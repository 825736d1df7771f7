"""Crawl frontier, fetcher and worker pool."""
from site_snap.crawler.frontier import Frontier
from site_snap.crawler.urls import AllowedDomainSet, is_crawlable, normalize_url

__all__ = ["Frontier", "AllowedDomainSet", "is_crawlable", "normalize_url"]
