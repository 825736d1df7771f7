"""
URL canonicalisation and crawl-scope predicates for SiteSnap.
"""
from __future__ import annotations

import posixpath
import re
from typing import FrozenSet, Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

__all__ = (
    "TRACKING_PARAMS",
    "normalize_url",
    "is_crawlable",
    "extract_host",
    "AllowedDomainSet",
)

TRACKING_PARAMS: FrozenSet[str] = frozenset(
    {"utm_source", "utm_medium", "utm_campaign", "fbclid", "gclid", "_ga"}
)

_SKIP_EXT_RE = re.compile(
    r"\.(?:jpe?g|png|gif|webp|bmp|svg|ico|tiff?|avif"
    r"|css|js|map"
    r"|woff2?|ttf|eot|otf"
    r"|pdf|zip|rar|7z|tar|gz|tgz|bz2|xz"
    r"|exe|msi|dmg|apk|bin|iso|deb|rpm"
    r"|mp[34]|m4a|m4v|avi|mkv|mov|wmv|flv|webm|wav|ogg|flac)$",
    re.IGNORECASE,
)

_SKIP_PATH_PATTERNS = (
    "/wp-",
    "/feed/",
    "/tag/",
    "/category/",
    "/author/",
    "/page/",
    "/comment-",
    "/trackback/",
)


def normalize_url(raw: str, base: Optional[str] = None) -> Optional[str]:
    """
    Canonicalise *raw* (resolved against *base*) for deduplication.

    Drops the fragment and tracking query parameters, lower-cases the whole
    URL and appends ``/`` to paths whose last segment has no extension.
    Returns ``None`` for unparsable input and for non-HTTP(S) schemes.
    """
    if not isinstance(raw, str):
        return None
    raw = raw.strip()
    if not raw and not base:
        return None
    try:
        absolute = urljoin(base, raw) if base else raw
        parts = urlsplit(absolute)
        # .port validates the port number and raises ValueError when it is garbage
        parts.port
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return None

    path = parts.path or "/"
    if not path.endswith("/") and not posixpath.splitext(path)[1]:
        path += "/"

    query = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS
    ]
    normalized = urlunsplit((parts.scheme, parts.netloc, path, urlencode(query, doseq=True), ""))
    return normalized.lower()


def extract_host(url: str) -> str:
    """Lower-cased hostname of *url* without port, ``""`` if it has none."""
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def is_crawlable(url: str, domain: str) -> bool:
    """True if *url* is a page of *domain* worth fetching (exact host match)."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if (parts.hostname or "").lower() != domain.lower():
        return False
    path = parts.path.lower()
    if _SKIP_EXT_RE.search(path):
        return False
    return not any(pattern in path for pattern in _SKIP_PATH_PATTERNS)


class AllowedDomainSet:
    """Crawl host plus a fixed CDN allowlist; read-only after construction."""

    __slots__ = ("_hosts", "domain")

    def __init__(self, seed_url: str, cdns: Iterable[str] = ()) -> None:
        domain = extract_host(seed_url)
        if not domain:
            raise ValueError(f"Invalid URL: {seed_url!r}")
        self.domain = domain
        self._hosts = frozenset({domain, *(h.lower() for h in cdns)})

    def is_allowed(self, url: str) -> bool:
        host = extract_host(url)
        return bool(host) and host in self._hosts

    def __contains__(self, host: str) -> bool:
        return host.lower() in self._hosts

    def __iter__(self):
        return iter(sorted(self._hosts))

    def __repr__(self) -> str:
        return f"AllowedDomainSet({', '.join(sorted(self._hosts))})"
