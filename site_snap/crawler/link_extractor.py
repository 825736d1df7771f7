"""
Link extraction from raw (possibly malformed) HTML markup.

Both helpers never raise: hrefs that cannot be read are skipped.
"""
from __future__ import annotations

import logging
import re
from typing import List
from urllib.parse import urljoin

from bs4 import BeautifulSoup, ParserRejectedMarkup
from bs4.element import Tag

logger = logging.getLogger("SiteSnap")

_ANCHOR_HREF_RE = re.compile(r"<a\s[^>]*?href\s*=\s*[\"']?([^\"'\s>]+)", re.IGNORECASE)
_STYLESHEET_RE = re.compile(
    r"<link[^>]*rel=[\"']stylesheet[\"'][^>]*href=[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE
)
_SKIP_PREFIXES = ("mailto:", "javascript:", "tel:", "data:", "#")


def _soup(html: str) -> BeautifulSoup | None:
    try:
        return BeautifulSoup(html, "html.parser")
    except (ParserRejectedMarkup, AssertionError) as exc:
        logger.debug("Markup rejected by parser, falling back to pattern scan: %s", exc)
        return None


def extract_links(html: str) -> List[str]:
    """
    Return raw ``href`` values of ``<a>`` tags in document order.

    Values are stripped but not resolved; pseudo-links (mailto:, javascript:,
    tel:, data:, bare fragments) are dropped.
    """
    hrefs: List[str] = []
    soup = _soup(html)
    if soup is None:
        candidates = _ANCHOR_HREF_RE.findall(html)
    else:
        candidates = []
        for tag in soup.find_all("a", href=True):
            if not isinstance(tag, Tag):
                continue
            value = tag.get("href")
            if isinstance(value, str):
                candidates.append(value)
    for raw in candidates:
        href = raw.strip()
        if not href or href.lower().startswith(_SKIP_PREFIXES):
            continue
        hrefs.append(href)
    return hrefs


def extract_stylesheets(html: str, base_url: str) -> List[str]:
    """Absolute URLs of ``<link rel="stylesheet">`` tags, deduplicated."""
    seen: dict[str, None] = {}
    for href in _STYLESHEET_RE.findall(html):
        try:
            seen.setdefault(urljoin(base_url, href.strip()), None)
        except ValueError:
            logger.debug("Skipping malformed stylesheet href %r", href)
    return list(seen)
