"""
Markup sanitizer: strips scripts, comments and popup overlays before a page
is handed to the renderer.

:func:`sanitize` is total. On any internal failure the original markup is
returned unchanged.
"""
from __future__ import annotations

import logging
import re

from bs4 import BeautifulSoup, Comment
from bs4.element import Tag

__all__ = ("sanitize",)

logger = logging.getLogger("SiteSnap")

_STRIP_TAGS = ("script", "noscript", "iframe", "object", "embed")
_POPUP_RE = re.compile(
    r"(popup|pop-up|modal|cookie|consent|newsletter|overlay|lightbox|subscribe)", re.IGNORECASE
)


def _is_popup(tag: Tag) -> bool:
    if tag.name in ("html", "head", "body"):
        return False
    attrs = tag.attrs or {}
    classes = attrs.get("class") or []
    if isinstance(classes, str):
        classes = classes.split()
    markers = [attrs.get("id") or "", *classes, attrs.get("role") or ""]
    if any(_POPUP_RE.search(str(m)) for m in markers if m):
        return True
    return (attrs.get("role") or "") in ("dialog", "alertdialog")


def _ensure_base(soup: BeautifulSoup, url: str) -> None:
    if soup.find("base") is not None:
        return
    base = soup.new_tag("base", href=url)
    head = soup.find("head")
    if head is None:
        head = soup.new_tag("head")
        html = soup.find("html")
        if isinstance(html, Tag):
            html.insert(0, head)
        else:
            soup.insert(0, head)
    head.insert(0, base)


def sanitize(html: str, url: str) -> str:
    """Return a render-safe copy of *html* fetched from *url*."""
    try:
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup.find_all(_STRIP_TAGS):
            tag.decompose()
        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()
        for tag in soup.find_all(True):
            if tag.decomposed:
                continue
            if _is_popup(tag):
                tag.decompose()
                continue
            for attr in [a for a in tag.attrs if a.lower().startswith("on")]:
                del tag[attr]
        _ensure_base(soup, url)
        return str(soup)
    except Exception as exc:  # noqa: BLE001 - sanitize must never raise
        logger.warning("Sanitizer failed for %s, keeping original markup: %s", url, exc)
        return html
