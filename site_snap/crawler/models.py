"""
Data models for the SiteSnap crawler.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict


@dataclass(slots=True)
class PageData:
    """Raw HTML of a fetched page and the URL it was requested under."""

    url: str
    content: str
    content_type: str = "text/html"


@dataclass(slots=True)
class PageRecord:
    """Sanitized page ready to be delivered to the renderer.

    ``resources`` maps stylesheet URLs to their raw bytes, only for resources
    already in the resource cache at the time the record was built.
    """

    url: str
    sanitized_html: str
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resources: Dict[str, bytes] = field(default_factory=dict)
