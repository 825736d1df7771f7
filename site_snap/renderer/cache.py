"""
Content cache of the renderer process.
"""
from __future__ import annotations

from collections import OrderedDict
from typing import List, Optional

from site_snap.crawler.models import PageRecord


class ContentCache:
    """CrawlURL -> PageRecord, shared by every request of the renderer process.

    With ``max_entries=None`` nothing is ever evicted. With a bound, the entry
    stored longest ago goes first; :meth:`put` reports what it evicted so the
    owner can fetch content again for requests still waiting on it.
    """

    def __init__(self, max_entries: Optional[int] = None) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1 or None")
        self.max_entries = max_entries
        self._records: "OrderedDict[str, PageRecord]" = OrderedDict()

    def put(self, record: PageRecord) -> List[str]:
        """Store *record* under its URL (replacing any older copy); return evicted URLs."""
        self._records.pop(record.url, None)
        self._records[record.url] = record
        evicted: List[str] = []
        if self.max_entries is not None:
            while len(self._records) > self.max_entries:
                url, _ = self._records.popitem(last=False)
                evicted.append(url)
        return evicted

    def get(self, url: str) -> Optional[PageRecord]:
        return self._records.get(url)

    def __contains__(self, url: object) -> bool:
        return url in self._records

    def __len__(self) -> int:
        return len(self._records)

    def urls(self) -> List[str]:
        return list(self._records)
