from __future__ import annotations

from collections import Counter
from types import MappingProxyType
from typing import Iterable, Mapping

from docket.models import EventRecord


def build_index(events: Iterable[EventRecord]) -> Mapping[str, int]:
    """Count events per ``YYYY-MM-DD`` day. The returned mapping is read-only."""
    counts = Counter(event.date_key for event in events)
    return MappingProxyType(dict(sorted(counts.items())))


def has_activity(index: Mapping[str, int], day_key: str) -> bool:
    return index.get(day_key, 0) > 0
