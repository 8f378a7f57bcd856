from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Iterable, Mapping

from docket.errors import MalformedRecord
from docket.models import (
    DEFAULT_TIME,
    ORIGIN_CASE,
    ORIGIN_LOCAL,
    ORIGIN_TASK,
    TIME_PATTERN,
    AggregationDiagnostics,
    EventRecord,
    event_from_dict,
)


logger = logging.getLogger(__name__)

# Earlier origins win ties in deduplication.
ORIGIN_PRIORITY = {ORIGIN_LOCAL: 0, ORIGIN_CASE: 1, ORIGIN_TASK: 2}


def sort_key(event: EventRecord) -> tuple[str, str]:
    return (event.date_key, event.time or DEFAULT_TIME)


def slot_key(event: EventRecord) -> tuple[str, str, str]:
    """Secondary identity: the same title at the same date and time.

    This also folds distinct events that share a title and the default time.
    """
    return (event.date_key, event.time or DEFAULT_TIME, event.title)


def _coerce(item: EventRecord | Mapping[str, Any]) -> EventRecord:
    if isinstance(item, Mapping):
        return event_from_dict(item)
    if not isinstance(item, EventRecord) or item.origin not in ORIGIN_PRIORITY:
        raise MalformedRecord(f"not an event record: {type(item).__name__}")
    # Records are mutable dataclasses; re-check what __post_init__ guaranteed.
    if not isinstance(item.date, dt.date) or isinstance(item.date, dt.datetime):
        raise MalformedRecord(f"event {item.id!r} has an invalid date")
    if item.time and not TIME_PATTERN.match(item.time):
        raise MalformedRecord(f"event {item.id!r} has an invalid time")
    if not isinstance(item.id, str) or not item.id.strip():
        raise MalformedRecord("event without a string id")
    if not isinstance(item.title, str):
        raise MalformedRecord(f"event {item.id!r} has a non-string title")
    return item


def merge(
    sources: Iterable[Iterable[EventRecord | Mapping[str, Any]]],
    diagnostics: AggregationDiagnostics | None = None,
) -> list[EventRecord]:
    """Combine event sources into one deduplicated, chronologically sorted list.

    Records are ordered local, case, task (stable within an origin). A record
    is dropped when its id or its (date, time, title) was already seen, so the
    earliest one wins. The survivors are stably sorted by (date, time).
    Malformed records are dropped and counted; this function never raises.
    """
    candidates: list[EventRecord] = []
    dropped = 0
    for source in sources:
        for item in source or ():
            try:
                candidates.append(_coerce(item))
            except MalformedRecord as exc:
                dropped += 1
                logger.debug("Dropping malformed event during merge: %s", exc)

    candidates.sort(key=lambda event: ORIGIN_PRIORITY[event.origin])

    seen_ids: set[str] = set()
    seen_slots: set[tuple[str, str, str]] = set()
    unique: list[EventRecord] = []
    for event in candidates:
        slot = slot_key(event)
        if event.id in seen_ids or slot in seen_slots:
            continue
        seen_ids.add(event.id)
        seen_slots.add(slot)
        unique.append(event)

    unique.sort(key=sort_key)

    if diagnostics is not None and dropped:
        diagnostics.drop(dropped)
    return unique
