from __future__ import annotations

import datetime as dt
from typing import Iterable

from docket.models import EventRecord, normalize_kind, parse_event_date


def events_on(events: Iterable[EventRecord], day: str | dt.date) -> list[EventRecord]:
    target = parse_event_date(day)
    return [event for event in events if event.date == target]


def events_between(
    events: Iterable[EventRecord],
    start: str | dt.date,
    end: str | dt.date,
) -> list[EventRecord]:
    """Events whose date falls in ``[start, end]``, both ends inclusive."""
    first = parse_event_date(start)
    last = parse_event_date(end)
    if last < first:
        first, last = last, first
    return [event for event in events if first <= event.date <= last]


def filter_by_kind(events: Iterable[EventRecord], kind: str | None) -> list[EventRecord]:
    if not kind:
        return list(events)
    wanted = normalize_kind(kind)
    return [event for event in events if event.kind == wanted]


def search_events(events: Iterable[EventRecord], term: str | None) -> list[EventRecord]:
    needle = str(term or "").strip().casefold()
    if not needle:
        return list(events)
    matches: list[EventRecord] = []
    for event in events:
        haystack = (
            event.title,
            event.notes,
            event.case_number,
            event.place,
            event.judge,
            event.counsel,
        )
        if any(needle in str(value or "").casefold() for value in haystack):
            matches.append(event)
    return matches


def upcoming_events(
    events: Iterable[EventRecord],
    today: dt.date | None = None,
    days: int = 7,
) -> list[EventRecord]:
    start = today or dt.date.today()
    end = start + dt.timedelta(days=max(0, days))
    selected = [event for event in events if start <= event.date <= end]
    return sorted(selected, key=lambda event: (event.date, event.time))


def sort_by_time(events: Iterable[EventRecord]) -> list[EventRecord]:
    # Events without a time go last.
    return sorted(events, key=lambda event: (not event.time, event.time or ""))
