from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from docket.models import DEFAULT_TIME, EventRecord


def _event_start(event: EventRecord) -> datetime:
    # Floating local time, same as the stored YYYY-MM-DD / HH:MM pair.
    hour, minute = (event.time or DEFAULT_TIME).split(":")
    return datetime(event.date.year, event.date.month, event.date.day, int(hour), int(minute))


def _description(event: EventRecord) -> str:
    lines = []
    if event.case_number:
        lines.append(f"Case: {event.case_number}")
    if event.client:
        lines.append(f"Client: {event.client}")
    if event.judge:
        lines.append(f"Judge: {event.judge}")
    if event.counsel:
        lines.append(f"Counsel: {event.counsel}")
    if event.notes:
        lines.append(event.notes)
    return "\n".join(lines)


def build_ics(events: Iterable[EventRecord], calendar_name: str = "Docket") -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", "-//Docket//Case Calendar//EN")
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("X-WR-CALNAME", calendar_name)
    for event in events:
        start = _event_start(event)
        vevent = ICEvent()
        vevent.add("UID", f"{event.id}@{event.organization_id}")
        vevent.add("SUMMARY", event.title)
        vevent.add("DTSTART", start)
        vevent.add("DTEND", start + timedelta(hours=1))
        vevent.add("CATEGORIES", [event.kind])
        if event.place:
            vevent.add("LOCATION", event.place)
        description = _description(event)
        if description:
            vevent.add("DESCRIPTION", description)
        if event.priority:
            vevent.add("PRIORITY", {"high": 1, "medium": 5, "low": 9}[event.priority])
        calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")
