import unittest
from datetime import date

from docket.day_index import build_index, has_activity
from docket.models import LocalEvent
from docket.queries import events_between, events_on, filter_by_kind, search_events, sort_by_time, upcoming_events


def _event(event_id: str, day: str, time: str = "09:00", **kwargs) -> LocalEvent:
    kwargs.setdefault("title", f"Evento {event_id}")
    return LocalEvent(id=event_id, date=day, time=time, organization_id="org-1", **kwargs)


EVENTS = [
    _event("e1", "2026-01-20", "10:00", kind="hearing", judge="Juez Núñez"),
    _event("e2", "2026-01-20", "08:00", kind="meeting", title="Reunión con ACME"),
    _event("e3", "2026-01-22", kind="deadline", notes="Plazo de contestación"),
    _event("e4", "2026-02-01", kind="task"),
]


class DayIndexTests(unittest.TestCase):
    def test_counts_events_per_day(self) -> None:
        index = build_index(EVENTS)
        self.assertEqual(dict(index), {"2026-01-20": 2, "2026-01-22": 1, "2026-02-01": 1})
        self.assertEqual(list(index), sorted(index))
        self.assertTrue(has_activity(index, "2026-01-22"))
        self.assertFalse(has_activity(index, "2026-01-21"))

    def test_index_is_read_only(self) -> None:
        index = build_index(EVENTS)
        with self.assertRaises(TypeError):
            index["2026-01-21"] = 1  # type: ignore[index]

    def test_empty(self) -> None:
        self.assertEqual(dict(build_index([])), {})


class QueryTests(unittest.TestCase):
    def test_events_on_and_between(self) -> None:
        self.assertEqual([event.id for event in events_on(EVENTS, "2026-01-20")], ["e1", "e2"])
        self.assertEqual(
            [event.id for event in events_between(EVENTS, "2026-01-20", "2026-01-22")],
            ["e1", "e2", "e3"],
        )
        # Reversed bounds are swapped.
        self.assertEqual(
            [event.id for event in events_between(EVENTS, date(2026, 2, 1), date(2026, 1, 22))],
            ["e3", "e4"],
        )

    def test_filter_by_kind_accepts_legacy_names(self) -> None:
        self.assertEqual([event.id for event in filter_by_kind(EVENTS, "vencimiento")], ["e3"])
        self.assertEqual(len(filter_by_kind(EVENTS, None)), 4)

    def test_search_is_case_insensitive(self) -> None:
        self.assertEqual([event.id for event in search_events(EVENTS, "acme")], ["e2"])
        self.assertEqual([event.id for event in search_events(EVENTS, "NÚÑEZ")], ["e1"])
        self.assertEqual([event.id for event in search_events(EVENTS, "contestación")], ["e3"])
        self.assertEqual(len(search_events(EVENTS, "  ")), 4)

    def test_upcoming_and_sort_by_time(self) -> None:
        upcoming = upcoming_events(EVENTS, today=date(2026, 1, 20), days=2)
        self.assertEqual([event.id for event in upcoming], ["e2", "e1", "e3"])
        same_day = events_on(EVENTS, "2026-01-20")
        self.assertEqual([event.id for event in sort_by_time(same_day)], ["e2", "e1"])


if __name__ == "__main__":
    unittest.main()
