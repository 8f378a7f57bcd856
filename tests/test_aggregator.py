import asyncio
import tempfile
import unittest
from pathlib import Path

from docket.aggregator import EventAggregator
from docket.bus import ChangeBus, ChangeKind, ChangeNotice
from docket.case_source import RemoteCaseEventSource
from docket.errors import RemoteUnavailable
from docket.local_store import LocalEventStore
from docket.models import CaseRecord, LocalEvent, TaskRecord
from docket.state import CalendarState


class _CaseQuery:
    def __init__(self, cases=None, error: Exception | None = None) -> None:
        self.cases = cases or []
        self.error = error

    async def query_cases(self, organization_id: str):
        if self.error is not None:
            raise self.error
        return self.cases


class _TaskSource:
    def __init__(self, tasks=None, error: Exception | None = None, delay: float = 0.0) -> None:
        self.tasks = tasks or []
        self.error = error
        self.delay = delay

    async def list_tasks(self, organization_id: str):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.tasks


class EventAggregatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = LocalEventStore(str(Path(self.temp_dir.name) / "docket.db"))
        self.state = CalendarState()
        self.bus = ChangeBus()
        self.store.save_all(
            "org-1",
            [
                LocalEvent(id="evt-1", title="Reunion con cliente", date="2026-01-21", time="10:00",
                           organization_id="org-1"),
                LocalEvent(id="evt-2", title="Audiencia - 12/2026", date="2026-01-22", time="09:30",
                           organization_id="org-1"),
            ],
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _aggregator(self, case_query, task_source, timeout_seconds: float = 5.0) -> EventAggregator:
        return EventAggregator(
            store=self.store,
            case_source=RemoteCaseEventSource(case_query, timeout_seconds=timeout_seconds),
            task_source=task_source,
            state=self.state,
            bus=self.bus,
            timeout_seconds=timeout_seconds,
        )

    async def test_remote_cases_down_still_shows_local_and_task_events(self) -> None:
        aggregator = self._aggregator(
            _CaseQuery(error=RemoteUnavailable("connection refused")),
            _TaskSource(
                [
                    TaskRecord(id="t1", description="Presentar escrito", due_date="2026-01-20"),
                    TaskRecord(id="t2", description="Hecho", due_date="2026-01-20", completed=True),
                ]
            ),
        )

        with self.assertLogs("docket.case_source", level="WARNING"):
            view = await aggregator.refresh("org-1")

        self.assertEqual([event.id for event in view.events], ["task-t1", "evt-1", "evt-2"])
        self.assertEqual(dict(view.day_index), {"2026-01-20": 1, "2026-01-21": 1, "2026-01-22": 1})
        self.assertEqual(len(view.diagnostics.warnings), 1)
        self.assertIs(self.state.get("org-1"), view)

        runs = self.store.recent_aggregation_runs(organization_id="org-1")
        self.assertEqual(runs[0]["local_count"], 2)
        self.assertEqual(runs[0]["case_count"], 0)
        self.assertEqual(runs[0]["task_count"], 1)
        self.assertEqual(runs[0]["merged_count"], 3)

    async def test_hearing_matching_a_local_event_is_deduplicated(self) -> None:
        aggregator = self._aggregator(
            _CaseQuery(
                [
                    CaseRecord(id="c12", number="12/2026", hearing_date="2026-01-22", hearing_time="09:30"),
                    CaseRecord(id="c13", number="13/2026", hearing_date="2026-01-23"),
                ]
            ),
            _TaskSource(),
        )
        view = await aggregator.refresh("org-1")
        self.assertEqual([event.id for event in view.events], ["evt-1", "evt-2", "case-c13"])
        self.assertEqual(view.diagnostics.warnings, [])

    async def test_all_remote_sources_failing_is_not_an_error(self) -> None:
        aggregator = self._aggregator(
            _CaseQuery(error=RuntimeError("boom")),
            _TaskSource(delay=1.0),
            timeout_seconds=0.01,
        )
        with self.assertLogs("docket", level="WARNING"):
            view = await aggregator.refresh("org-1")
        self.assertEqual([event.id for event in view.events], ["evt-1", "evt-2"])
        self.assertEqual(len(view.diagnostics.warnings), 2)

    async def test_refresh_publishes_view_refreshed(self) -> None:
        notices: list[ChangeNotice] = []
        self.bus.subscribe(notices.append, ChangeKind.VIEW_REFRESHED)
        aggregator = self._aggregator(_CaseQuery(), None)

        view = await aggregator.refresh("org-1")

        self.assertEqual(len(notices), 1)
        self.assertEqual(notices[0].details["generation"], view.generation)
        self.assertEqual(notices[0].details["count"], 2)

    async def test_stale_pass_returns_newer_view(self) -> None:
        aggregator = self._aggregator(_CaseQuery(), _TaskSource(delay=0.05))
        pass_task = asyncio.ensure_future(aggregator.refresh("org-1"))
        await asyncio.sleep(0)

        newer = self.state.publish("org-1", [], generation=self.state.reserve_generation())
        result = await pass_task

        self.assertIs(result, newer)
        self.assertEqual(self.state.get("org-1").events, ())


if __name__ == "__main__":
    unittest.main()
