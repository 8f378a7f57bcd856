from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from docket.bus import ChangeBus, ChangeKind, ChangeNotice
from docket.case_source import RemoteCaseEventSource
from docket.errors import RemoteUnavailable
from docket.local_store import LocalEventStore
from docket.merger import merge
from docket.models import DEFAULT_TIME, AggregationDiagnostics, CalendarView, EventRecord, TaskRecord
from docket.remote import TaskSource
from docket.state import CalendarState
from docket.task_projector import project_task_events


logger = logging.getLogger(__name__)


class EventAggregator:
    """Runs aggregation passes: load every source, merge, index, publish."""

    def __init__(
        self,
        *,
        store: LocalEventStore,
        case_source: RemoteCaseEventSource,
        task_source: TaskSource | None,
        state: CalendarState,
        bus: ChangeBus | None = None,
        timeout_seconds: float = 10.0,
        default_time: str = DEFAULT_TIME,
        task_title_format: str = "Tarea: {description}",
    ) -> None:
        self.store = store
        self.case_source = case_source
        self.task_source = task_source
        self.state = state
        self.bus = bus
        self.timeout_seconds = timeout_seconds
        self.default_time = default_time
        self.task_title_format = task_title_format

    async def _list_tasks(
        self,
        organization_id: str,
        diagnostics: AggregationDiagnostics,
    ) -> list[TaskRecord]:
        if self.task_source is None:
            return []
        try:
            tasks = await asyncio.wait_for(
                self.task_source.list_tasks(organization_id),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            reason = f"task listing timed out after {self.timeout_seconds}s"
        except RemoteUnavailable as exc:
            reason = str(exc)
        except Exception as exc:
            reason = f"task listing failed: {type(exc).__name__}: {exc}"
        else:
            return list(tasks or [])
        logger.warning("Tasks for %s unavailable: %s", organization_id, reason)
        diagnostics.warn(f"remote_unavailable: {reason}")
        return []

    async def collect(
        self,
        organization_id: str,
        diagnostics: AggregationDiagnostics,
    ) -> tuple[list[EventRecord], list[EventRecord], list[EventRecord]]:
        """Return (local, case, task) event lists for one pass."""
        local_events = self.store.load_all(organization_id)
        diagnostics.drop(self.store.last_load_dropped)
        case_events, tasks = await asyncio.gather(
            self.case_source.fetch_hearing_events(organization_id, diagnostics),
            self._list_tasks(organization_id, diagnostics),
        )
        task_events = project_task_events(
            tasks,
            organization_id,
            diagnostics,
            default_time=self.default_time,
            title_format=self.task_title_format,
        )
        return local_events, case_events, task_events

    async def refresh(self, organization_id: str) -> CalendarView:
        """Run one aggregation pass and return the view now current for the organization.

        When a newer pass or write publishes first, its view is returned and
        this pass's result is dropped.
        """
        started_at = datetime.now(timezone.utc)
        generation = self.state.reserve_generation()
        diagnostics = AggregationDiagnostics()

        local_events, case_events, task_events = await self.collect(organization_id, diagnostics)
        merged = merge([local_events, case_events, task_events], diagnostics)

        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        self.store.record_aggregation_run(
            organization_id=organization_id,
            generation=generation,
            local_count=len(local_events),
            case_count=len(case_events),
            task_count=len(task_events),
            merged_count=len(merged),
            dropped=diagnostics.dropped,
            warnings=diagnostics.warnings,
            duration_ms=duration_ms,
        )
        logger.debug(
            "Aggregated %s: local=%d case=%d task=%d merged=%d dropped=%d",
            organization_id,
            len(local_events),
            len(case_events),
            len(task_events),
            len(merged),
            diagnostics.dropped,
        )

        view = self.state.publish(organization_id, merged, generation=generation, diagnostics=diagnostics)
        if view is None:
            return self.state.get(organization_id)
        if self.bus is not None:
            self.bus.publish(
                ChangeNotice(
                    kind=ChangeKind.VIEW_REFRESHED,
                    organization_id=organization_id,
                    details={"generation": generation, "count": len(merged)},
                )
            )
        return view
