from __future__ import annotations

import logging
from typing import Any, Mapping

from docket.aggregator import EventAggregator
from docket.bus import ChangeBus, ChangeKind, ChangeNotice
from docket.case_source import RemoteCaseEventSource
from docket.ics_export import build_ics
from docket.local_store import LocalEventStore
from docket.models import AppConfig, CalendarView, EventRecord
from docket.queries import events_between, filter_by_kind, search_events
from docket.remote import CaseQuery, RemoteMirror, RestDocumentStore, SourceWriter, TaskSource
from docket.state import CalendarState
from docket.sync_orchestrator import SyncOrchestrator, WriteOutcome


logger = logging.getLogger(__name__)

_REAGGREGATE_ON = (
    ChangeKind.EVENT_CREATED,
    ChangeKind.EVENT_UPDATED,
    ChangeKind.EVENT_DELETED,
    ChangeKind.HEARING_UPDATED,
    ChangeKind.TASK_UPDATED,
)


class CalendarService:
    """Wires the store, sources, aggregation pass and write path for one process.

    Collaborators default to a ``RestDocumentStore`` built from the config;
    tests and embedding applications pass their own.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: LocalEventStore | None = None,
        case_query: CaseQuery | None = None,
        task_source: TaskSource | None = None,
        remote: RemoteMirror | None = None,
        source_writer: SourceWriter | None = None,
        auto_refresh: bool = True,
    ) -> None:
        self.config = config
        rest = RestDocumentStore(config.remote)
        aggregation = config.aggregation
        timeout = config.remote.timeout_seconds

        self.store = store or LocalEventStore(
            config.storage.db_path,
            demo_case_markers=aggregation.demo_case_markers,
            demo_title_markers=aggregation.demo_title_markers,
        )
        self.bus = ChangeBus()
        self.state = CalendarState()
        self.case_source = RemoteCaseEventSource(
            case_query or rest,
            timeout_seconds=timeout,
            default_time=aggregation.default_time,
            title_format=aggregation.hearing_title_format,
        )
        self.aggregator = EventAggregator(
            store=self.store,
            case_source=self.case_source,
            task_source=task_source or rest,
            state=self.state,
            bus=self.bus,
            timeout_seconds=timeout,
            default_time=aggregation.default_time,
            task_title_format=aggregation.task_title_format,
        )
        self.orchestrator = SyncOrchestrator(
            store=self.store,
            state=self.state,
            remote=remote or rest,
            source_writer=source_writer or rest,
            bus=self.bus,
            timeout_seconds=timeout,
            mirror_collection=aggregation.mirror_collection,
        )
        self._unsubscribe = None
        if auto_refresh:
            self._unsubscribe = self.bus.subscribe(self._on_change, *_REAGGREGATE_ON)

    async def _on_change(self, notice: ChangeNotice) -> None:
        logger.debug("Re-aggregating %s after %s", notice.organization_id, notice.kind)
        await self.aggregator.refresh(notice.organization_id)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def refresh(self, organization_id: str) -> CalendarView:
        return await self.aggregator.refresh(organization_id)

    def view(self, organization_id: str) -> CalendarView:
        return self.state.get(organization_id)

    def events(
        self,
        organization_id: str,
        *,
        kind: str | None = None,
        term: str | None = None,
        start: str | None = None,
        end: str | None = None,
    ) -> list[EventRecord]:
        events: list[EventRecord] = list(self.view(organization_id).events)
        if start or end:
            events = events_between(events, start or end, end or start)
        events = filter_by_kind(events, kind)
        return search_events(events, term)

    def day_index(self, organization_id: str) -> Mapping[str, int]:
        return self.view(organization_id).day_index

    def export_ics(self, organization_id: str, calendar_name: str | None = None) -> str:
        return build_ics(self.view(organization_id).events, calendar_name or f"Docket {organization_id}")

    async def create_event(self, organization_id: str, data: Mapping[str, Any]) -> WriteOutcome:
        return await self.orchestrator.create_event(organization_id, data)

    async def update_event(self, organization_id: str, event_id: str, changes: Mapping[str, Any]) -> WriteOutcome:
        return await self.orchestrator.update_event(organization_id, event_id, changes)

    async def delete_event(self, organization_id: str, event_id: str) -> WriteOutcome:
        return await self.orchestrator.delete_event(organization_id, event_id)

    async def wait_idle(self) -> None:
        """Wait until pending mirrors and triggered re-aggregations have finished."""
        await self.orchestrator.drain()
        await self.bus.wait_idle()
