from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

from docket.bus import ChangeBus, ChangeKind, ChangeNotice
from docket.errors import (
    EventNotFound,
    LocalPersistenceError,
    MalformedRecord,
    RemoteUnavailable,
    ValidationError,
)
from docket.local_store import LocalEventStore
from docket.merger import merge
from docket.models import (
    EVENT_KINDS,
    KIND_HEARING,
    CaseHearingEvent,
    CaseRef,
    EventRecord,
    LocalEvent,
    TaskEvent,
    format_event_date,
    new_local_event_id,
    normalize_kind,
    normalize_priority,
    normalize_time,
    parse_event_date,
)
from docket.remote import RemoteMirror, SourceWriter
from docket.state import CalendarState
from docket.task_projector import strip_task_title


logger = logging.getLogger(__name__)

TEXT_LIMITS = {
    "title": 100,
    "place": 100,
    "judge": 100,
    "counsel": 100,
    "case_number": 50,
    "notes": 500,
}
_TEXT_FIELDS = ("place", "judge", "counsel", "notes", "client")

# Fields a source record accepts; the rest of a derived event is computed
# from its case or task.
_CASE_ROUTED_FIELDS = frozenset({"date", "time", "place", "judge", "counsel", "notes", "client"})
_TASK_ROUTED_FIELDS = frozenset({"title", "date", "time", "priority"})

# Builds the remote call once the remote id of the record is known.
MirrorCall = Callable[[str], Awaitable[Any]]


class WriteState(enum.StrEnum):
    PENDING = "pending"
    LOCAL_COMMITTED = "local_committed"
    REMOTE_SYNCED = "remote_synced"
    REMOTE_FAILED = "remote_failed"
    # Derived events: the change went to the source case or task instead.
    ROUTED = "routed"


@dataclass
class WriteOutcome:
    action: str
    organization_id: str
    event_id: str
    event: EventRecord | None = None
    state: WriteState = WriteState.PENDING
    error: str = ""
    remote_id: str = ""
    mirror: asyncio.Task[WriteState] | None = field(default=None, repr=False)

    async def wait_remote(self) -> WriteState:
        if self.mirror is not None:
            await asyncio.gather(self.mirror, return_exceptions=True)
        return self.state

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "organization_id": self.organization_id,
            "event_id": self.event_id,
            "state": str(self.state),
            "error": self.error,
            "remote_id": self.remote_id,
            "event": self.event.to_dict() if self.event is not None else None,
        }


def validate_event_data(data: Mapping[str, Any], *, default_kind: str = KIND_HEARING) -> dict[str, Any]:
    """Check user supplied event fields and return them normalized.

    Raises ``ValidationError`` listing every offending field.
    """
    errors: dict[str, str] = {}
    title = str(data.get("title") or "").strip()
    raw_date = data.get("date")
    raw_time = str(data.get("time") or "").strip()

    if not title:
        errors["title"] = "title is required"
    if not raw_date or not str(raw_date).strip():
        errors["date"] = "date is required"
    if not raw_time:
        errors["time"] = "time is required"

    cleaned: dict[str, Any] = {"title": title}
    if "date" not in errors:
        try:
            cleaned["date"] = parse_event_date(raw_date)
        except MalformedRecord:
            errors["date"] = "date is not a valid YYYY-MM-DD calendar date"
    if "time" not in errors:
        try:
            cleaned["time"] = normalize_time(raw_time, default=None)
        except MalformedRecord:
            errors["time"] = "time must be HH:MM (24h)"
    try:
        cleaned["kind"] = normalize_kind(data.get("kind"), default=default_kind)
    except MalformedRecord:
        errors["kind"] = f"kind must be one of {', '.join(EVENT_KINDS)}"

    for name in _TEXT_FIELDS:
        cleaned[name] = str(data.get(name) or "").strip()

    case_ref = data.get("case_ref")
    case_id = str(data.get("case_id") or (case_ref or {}).get("case_id") or "").strip()
    case_number = str(data.get("case_number") or (case_ref or {}).get("number") or "").strip()
    cleaned["case_ref"] = CaseRef(case_id=case_id, number=case_number) if (case_id or case_number) else None
    cleaned["priority"] = normalize_priority(data.get("priority"))

    lengths = {"title": title, "case_number": case_number, **{name: cleaned[name] for name in _TEXT_FIELDS}}
    for name, limit in TEXT_LIMITS.items():
        if len(lengths.get(name, "")) > limit:
            errors.setdefault(name, f"{name} cannot exceed {limit} characters")

    if errors:
        raise ValidationError(errors)
    return cleaned


def _editable_fields(event: EventRecord) -> dict[str, Any]:
    return {
        "title": event.title,
        "date": format_event_date(event.date),
        "time": event.time,
        "kind": event.kind,
        "place": event.place,
        "judge": event.judge,
        "counsel": event.counsel,
        "notes": event.notes,
        "client": event.client,
        "priority": event.priority,
        "case_id": event.case_id,
        "case_number": event.case_number,
    }


def _reject_unroutable(event: EventRecord, cleaned: Mapping[str, Any], routed: frozenset[str]) -> None:
    """Raise ``ValidationError`` for changes the source record cannot take."""
    current = {
        "title": event.title.strip(),
        "kind": event.kind,
        "priority": normalize_priority(event.priority),
        **{name: str(getattr(event, name) or "").strip() for name in _TEXT_FIELDS},
    }
    errors: dict[str, str] = {}
    for name, value in current.items():
        if name not in routed and cleaned.get(name) != value:
            errors[name] = f"{name} of a {event.origin} event comes from its source and cannot be edited here"
    case_ref = cleaned.get("case_ref") or CaseRef()
    if (case_ref.case_id, case_ref.number) != (event.case_id, event.case_number):
        errors["case_number"] = f"the case of a {event.origin} event cannot be edited here"
    if errors:
        raise ValidationError(errors)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncOrchestrator:
    """Local-first write path.

    Local events are saved to the local store before anything else; the
    remote mirror runs afterwards as a background task and its failure never
    undoes the local write. Edits to hearing and task events go to the source
    case or task instead.
    """

    def __init__(
        self,
        *,
        store: LocalEventStore,
        state: CalendarState,
        remote: RemoteMirror | None = None,
        source_writer: SourceWriter | None = None,
        bus: ChangeBus | None = None,
        timeout_seconds: float = 10.0,
        mirror_collection: str = "hearings",
    ) -> None:
        self.store = store
        self.state = state
        self.remote = remote
        self.source_writer = source_writer
        self.bus = bus
        self.timeout_seconds = timeout_seconds
        self.mirror_collection = mirror_collection
        self._mirrors: set[asyncio.Task[WriteState]] = set()
        self._pending: dict[str, WriteOutcome] = {}

    # -- shared steps -------------------------------------------------------

    def _commit_local(self, organization_id: str, local_events: list[EventRecord], generation: int) -> None:
        """Persist the full local set, then swap the in-memory view."""
        self.store.save_all(organization_id, local_events)
        current = self.state.get(organization_id)
        derived = [event for event in current.events if event.is_derived]
        self.state.publish(
            organization_id,
            merge([local_events, derived]),
            generation=generation,
            diagnostics=current.diagnostics,
        )

    def _notify(self, kind: ChangeKind, organization_id: str, event_id: str, **details: Any) -> None:
        if self.bus is None:
            return
        self.bus.publish(ChangeNotice(kind=kind, organization_id=organization_id, event_id=event_id, details=details))

    async def _with_timeout(self, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise RemoteUnavailable(f"remote call timed out after {self.timeout_seconds}s") from exc
        except RemoteUnavailable:
            raise
        except Exception as exc:
            raise RemoteUnavailable(f"{type(exc).__name__}: {exc}") from exc

    def _mark_remote(self, organization_id: str, event_id: str, *, synced: bool, remote_id: str | None = None) -> None:
        events = self.store.load_all(organization_id)
        changed = False
        for index, event in enumerate(events):
            if event.id != event_id or not isinstance(event, LocalEvent):
                continue
            updates: dict[str, Any] = {"remote_synced": synced}
            if remote_id is not None:
                updates["remote_id"] = remote_id
            events[index] = event.with_updates(**updates)
            changed = True
        if not changed:
            return
        try:
            self.store.save_all(organization_id, events)
        except LocalPersistenceError as exc:
            logger.warning("Could not record mirror state for %s: %s", event_id, exc)

    def _start_mirror(self, outcome: WriteOutcome, remote_id: str, build_call: MirrorCall) -> None:
        """Schedule the remote half of a write.

        Mirrors for one event run in write order: a later write waits for the
        earlier mirror and takes over the remote id it obtained.
        """
        previous = self._pending.get(outcome.event_id)
        task = asyncio.ensure_future(self._run_mirror(outcome, remote_id, build_call, previous))
        outcome.mirror = task
        self._mirrors.add(task)
        self._pending[outcome.event_id] = outcome
        task.add_done_callback(self._mirrors.discard)
        task.add_done_callback(lambda _task, done=outcome: self._forget_mirror(done))

    def _forget_mirror(self, outcome: WriteOutcome) -> None:
        if self._pending.get(outcome.event_id) is outcome:
            del self._pending[outcome.event_id]

    async def _run_mirror(
        self,
        outcome: WriteOutcome,
        remote_id: str,
        build_call: MirrorCall,
        previous: WriteOutcome | None = None,
    ) -> WriteState:
        organization_id = outcome.organization_id
        if previous is not None:
            await previous.wait_remote()
            remote_id = remote_id or previous.remote_id
        outcome.remote_id = remote_id

        if outcome.action == "delete" and not remote_id:
            # Never reached the remote, nothing to remove there.
            outcome.state = WriteState.REMOTE_SYNCED
        elif self.remote is None:
            outcome.state = WriteState.REMOTE_FAILED
            outcome.error = "remote mirror is not configured"
        else:
            try:
                result = await self._with_timeout(build_call(remote_id))
            except RemoteUnavailable as exc:
                logger.warning("Remote mirror for %s %s failed: %s", outcome.action, outcome.event_id, exc)
                outcome.state = WriteState.REMOTE_FAILED
                outcome.error = str(exc)
            else:
                outcome.state = WriteState.REMOTE_SYNCED
                if outcome.action != "delete":
                    if isinstance(result, str) and result:
                        outcome.remote_id = result
                    self._mark_remote(
                        organization_id, outcome.event_id, synced=True, remote_id=outcome.remote_id or None
                    )
        self.store.record_audit_event(
            organization_id=organization_id,
            event_id=outcome.event_id,
            action=f"{outcome.action}_mirror",
            details={"state": str(outcome.state), "error": outcome.error, "remote_id": outcome.remote_id},
        )
        return outcome.state

    async def drain(self) -> None:
        """Wait for every in-flight remote mirror."""
        while self._mirrors:
            await asyncio.gather(*list(self._mirrors), return_exceptions=True)

    def _find(self, organization_id: str, event_id: str) -> EventRecord:
        for event in self.store.load_all(organization_id):
            if event.id == event_id:
                return event
        event = self.state.get(organization_id).find(event_id)
        if event is None:
            raise EventNotFound(f"event {event_id!r} not found for organization {organization_id!r}")
        return event

    # -- create ---------------------------------------------------------------

    async def create_event(self, organization_id: str, data: Mapping[str, Any]) -> WriteOutcome:
        if not str(organization_id or "").strip():
            raise ValidationError({"organization_id": "an active organization is required"})
        cleaned = validate_event_data(data)
        now = _utc_now()
        event = LocalEvent(
            id=new_local_event_id(),
            organization_id=organization_id,
            created_at=now,
            updated_at=now,
            **cleaned,
        )
        outcome = WriteOutcome(action="create", organization_id=organization_id, event_id=event.id, event=event)

        generation = self.state.reserve_generation()
        local_events = self.store.load_all(organization_id)
        local_events.append(event)
        self._commit_local(organization_id, local_events, generation)
        outcome.state = WriteState.LOCAL_COMMITTED
        logger.info("Created local event %s for %s", event.id, organization_id)
        self.store.record_audit_event(
            organization_id=organization_id,
            event_id=event.id,
            action="create",
            details={"state": str(outcome.state), "title": event.title, "date": event.date_key},
        )

        record = event.to_dict()
        self._start_mirror(
            outcome, "", lambda _remote_id: self.remote.create_remote_mirror(self.mirror_collection, record)
        )
        self._notify(ChangeKind.EVENT_CREATED, organization_id, event.id)
        return outcome

    # -- update ---------------------------------------------------------------

    async def update_event(self, organization_id: str, event_id: str, changes: Mapping[str, Any]) -> WriteOutcome:
        existing = self._find(organization_id, event_id)
        merged_data = _editable_fields(existing)
        merged_data.update({key: value for key, value in changes.items() if value is not None})
        cleaned = validate_event_data(merged_data, default_kind=existing.kind)

        if isinstance(existing, CaseHearingEvent):
            return await self._route_case_update(existing, cleaned)
        if isinstance(existing, TaskEvent):
            return await self._route_task_update(existing, cleaned)

        updated = existing.with_updates(**cleaned, updated_at=_utc_now(), remote_synced=False)
        outcome = WriteOutcome(action="update", organization_id=organization_id, event_id=event_id, event=updated)
        generation = self.state.reserve_generation()
        local_events = [updated if event.id == event_id else event for event in self.store.load_all(organization_id)]
        self._commit_local(organization_id, local_events, generation)
        outcome.state = WriteState.LOCAL_COMMITTED
        logger.info("Updated local event %s for %s", event_id, organization_id)
        self.store.record_audit_event(
            organization_id=organization_id,
            event_id=event_id,
            action="update",
            details={"state": str(outcome.state)},
        )

        record = updated.to_dict()

        def mirror_update(remote_id: str) -> Awaitable[Any]:
            if remote_id:
                return self.remote.update_remote_mirror(self.mirror_collection, remote_id, record)
            # The create mirror never succeeded; retry it.
            return self.remote.create_remote_mirror(self.mirror_collection, record)

        self._start_mirror(outcome, updated.remote_id, mirror_update)
        self._notify(ChangeKind.EVENT_UPDATED, organization_id, event_id)
        return outcome

    async def _route_case_update(self, event: CaseHearingEvent, cleaned: dict[str, Any]) -> WriteOutcome:
        _reject_unroutable(event, cleaned, _CASE_ROUTED_FIELDS)
        writer = self._require_writer()
        fields = {
            "hearing_date": format_event_date(cleaned["date"]),
            "hearing_time": cleaned["time"],
            **{name: cleaned[name] for name in _TEXT_FIELDS},
        }
        await self._with_timeout(writer.update_case_hearing(event.case_id, fields))
        logger.info("Routed hearing update %s to case %s", event.id, event.case_id)
        self._notify(ChangeKind.HEARING_UPDATED, event.organization_id, event.id, case_id=event.case_id)
        return WriteOutcome(
            action="update",
            organization_id=event.organization_id,
            event_id=event.id,
            event=event,
            state=WriteState.ROUTED,
        )

    async def _route_task_update(self, event: TaskEvent, cleaned: dict[str, Any]) -> WriteOutcome:
        _reject_unroutable(event, cleaned, _TASK_ROUTED_FIELDS)
        writer = self._require_writer()
        fields = {
            "description": strip_task_title(cleaned["title"]),
            "due_date": f"{format_event_date(cleaned['date'])}T{cleaned['time']}",
            "priority": cleaned["priority"] or event.priority or "medium",
        }
        await self._with_timeout(writer.update_task(event.case_id, event.task_id, fields))
        logger.info("Routed task update %s to task %s", event.id, event.task_id)
        self._notify(ChangeKind.TASK_UPDATED, event.organization_id, event.id, task_id=event.task_id)
        return WriteOutcome(
            action="update",
            organization_id=event.organization_id,
            event_id=event.id,
            event=event,
            state=WriteState.ROUTED,
        )

    # -- delete ---------------------------------------------------------------

    async def delete_event(self, organization_id: str, event_id: str) -> WriteOutcome:
        existing = self._find(organization_id, event_id)
        if isinstance(existing, CaseHearingEvent):
            writer = self._require_writer()
            await self._with_timeout(writer.clear_case_hearing(existing.case_id))
            self._notify(ChangeKind.HEARING_UPDATED, organization_id, event_id, case_id=existing.case_id)
            return WriteOutcome(
                action="delete", organization_id=organization_id, event_id=event_id, state=WriteState.ROUTED
            )
        if isinstance(existing, TaskEvent):
            writer = self._require_writer()
            await self._with_timeout(writer.delete_task(existing.case_id, existing.task_id))
            self._notify(ChangeKind.TASK_UPDATED, organization_id, event_id, task_id=existing.task_id)
            return WriteOutcome(
                action="delete", organization_id=organization_id, event_id=event_id, state=WriteState.ROUTED
            )

        outcome = WriteOutcome(action="delete", organization_id=organization_id, event_id=event_id, event=existing)
        generation = self.state.reserve_generation()
        local_events = [event for event in self.store.load_all(organization_id) if event.id != event_id]
        self._commit_local(organization_id, local_events, generation)
        outcome.state = WriteState.LOCAL_COMMITTED
        logger.info("Deleted local event %s for %s", event_id, organization_id)
        self.store.record_audit_event(
            organization_id=organization_id,
            event_id=event_id,
            action="delete",
            details={"state": str(outcome.state)},
        )

        remote_id = existing.remote_id if isinstance(existing, LocalEvent) else ""
        if not remote_id and event_id not in self._pending:
            # Never reached the remote, nothing to remove there.
            outcome.state = WriteState.REMOTE_SYNCED
        else:
            self._start_mirror(
                outcome,
                remote_id,
                lambda known_id: self.remote.delete_remote_mirror(self.mirror_collection, known_id),
            )
        self._notify(ChangeKind.EVENT_DELETED, organization_id, event_id)
        return outcome

    def _require_writer(self) -> SourceWriter:
        if self.source_writer is None:
            raise RemoteUnavailable("no writer configured for case and task records")
        return self.source_writer
