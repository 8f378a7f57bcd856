from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from docket.errors import MalformedRecord, RemoteUnavailable
from docket.models import (
    DEFAULT_TIME,
    AggregationDiagnostics,
    CaseHearingEvent,
    CaseRecord,
    CaseRef,
    EventRecord,
    case_event_id,
)
from docket.remote import CaseQuery


logger = logging.getLogger(__name__)


def _hearing_title(case: CaseRecord, title_format: str) -> str:
    label = case.description or case.number or case.id
    try:
        return title_format.format(label=label, number=case.number, description=case.description)
    except (KeyError, IndexError, ValueError):
        return f"Audiencia - {label}"


def project_case_hearing(
    case: CaseRecord,
    organization_id: str,
    *,
    default_time: str = DEFAULT_TIME,
    title_format: str = "Audiencia - {label}",
) -> CaseHearingEvent | None:
    """Map one case onto its hearing event, or ``None`` when it has no hearing date."""
    if not case.hearing_date.strip():
        return None
    if not case.id:
        raise MalformedRecord("case record without id")
    return CaseHearingEvent(
        id=case_event_id(case.id),
        title=_hearing_title(case, title_format),
        date=case.hearing_date,
        time=case.hearing_time or default_time,
        organization_id=case.organization_id or organization_id,
        case_ref=CaseRef(case_id=case.id, number=case.number),
        place=case.place,
        judge=case.judge,
        counsel=case.counsel,
        notes=case.notes,
        client=case.client,
    )


class RemoteCaseEventSource:
    def __init__(
        self,
        case_query: CaseQuery,
        *,
        timeout_seconds: float = 10.0,
        default_time: str = DEFAULT_TIME,
        title_format: str = "Audiencia - {label}",
    ) -> None:
        self.case_query = case_query
        self.timeout_seconds = timeout_seconds
        self.default_time = default_time
        self.title_format = title_format

    async def _query(self, organization_id: str) -> list[CaseRecord]:
        try:
            raw = await asyncio.wait_for(
                self.case_query.query_cases(organization_id),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise RemoteUnavailable(f"case query timed out after {self.timeout_seconds}s") from exc
        except RemoteUnavailable:
            raise
        except Exception as exc:
            raise RemoteUnavailable(f"case query failed: {type(exc).__name__}: {exc}") from exc
        return [CaseRecord.from_dict(item) if isinstance(item, Mapping) else item for item in raw or []]

    async def fetch_hearing_events(
        self,
        organization_id: str,
        diagnostics: AggregationDiagnostics | None = None,
    ) -> list[EventRecord]:
        """Return hearing events for the organization; ``[]`` when the remote is unavailable."""
        try:
            cases = await self._query(organization_id)
        except RemoteUnavailable as exc:
            logger.warning("Hearings for %s unavailable: %s", organization_id, exc)
            if diagnostics is not None:
                diagnostics.warn(f"remote_unavailable: {exc}")
            return []

        events: list[EventRecord] = []
        for case in cases:
            try:
                event = project_case_hearing(
                    case,
                    organization_id,
                    default_time=self.default_time,
                    title_format=self.title_format,
                )
            except MalformedRecord as exc:
                logger.debug("Dropping case %s: %s", case.id, exc)
                if diagnostics is not None:
                    diagnostics.drop()
                continue
            if event is not None:
                events.append(event)
        logger.debug("Loaded %d hearings from %d cases for %s", len(events), len(cases), organization_id)
        return events
