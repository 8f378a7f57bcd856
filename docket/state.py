from __future__ import annotations

import logging
from typing import Iterable

from docket.day_index import build_index
from docket.models import AggregationDiagnostics, CalendarView, EventRecord


logger = logging.getLogger(__name__)


class CalendarState:
    """Holds the current view per organization and replaces it wholesale.

    Every pass or write reserves a generation number before it starts doing
    I/O. ``publish`` rejects a view whose generation is older than the one
    already published, so a slow pass cannot overwrite a newer write.
    """

    def __init__(self) -> None:
        self._views: dict[str, CalendarView] = {}
        self._next_generation = 0

    def reserve_generation(self) -> int:
        self._next_generation += 1
        return self._next_generation

    def get(self, organization_id: str) -> CalendarView:
        return self._views.get(organization_id) or CalendarView(organization_id=organization_id)

    def publish(
        self,
        organization_id: str,
        events: Iterable[EventRecord],
        *,
        generation: int,
        diagnostics: AggregationDiagnostics | None = None,
    ) -> CalendarView | None:
        current = self._views.get(organization_id)
        if current is not None and current.generation > generation:
            logger.debug(
                "Discarding stale view for %s (generation %d < %d)",
                organization_id,
                generation,
                current.generation,
            )
            return None
        frozen = tuple(events)
        view = CalendarView(
            organization_id=organization_id,
            events=frozen,
            day_index=build_index(frozen),
            generation=generation,
            diagnostics=diagnostics or AggregationDiagnostics(),
        )
        self._views[organization_id] = view
        return view
