"""Typed change notifications passed between the write path and the aggregation pass."""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable


logger = logging.getLogger(__name__)


class ChangeKind(enum.StrEnum):
    EVENT_CREATED = "event_created"
    EVENT_UPDATED = "event_updated"
    EVENT_DELETED = "event_deleted"
    HEARING_UPDATED = "hearing_updated"
    TASK_UPDATED = "task_updated"
    VIEW_REFRESHED = "view_refreshed"


@dataclass(frozen=True)
class ChangeNotice:
    kind: ChangeKind
    organization_id: str
    event_id: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


Handler = Callable[[ChangeNotice], Awaitable[None] | None]


class ChangeBus:
    """In-process publish/subscribe bus.

    Coroutine handlers are scheduled on the running loop; ``wait_idle`` awaits
    them. A failing handler is logged and does not affect other subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: dict[ChangeKind | None, list[Handler]] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, handler: Handler, *kinds: ChangeKind) -> Callable[[], None]:
        """Register ``handler`` for ``kinds`` (all kinds when none given); returns an unsubscribe callable."""
        keys: tuple[ChangeKind | None, ...] = kinds or (None,)
        for key in keys:
            self._subscribers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            for key in keys:
                handlers = self._subscribers.get(key, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, notice: ChangeNotice) -> None:
        handlers = list(self._subscribers.get(notice.kind, [])) + list(self._subscribers.get(None, []))
        for handler in handlers:
            try:
                result = handler(notice)
            except Exception:
                logger.exception("Change handler %r failed for %s", handler, notice.kind)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._finish)

    def _finish(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async change handler failed: %s", exc, exc_info=exc)

    async def wait_idle(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
