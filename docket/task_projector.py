from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from docket.errors import MalformedRecord
from docket.models import (
    DEFAULT_TIME,
    AggregationDiagnostics,
    CaseRef,
    EventRecord,
    TaskEvent,
    TaskRecord,
    normalize_priority,
    task_event_id,
)


logger = logging.getLogger(__name__)

TASK_TITLE_PREFIX = "Tarea: "


def _task_title(task: TaskRecord, title_format: str) -> str:
    try:
        return title_format.format(description=task.description, case_number=task.case_number)
    except (KeyError, IndexError, ValueError):
        return f"{TASK_TITLE_PREFIX}{task.description}"


def strip_task_title(title: str) -> str:
    if title.startswith(TASK_TITLE_PREFIX):
        return title[len(TASK_TITLE_PREFIX) :]
    return title


def project_task_events(
    tasks: Iterable[TaskRecord | Mapping[str, Any]],
    organization_id: str,
    diagnostics: AggregationDiagnostics | None = None,
    *,
    default_time: str = DEFAULT_TIME,
    title_format: str = "Tarea: {description}",
) -> list[EventRecord]:
    """Project open tasks that carry a due date into calendar events.

    Completed tasks are never projected, whatever their due date.
    """
    events: list[EventRecord] = []
    for raw in tasks:
        task = TaskRecord.from_dict(raw) if isinstance(raw, Mapping) else raw
        if task.completed or not task.due_date.strip():
            continue
        priority = normalize_priority(task.priority, default="medium")
        case_ref = CaseRef(case_id=task.case_id, number=task.case_number) if (task.case_id or task.case_number) else None
        try:
            event = TaskEvent(
                id=task_event_id(task.id),
                task_id=task.id,
                title=_task_title(task, title_format),
                date=task.due_date,
                time=default_time,
                organization_id=organization_id,
                case_ref=case_ref,
                priority=priority,
                client=task.case_client,
                assignee=task.assignee,
                notes=f"Tipo: {task.task_type} | Prioridad: {priority}",
            )
        except MalformedRecord as exc:
            logger.debug("Dropping task %s: %s", task.id, exc)
            if diagnostics is not None:
                diagnostics.drop()
            continue
        events.append(event)
    return events
