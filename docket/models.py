from __future__ import annotations

import datetime as dt
import re
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from types import MappingProxyType
from typing import Any, ClassVar, Mapping

from docket.errors import MalformedRecord


DEFAULT_TIME = "09:00"

ORIGIN_LOCAL = "local"
ORIGIN_CASE = "case"
ORIGIN_TASK = "task"

KIND_HEARING = "hearing"
KIND_MEETING = "meeting"
KIND_DEADLINE = "deadline"
KIND_APPOINTMENT = "appointment"
KIND_REMINDER = "reminder"
KIND_TASK = "task"
EVENT_KINDS = (KIND_HEARING, KIND_MEETING, KIND_DEADLINE, KIND_APPOINTMENT, KIND_REMINDER, KIND_TASK)

# Stored data written by older clients still carries the Spanish tags.
_LEGACY_KINDS = {
    "audiencia": KIND_HEARING,
    "reunion": KIND_MEETING,
    "vencimiento": KIND_DEADLINE,
    "cita": KIND_APPOINTMENT,
    "recordatorio": KIND_REMINDER,
    "tarea": KIND_TASK,
}

PRIORITIES = ("low", "medium", "high")
_LEGACY_PRIORITIES = {"baja": "low", "media": "medium", "alta": "high"}

TIME_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")
DATE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


def _utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def parse_event_date(value: str | dt.date | None) -> dt.date:
    """Return the calendar date of ``value`` without any timezone conversion.

    Accepts a ``date``, a ``datetime`` (its own date part), ``YYYY-MM-DD`` or an
    ISO datetime string such as ``2026-01-20T10:30``. Anything else raises
    ``MalformedRecord``.
    """
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = str(value or "").strip()
    match = DATE_PATTERN.match(text)
    if not match:
        raise MalformedRecord(f"invalid date: {value!r}")
    rest = text[match.end() :]
    if rest and rest[0] not in {"T", " "}:
        raise MalformedRecord(f"invalid date: {value!r}")
    try:
        return dt.date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError as exc:
        raise MalformedRecord(f"invalid date: {value!r}") from exc


def format_event_date(value: dt.date) -> str:
    return value.isoformat()


def normalize_time(value: str | None, default: str | None = DEFAULT_TIME) -> str:
    text = str(value or "").strip()
    if not text:
        if default is None:
            raise MalformedRecord("time is required")
        return default
    match = TIME_PATTERN.match(text)
    if not match:
        raise MalformedRecord(f"invalid time: {value!r}")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def normalize_kind(value: str | None, default: str = KIND_HEARING) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return default
    text = _LEGACY_KINDS.get(text, text)
    if text not in EVENT_KINDS:
        raise MalformedRecord(f"unknown event kind: {value!r}")
    return text


def normalize_priority(value: str | None, default: str | None = None) -> str | None:
    text = str(value or "").strip().lower()
    if not text:
        return default
    text = _LEGACY_PRIORITIES.get(text, text)
    if text not in PRIORITIES:
        return default
    return text


def new_local_event_id() -> str:
    return f"evt-{uuid.uuid4().hex}"


def case_event_id(case_id: str) -> str:
    return f"case-{case_id}"


def task_event_id(task_id: str) -> str:
    return f"task-{task_id}"


@dataclass
class CaseRef:
    case_id: str = ""
    number: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "CaseRef | None":
        if not data:
            return None
        case_id = str(data.get("case_id", "") or "").strip()
        number = str(data.get("number", "") or "").strip()
        if not case_id and not number:
            return None
        return cls(case_id=case_id, number=number)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(kw_only=True)
class EventRecord:
    """A normalized calendar entry. Concrete variants are tagged by ``origin``."""

    origin: ClassVar[str] = ""

    id: str
    title: str
    date: dt.date
    organization_id: str
    kind: str = KIND_HEARING
    time: str = DEFAULT_TIME
    case_ref: CaseRef | None = None
    priority: str | None = None
    place: str = ""
    judge: str = ""
    counsel: str = ""
    notes: str = ""
    client: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise MalformedRecord(f"event id must be a non-empty string, got {self.id!r}")
        if not isinstance(self.title, str):
            raise MalformedRecord(f"event {self.id!r} title must be a string")
        self.date = parse_event_date(self.date)
        self.time = normalize_time(self.time)
        self.kind = normalize_kind(self.kind)
        self.priority = normalize_priority(self.priority)

    @property
    def date_key(self) -> str:
        return format_event_date(self.date)

    @property
    def is_derived(self) -> bool:
        return self.origin != ORIGIN_LOCAL

    @property
    def case_number(self) -> str:
        return self.case_ref.number if self.case_ref else ""

    @property
    def case_id(self) -> str:
        return self.case_ref.case_id if self.case_ref else ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"origin": self.origin}
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name == "date":
                value = format_event_date(value)
            elif item.name == "case_ref":
                value = value.to_dict() if value is not None else None
            payload[item.name] = value
        return payload

    def with_updates(self, **kwargs: Any) -> "EventRecord":
        return replace(self, **kwargs)


@dataclass(kw_only=True)
class LocalEvent(EventRecord):
    origin: ClassVar[str] = ORIGIN_LOCAL

    remote_synced: bool = False
    remote_id: str = ""
    created_at: str = ""
    updated_at: str = ""


@dataclass(kw_only=True)
class CaseHearingEvent(EventRecord):
    origin: ClassVar[str] = ORIGIN_CASE

    kind: str = KIND_HEARING

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.case_ref is None or not self.case_ref.case_id:
            raise MalformedRecord(f"hearing event {self.id!r} has no source case")


@dataclass(kw_only=True)
class TaskEvent(EventRecord):
    origin: ClassVar[str] = ORIGIN_TASK

    task_id: str
    kind: str = KIND_TASK
    assignee: str = ""

    def __post_init__(self) -> None:
        super().__post_init__()
        if not str(self.task_id or "").strip():
            raise MalformedRecord(f"task event {self.id!r} has no source task")


_VARIANTS: dict[str, type[EventRecord]] = {
    ORIGIN_LOCAL: LocalEvent,
    ORIGIN_CASE: CaseHearingEvent,
    ORIGIN_TASK: TaskEvent,
}

# Keys written by the original browser cache, mapped onto the current names.
_LEGACY_EVENT_KEYS = {
    "titulo": "title",
    "tipo": "kind",
    "fecha": "date",
    "hora": "time",
    "lugar": "place",
    "juez": "judge",
    "abogado": "counsel",
    "notas": "notes",
    "cliente": "client",
    "prioridad": "priority",
    "organizacionId": "organization_id",
    "origen": "origin",
    "firebaseId": "remote_id",
    "tareaId": "task_id",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}
_LEGACY_ORIGINS = {"audiencia": ORIGIN_LOCAL, "caso": ORIGIN_CASE, "tarea": ORIGIN_TASK}


def _text(value: Any) -> str:
    return str(value or "").strip()


def event_from_dict(payload: Mapping[str, Any]) -> EventRecord:
    """Build the variant named by ``payload['origin']``; raise ``MalformedRecord`` otherwise."""
    if not isinstance(payload, Mapping):
        raise MalformedRecord("event payload must be an object")
    data: dict[str, Any] = {}
    for key, value in payload.items():
        data[_LEGACY_EVENT_KEYS.get(key, key)] = value

    origin = _text(data.get("origin")).lower() or ORIGIN_LOCAL
    origin = _LEGACY_ORIGINS.get(origin, origin)
    variant = _VARIANTS.get(origin)
    if variant is None:
        raise MalformedRecord(f"unknown origin: {data.get('origin')!r}")

    case_ref = data.get("case_ref")
    if isinstance(case_ref, Mapping):
        case_ref = CaseRef.from_dict(case_ref)
    elif case_ref is not None and not isinstance(case_ref, CaseRef):
        case_ref = None
    if case_ref is None and (data.get("casoId") or data.get("caso")):
        case_ref = CaseRef(case_id=_text(data.get("casoId")), number=_text(data.get("caso")))

    known = {item.name for item in fields(variant)}
    kwargs: dict[str, Any] = {key: value for key, value in data.items() if key in known}
    kwargs["case_ref"] = case_ref
    for name in ("title", "place", "judge", "counsel", "notes", "client", "organization_id"):
        if name in kwargs:
            kwargs[name] = _text(kwargs[name]) if name in {"title", "organization_id"} else str(kwargs[name] or "")
    if "kind" in kwargs and not kwargs["kind"]:
        kwargs.pop("kind")
    try:
        return variant(**kwargs)
    except TypeError as exc:
        raise MalformedRecord(str(exc)) from exc


@dataclass
class CaseRecord:
    id: str
    number: str = ""
    organization_id: str = ""
    hearing_date: str = ""
    hearing_time: str = ""
    description: str = ""
    place: str = ""
    judge: str = ""
    counsel: str = ""
    notes: str = ""
    client: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CaseRecord":
        def pick(*keys: str) -> str:
            for key in keys:
                value = data.get(key)
                if value:
                    return str(value).strip()
            return ""

        return cls(
            id=pick("id"),
            number=pick("number", "numero"),
            organization_id=pick("organization_id", "organizationId", "organizacionId"),
            hearing_date=pick("hearing_date", "hearingDate", "fechaAudiencia"),
            hearing_time=pick("hearing_time", "hearingTime", "horaAudiencia"),
            description=pick("description", "descripcion"),
            place=pick("place", "lugar"),
            judge=pick("judge", "juez"),
            counsel=pick("counsel", "abogado"),
            notes=pick("notes", "observaciones"),
            client=pick("client", "cliente"),
        )


@dataclass
class TaskRecord:
    id: str
    case_id: str = ""
    description: str = ""
    due_date: str = ""
    priority: str = "medium"
    completed: bool = False
    case_number: str = ""
    case_client: str = ""
    assignee: str = ""
    task_type: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TaskRecord":
        def pick(*keys: str) -> str:
            for key in keys:
                value = data.get(key)
                if value:
                    return str(value).strip()
            return ""

        completed = data.get("completed", data.get("completada", False))
        return cls(
            id=pick("id"),
            case_id=pick("case_id", "caseId", "casoId"),
            description=pick("description", "descripcion"),
            due_date=pick("due_date", "dueDate", "fechaLimite"),
            priority=pick("priority", "prioridad") or "medium",
            completed=bool(completed),
            case_number=pick("case_number", "casoNumero"),
            case_client=pick("case_client", "casoCliente"),
            assignee=pick("assignee", "asignadoA"),
            task_type=pick("task_type", "tipo"),
        )


@dataclass
class AggregationDiagnostics:
    warnings: list[str] = field(default_factory=list)
    dropped: int = 0

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def drop(self, count: int = 1) -> None:
        self.dropped += count

    def to_dict(self) -> dict[str, Any]:
        return {"warnings": list(self.warnings), "dropped": self.dropped}


@dataclass(frozen=True)
class CalendarView:
    """The published result of one aggregation pass (or local write)."""

    organization_id: str
    events: tuple[EventRecord, ...] = ()
    day_index: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    generation: int = 0
    diagnostics: AggregationDiagnostics = field(default_factory=AggregationDiagnostics)
    built_at: str = field(default_factory=_utc_now)

    def find(self, event_id: str) -> EventRecord | None:
        for event in self.events:
            if event.id == event_id:
                return event
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "generation": self.generation,
            "built_at": self.built_at,
            "events": [event.to_dict() for event in self.events],
            "day_index": dict(self.day_index),
            "diagnostics": self.diagnostics.to_dict(),
        }


@dataclass
class RemoteConfig:
    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            api_key=str(data.get("api_key", "")).strip(),
            timeout_seconds=max(0.1, float(data.get("timeout_seconds", 10.0))),
        )


@dataclass
class StorageConfig:
    db_path: str = "data/docket.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/docket.db")).strip() or "data/docket.db")


@dataclass
class AggregationConfig:
    default_time: str = DEFAULT_TIME
    hearing_title_format: str = "Audiencia - {label}"
    task_title_format: str = "Tarea: {description}"
    demo_case_markers: list[str] = field(default_factory=lambda: ["DEMO"])
    demo_title_markers: list[str] = field(default_factory=lambda: ["Demo", "Prueba"])
    mirror_collection: str = "hearings"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AggregationConfig":
        data = data or {}
        try:
            default_time = normalize_time(data.get("default_time"), default=DEFAULT_TIME)
        except MalformedRecord:
            default_time = DEFAULT_TIME
        return cls(
            default_time=default_time,
            hearing_title_format=str(data.get("hearing_title_format", "Audiencia - {label}")).strip()
            or "Audiencia - {label}",
            task_title_format=str(data.get("task_title_format", "Tarea: {description}")).strip()
            or "Tarea: {description}",
            demo_case_markers=[str(x).strip() for x in (data.get("demo_case_markers") or ["DEMO"]) if str(x).strip()],
            demo_title_markers=[
                str(x).strip() for x in (data.get("demo_title_markers") or ["Demo", "Prueba"]) if str(x).strip()
            ],
            mirror_collection=str(data.get("mirror_collection", "hearings")).strip() or "hearings",
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "text"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        fmt = str(data.get("format", "text")).strip().lower()
        if fmt not in {"text", "json"}:
            fmt = "text"
        return cls(level=level, format=fmt)


@dataclass
class AppConfig:
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            remote=RemoteConfig.from_dict(data.get("remote")),
            storage=StorageConfig.from_dict(data.get("storage")),
            aggregation=AggregationConfig.from_dict(data.get("aggregation")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()
