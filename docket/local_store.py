from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from docket.errors import LocalPersistenceError, MalformedRecord
from docket.models import EventRecord, LocalEvent, event_from_dict


logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocalEventStore:
    """Durable per-organization event list kept in a local sqlite file.

    ``event_lists`` is a plain key/value table: one JSON array of serialized
    local events per organization id. ``save_all`` replaces the array, it never
    patches it. The two other tables only hold diagnostics.
    """

    def __init__(
        self,
        db_path: str,
        *,
        demo_case_markers: Iterable[str] = ("DEMO",),
        demo_title_markers: Iterable[str] = ("Demo", "Prueba"),
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.demo_case_markers = [str(x) for x in demo_case_markers if str(x)]
        self.demo_title_markers = [str(x) for x in demo_title_markers if str(x)]
        self.last_load_dropped = 0
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS event_lists (
            organization_id TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS aggregation_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            organization_id TEXT NOT NULL,
            generation INTEGER NOT NULL,
            local_count INTEGER NOT NULL,
            case_count INTEGER NOT NULL,
            task_count INTEGER NOT NULL,
            merged_count INTEGER NOT NULL,
            dropped INTEGER NOT NULL,
            warnings_json TEXT NOT NULL,
            duration_ms INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            organization_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS store_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.executescript(schema_sql)
        except sqlite3.Error as exc:
            # load_all still degrades to an empty list; writes will raise.
            logger.warning("Local event store at %s is unusable: %s", self.db_path, exc)

    def _is_demo(self, event: EventRecord) -> bool:
        case_number = event.case_number
        if any(marker in case_number for marker in self.demo_case_markers):
            return True
        return any(marker in event.title for marker in self.demo_title_markers)

    def _read_payload(self, organization_id: str) -> list[Any]:
        try:
            with self._lock:
                with self._connect() as conn:
                    row = conn.execute(
                        """
                        SELECT payload_json
                        FROM event_lists
                        WHERE organization_id = ?
                        """,
                        (str(organization_id),),
                    ).fetchone()
        except sqlite3.Error as exc:
            logger.warning("Could not read local events for %s: %s", organization_id, exc)
            return []
        if row is None:
            return []
        try:
            payload = json.loads(row["payload_json"] or "[]")
        except (TypeError, ValueError) as exc:
            logger.warning("Local events for %s are corrupt, ignoring them: %s", organization_id, exc)
            return []
        if not isinstance(payload, list):
            logger.warning("Local events for %s are not a list, ignoring them", organization_id)
            return []
        return payload

    def load_all(self, organization_id: str) -> list[EventRecord]:
        """Return the stored local events; never raises.

        On the first load for an organization, demo/sample records are pruned
        and the pruned list is written back.
        """
        events: list[EventRecord] = []
        dropped = 0
        for item in self._read_payload(organization_id):
            try:
                event = event_from_dict(item)
            except MalformedRecord as exc:
                dropped += 1
                logger.debug("Skipping malformed local event: %s", exc)
                continue
            if not isinstance(event, LocalEvent) or event.organization_id != organization_id:
                dropped += 1
                continue
            events.append(event)
        self.last_load_dropped = dropped

        # Sample cleanup runs once per organization; later records with
        # matching titles belong to the user.
        meta_key = f"demo_pruned:{organization_id}"
        try:
            if self.get_meta(meta_key) is not None:
                return events
        except sqlite3.Error as exc:
            logger.warning("Could not read store metadata for %s: %s", organization_id, exc)
            return events

        kept = [event for event in events if not self._is_demo(event)]
        try:
            if len(kept) != len(events):
                logger.info(
                    "Pruned %d sample events from local store for %s",
                    len(events) - len(kept),
                    organization_id,
                )
                self.save_all(organization_id, kept)
            self.set_meta(meta_key, _utc_now())
        except (LocalPersistenceError, sqlite3.Error) as exc:
            logger.warning("Could not write back pruned events for %s: %s", organization_id, exc)
        return kept

    def save_all(self, organization_id: str, events: Iterable[EventRecord]) -> None:
        payload: list[dict[str, Any]] = []
        for event in events:
            if not isinstance(event, LocalEvent):
                raise LocalPersistenceError(
                    f"only local events can be stored, got {event.origin!r} event {event.id!r}"
                )
            if event.organization_id != organization_id:
                raise LocalPersistenceError(
                    f"event {event.id!r} belongs to organization {event.organization_id!r}"
                )
            payload.append(event.to_dict())
        try:
            payload_json = json.dumps(payload, ensure_ascii=False)
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO event_lists(organization_id, payload_json, updated_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(organization_id) DO UPDATE SET
                            payload_json = excluded.payload_json,
                            updated_at = excluded.updated_at
                        """,
                        (str(organization_id), payload_json, _utc_now()),
                    )
                    conn.commit()
        except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
            raise LocalPersistenceError(f"could not save local events for {organization_id}: {exc}") from exc

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO store_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM store_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def record_aggregation_run(
        self,
        *,
        organization_id: str,
        generation: int,
        local_count: int,
        case_count: int,
        task_count: int,
        merged_count: int,
        dropped: int,
        warnings: list[str],
        duration_ms: int,
    ) -> int | None:
        try:
            with self._lock:
                with self._connect() as conn:
                    cursor = conn.execute(
                        """
                        INSERT INTO aggregation_runs(
                            run_at, organization_id, generation, local_count, case_count,
                            task_count, merged_count, dropped, warnings_json, duration_ms
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            _utc_now(),
                            str(organization_id),
                            int(generation),
                            int(local_count),
                            int(case_count),
                            int(task_count),
                            int(merged_count),
                            int(dropped),
                            json.dumps(list(warnings), ensure_ascii=False),
                            int(duration_ms),
                        ),
                    )
                    conn.commit()
                    return int(cursor.lastrowid)
        except sqlite3.Error as exc:
            logger.warning("Could not record aggregation run: %s", exc)
            return None

    def recent_aggregation_runs(self, limit: int = 20, organization_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if organization_id is None:
                    rows = conn.execute(
                        """
                        SELECT *
                        FROM aggregation_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT *
                        FROM aggregation_runs
                        WHERE organization_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(organization_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["warnings"] = json.loads(item.pop("warnings_json") or "[]")
            output.append(item)
        return output

    def record_audit_event(
        self,
        *,
        organization_id: str,
        event_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO audit_events(created_at, organization_id, event_id, action, details_json)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (
                            _utc_now(),
                            str(organization_id),
                            str(event_id),
                            str(action),
                            json.dumps(details, ensure_ascii=False),
                        ),
                    )
                    conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Could not record audit event %s for %s: %s", action, event_id, exc)

    def recent_audit_events(self, limit: int = 100, organization_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if organization_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, organization_id, event_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, organization_id, event_id, action, details_json
                        FROM audit_events
                        WHERE organization_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(organization_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
