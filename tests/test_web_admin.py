import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from docket.errors import RemoteUnavailable
from docket.models import AppConfig, CaseRecord, TaskRecord
from docket.service import CalendarService
from docket.web_admin import create_app


class _Backend:
    def __init__(self) -> None:
        self.cases = [CaseRecord(id="c1", number="1/2026", hearing_date="2026-01-25", hearing_time="10:00")]
        self.tasks = [TaskRecord(id="t1", case_id="c1", description="Presentar escrito", due_date="2026-01-24")]
        self.fail_writes = False

    async def query_cases(self, organization_id):
        return list(self.cases)

    async def list_tasks(self, organization_id):
        return list(self.tasks)

    async def create_remote_mirror(self, collection, record):
        return f"remote-{record['id']}"

    async def update_remote_mirror(self, collection, record_id, fields):
        return None

    async def delete_remote_mirror(self, collection, record_id):
        return None

    async def update_case_hearing(self, case_id, fields):
        if self.fail_writes:
            raise RemoteUnavailable("503 Service Unavailable")

    async def clear_case_hearing(self, case_id):
        return None

    async def update_task(self, case_id, task_id, fields):
        return None

    async def delete_task(self, case_id, task_id):
        return None


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.enterContext(mock.patch.dict(os.environ, {"DOCKET_CONFIG_PATH": self.config_path}))

        self.backend = _Backend()
        config = AppConfig.from_dict({"storage": {"db_path": str(Path(self.temp_dir.name) / "docket.db")}})
        service = CalendarService(
            config,
            case_query=self.backend,
            task_source=self.backend,
            remote=self.backend,
            source_writer=self.backend,
        )
        self.client = self.enterContext(TestClient(create_app(service)))

        seed_payload = {"remote": {"base_url": "https://docs.example.com", "api_key": "secret-key"}}
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

    def _create(self, **overrides) -> dict:
        body = {"title": "Audiencia preliminar", "date": "2026-01-20", "time": "10:00", "kind": "hearing"}
        body.update(overrides)
        resp = self.client.post("/api/organizations/org-1/events", json=body)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_is_masked_and_masked_key_does_not_override(self) -> None:
        resp = self.client.get("/api/config")
        self.assertEqual(resp.json()["remote"]["api_key"], "***")

        resp = self.client.put(
            "/api/config",
            json={"payload": {"remote": {"api_key": "***", "timeout_seconds": 3}}},
        )
        self.assertEqual(resp.status_code, 200)
        stored = self.client.app.state.context.config_manager.load()
        self.assertEqual(stored.remote.api_key, "secret-key")
        self.assertEqual(stored.remote.timeout_seconds, 3.0)

    def test_first_listing_runs_an_aggregation_pass(self) -> None:
        resp = self.client.get("/api/organizations/org-1/events")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual([event["id"] for event in data["events"]], ["task-t1", "case-c1"])
        self.assertGreater(data["generation"], 0)
        self.assertEqual(data["events"][1]["origin"], "case")

        resp = self.client.get("/api/organizations/org-1/events", params={"kind": "task"})
        self.assertEqual([event["id"] for event in resp.json()["events"]], ["task-t1"])

        resp = self.client.get("/api/organizations/org-1/events", params={"start": "2026-01-25", "end": "2026-01-31"})
        self.assertEqual([event["id"] for event in resp.json()["events"]], ["case-c1"])

    def test_create_then_list(self) -> None:
        created = self._create()
        self.assertEqual(created["state"], "local_committed")
        self.assertEqual(created["event"]["origin"], "local")

        resp = self.client.get("/api/organizations/org-1/events", params={"q": "preliminar"})
        self.assertEqual([event["id"] for event in resp.json()["events"]], [created["event_id"]])

        resp = self.client.get("/api/organizations/org-1/day-index")
        self.assertEqual(resp.json()["days"]["2026-01-20"], 1)

        resp = self.client.get("/api/audit", params={"organization_id": "org-1"})
        self.assertIn("create", [item["action"] for item in resp.json()["events"]])

    def test_invalid_payload_returns_field_errors(self) -> None:
        resp = self.client.post(
            "/api/organizations/org-1/events",
            json={"title": "", "date": "2026-01-20", "time": "99:99"},
        )
        self.assertEqual(resp.status_code, 422)
        errors = resp.json()["detail"]["errors"]
        self.assertIn("title", errors)
        self.assertIn("time", errors)

    def test_update_and_delete_local_event(self) -> None:
        created = self._create()
        event_id = created["event_id"]

        resp = self.client.patch(f"/api/organizations/org-1/events/{event_id}", json={"time": "12:15"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["event"]["time"], "12:15")

        resp = self.client.delete(f"/api/organizations/org-1/events/{event_id}")
        self.assertEqual(resp.status_code, 200)

        resp = self.client.patch(f"/api/organizations/org-1/events/{event_id}", json={"time": "12:30"})
        self.assertEqual(resp.status_code, 404)

    def test_routed_update_failure_is_bad_gateway(self) -> None:
        self.client.post("/api/organizations/org-1/refresh")
        self.backend.fail_writes = True
        resp = self.client.patch("/api/organizations/org-1/events/case-c1", json={"time": "11:00"})
        self.assertEqual(resp.status_code, 502)

        self.backend.fail_writes = False
        resp = self.client.patch("/api/organizations/org-1/events/case-c1", json={"time": "11:00"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["state"], "routed")

    def test_calendar_feed(self) -> None:
        resp = self.client.get("/api/organizations/org-1/calendar.ics")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("text/calendar"))
        self.assertEqual(resp.text.count("BEGIN:VEVENT"), 2)

    def test_refresh_and_runs(self) -> None:
        resp = self.client.post("/api/organizations/org-1/refresh")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["events"]), 2)

        resp = self.client.get("/api/runs", params={"organization_id": "org-1"})
        runs = resp.json()["runs"]
        self.assertEqual(runs[0]["merged_count"], 2)


if __name__ == "__main__":
    unittest.main()
