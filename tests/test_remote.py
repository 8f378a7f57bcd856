import unittest
from unittest import mock

import requests

from docket.errors import RemoteUnavailable
from docket.models import RemoteConfig
from docket.remote import RestDocumentStore


def _response(payload=None, status: int = 200) -> mock.Mock:
    response = mock.Mock()
    response.content = b"{}" if payload is not None else b""
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    else:
        response.raise_for_status.return_value = None
    return response


class RestDocumentStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = RestDocumentStore(
            RemoteConfig(base_url="https://docs.example.com/api/", api_key="secret", timeout_seconds=4)
        )

    async def test_query_cases_parses_documents(self) -> None:
        payload = {
            "documents": [
                {"id": "c1", "numero": "1/2026", "fechaAudiencia": "2026-01-20"},
                "junk",
            ]
        }
        with mock.patch("docket.remote.requests.request", return_value=_response(payload)) as request:
            cases = await self.store.query_cases("org-1")

        self.assertEqual([case.id for case in cases], ["c1"])
        self.assertEqual(cases[0].hearing_date, "2026-01-20")
        args, kwargs = request.call_args
        self.assertEqual(args, ("GET", "https://docs.example.com/api/collections/cases"))
        self.assertEqual(kwargs["params"], {"organizationId": "org-1"})
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer secret")
        self.assertEqual(kwargs["timeout"], 4)

    async def test_list_tasks_accepts_bare_list(self) -> None:
        payload = [{"id": "t1", "descripcion": "Llamar", "fechaLimite": "2026-01-22", "completada": False}]
        with mock.patch("docket.remote.requests.request", return_value=_response(payload)):
            tasks = await self.store.list_tasks("org-1")
        self.assertEqual(tasks[0].description, "Llamar")
        self.assertFalse(tasks[0].completed)

    async def test_create_remote_mirror_returns_remote_id(self) -> None:
        with mock.patch("docket.remote.requests.request", return_value=_response({"id": "r-1"})) as request:
            remote_id = await self.store.create_remote_mirror("hearings", {"id": "evt-1"})
        self.assertEqual(remote_id, "r-1")
        self.assertEqual(request.call_args.kwargs["json"], {"id": "evt-1"})

        with mock.patch("docket.remote.requests.request", return_value=_response({})):
            with self.assertRaises(RemoteUnavailable):
                await self.store.create_remote_mirror("hearings", {"id": "evt-1"})

    async def test_source_writes_target_nested_paths(self) -> None:
        with mock.patch("docket.remote.requests.request", return_value=_response()) as request:
            await self.store.update_task("c1", "t1", {"priority": "high"})
            await self.store.clear_case_hearing("c1")

        first, second = request.call_args_list
        self.assertEqual(first.args, ("PATCH", "https://docs.example.com/api/collections/cases/c1/tasks/t1"))
        self.assertEqual(second.args, ("PATCH", "https://docs.example.com/api/collections/cases/c1"))
        self.assertEqual(second.kwargs["json"], {"hearing_date": "", "hearing_time": ""})

    async def test_transport_and_http_errors_become_remote_unavailable(self) -> None:
        with mock.patch("docket.remote.requests.request", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(RemoteUnavailable):
                await self.store.query_cases("org-1")
        with mock.patch("docket.remote.requests.request", return_value=_response({}, status=503)):
            with self.assertRaises(RemoteUnavailable):
                await self.store.delete_remote_mirror("hearings", "r-1")

    async def test_unconfigured_store_never_calls_out(self) -> None:
        store = RestDocumentStore(RemoteConfig())
        with mock.patch("docket.remote.requests.request") as request:
            with self.assertRaises(RemoteUnavailable):
                await store.list_tasks("org-1")
        request.assert_not_called()


if __name__ == "__main__":
    unittest.main()
