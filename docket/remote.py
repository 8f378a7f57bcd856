from __future__ import annotations

import asyncio
from typing import Any, Protocol

import requests

from docket.errors import RemoteUnavailable
from docket.models import CaseRecord, RemoteConfig, TaskRecord


class CaseQuery(Protocol):
    async def query_cases(self, organization_id: str) -> list[CaseRecord]: ...


class TaskSource(Protocol):
    async def list_tasks(self, organization_id: str) -> list[TaskRecord]: ...


class RemoteMirror(Protocol):
    async def create_remote_mirror(self, collection: str, record: dict[str, Any]) -> str: ...

    async def update_remote_mirror(self, collection: str, record_id: str, fields: dict[str, Any]) -> None: ...

    async def delete_remote_mirror(self, collection: str, record_id: str) -> None: ...


class SourceWriter(Protocol):
    async def update_case_hearing(self, case_id: str, fields: dict[str, Any]) -> None: ...

    async def clear_case_hearing(self, case_id: str) -> None: ...

    async def update_task(self, case_id: str, task_id: str, fields: dict[str, Any]) -> None: ...

    async def delete_task(self, case_id: str, task_id: str) -> None: ...


class RestDocumentStore:
    """Document store client for a JSON REST API.

    Layout: ``{base}/collections/{name}`` lists/creates documents and
    ``{base}/collections/{name}/{id}`` patches/deletes one. Tasks live under
    ``cases/{case_id}/tasks``. ``requests`` is blocking, so every call runs in
    a worker thread.
    """

    def __init__(self, config: RemoteConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.base_url)

    def _url(self, *parts: str) -> str:
        base = self.config.base_url.rstrip("/")
        return "/".join([base, "collections", *[str(part).strip("/") for part in parts]])

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        if not self.is_configured():
            raise RemoteUnavailable("remote document store is not configured")
        try:
            response = requests.request(
                method,
                url,
                headers=self._headers(),
                timeout=self.config.timeout_seconds,
                **kwargs,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RemoteUnavailable(f"{method} {url} failed: {exc}") from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteUnavailable(f"{method} {url} returned invalid JSON") from exc

    async def _call(self, method: str, url: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._request, method, url, **kwargs)

    @staticmethod
    def _documents(payload: Any) -> list[dict[str, Any]]:
        items = payload.get("documents", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    async def query_cases(self, organization_id: str) -> list[CaseRecord]:
        payload = await self._call("GET", self._url("cases"), params={"organizationId": organization_id})
        return [CaseRecord.from_dict(item) for item in self._documents(payload)]

    async def list_tasks(self, organization_id: str) -> list[TaskRecord]:
        payload = await self._call("GET", self._url("tasks"), params={"organizationId": organization_id})
        return [TaskRecord.from_dict(item) for item in self._documents(payload)]

    async def create_remote_mirror(self, collection: str, record: dict[str, Any]) -> str:
        payload = await self._call("POST", self._url(collection), json=record)
        remote_id = str((payload or {}).get("id", "")).strip() if isinstance(payload, dict) else ""
        if not remote_id:
            raise RemoteUnavailable(f"remote did not return an id for {collection}")
        return remote_id

    async def update_remote_mirror(self, collection: str, record_id: str, fields: dict[str, Any]) -> None:
        await self._call("PATCH", self._url(collection, record_id), json=fields)

    async def delete_remote_mirror(self, collection: str, record_id: str) -> None:
        await self._call("DELETE", self._url(collection, record_id))

    async def update_case_hearing(self, case_id: str, fields: dict[str, Any]) -> None:
        await self._call("PATCH", self._url("cases", case_id), json=fields)

    async def clear_case_hearing(self, case_id: str) -> None:
        await self._call("PATCH", self._url("cases", case_id), json={"hearing_date": "", "hearing_time": ""})

    async def update_task(self, case_id: str, task_id: str, fields: dict[str, Any]) -> None:
        await self._call("PATCH", self._url("cases", case_id, "tasks", task_id), json=fields)

    async def delete_task(self, case_id: str, task_id: str) -> None:
        await self._call("DELETE", self._url("cases", case_id, "tasks", task_id))
