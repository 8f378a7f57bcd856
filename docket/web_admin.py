from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from docket.config_manager import MASK, ConfigManager
from docket.errors import EventNotFound, LocalPersistenceError, MalformedRecord, RemoteUnavailable, ValidationError
from docket.logging_setup import configure_logging
from docket.service import CalendarService


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class EventCreateRequest(BaseModel):
    title: str = ""
    date: str = ""
    time: str = ""
    kind: str | None = None
    place: str = ""
    judge: str = ""
    counsel: str = ""
    notes: str = ""
    client: str = ""
    case_id: str = ""
    case_number: str = ""
    priority: str | None = None


class EventUpdateRequest(BaseModel):
    title: str | None = None
    date: str | None = None
    time: str | None = None
    kind: str | None = None
    place: str | None = None
    judge: str | None = None
    counsel: str | None = None
    notes: str | None = None
    client: str | None = None
    case_id: str | None = None
    case_number: str | None = None
    priority: str | None = None


class AppContext:
    def __init__(self, config_path: str, service: CalendarService | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        configure_logging(config.logging.level, config.logging.format)
        self.service = service or CalendarService(config)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_api_key = str(current.get("remote", {}).get("api_key", ""))
    remote = sanitized.get("remote")
    if isinstance(remote, dict):
        remote = dict(remote)
        api_key = remote.get("api_key")
        if api_key is not None and str(api_key).strip() in {"", MASK}:
            if current_api_key:
                remote.pop("api_key", None)
            else:
                remote["api_key"] = ""
        if remote:
            sanitized["remote"] = remote
        else:
            sanitized.pop("remote", None)
    return sanitized


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=exc.to_dict())
    if isinstance(exc, EventNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, MalformedRecord):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, LocalPersistenceError):
        return HTTPException(status_code=500, detail=f"local storage failed: {exc}")
    if isinstance(exc, RemoteUnavailable):
        return HTTPException(status_code=502, detail=f"remote unavailable: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


_HANDLED = (ValidationError, EventNotFound, MalformedRecord, LocalPersistenceError, RemoteUnavailable)


def create_app(service: CalendarService | None = None) -> FastAPI:
    config_path = os.getenv("DOCKET_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path, service=service)

    app = FastAPI(title="Docket Calendar", version="0.1.0")
    app.state.context = context

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.context.service.wait_idle()
        app.state.context.service.close()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated; restart to apply remote and storage changes",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/organizations/{organization_id}/events")
    async def list_events(
        organization_id: str,
        kind: str | None = None,
        q: str | None = None,
        start: str | None = None,
        end: str | None = None,
    ) -> dict[str, Any]:
        service: CalendarService = app.state.context.service
        view = service.view(organization_id)
        if view.generation == 0:
            view = await service.refresh(organization_id)
        try:
            events = service.events(organization_id, kind=kind, term=q, start=start, end=end)
        except _HANDLED as exc:
            raise _http_error(exc) from exc
        return {
            "organization_id": organization_id,
            "generation": view.generation,
            "events": [event.to_dict() for event in events],
            "diagnostics": view.diagnostics.to_dict(),
        }

    @app.get("/api/organizations/{organization_id}/day-index")
    async def day_index(organization_id: str) -> dict[str, Any]:
        service: CalendarService = app.state.context.service
        if service.view(organization_id).generation == 0:
            await service.refresh(organization_id)
        return {"organization_id": organization_id, "days": dict(service.day_index(organization_id))}

    @app.post("/api/organizations/{organization_id}/refresh")
    async def refresh(organization_id: str) -> dict[str, Any]:
        view = await app.state.context.service.refresh(organization_id)
        return view.to_dict()

    @app.post("/api/organizations/{organization_id}/events", status_code=201)
    async def create_event(organization_id: str, request: EventCreateRequest) -> dict[str, Any]:
        try:
            outcome = await app.state.context.service.create_event(organization_id, request.model_dump())
        except _HANDLED as exc:
            raise _http_error(exc) from exc
        return outcome.to_dict()

    @app.patch("/api/organizations/{organization_id}/events/{event_id}")
    async def update_event(organization_id: str, event_id: str, request: EventUpdateRequest) -> dict[str, Any]:
        try:
            outcome = await app.state.context.service.update_event(
                organization_id,
                event_id,
                request.model_dump(exclude_none=True),
            )
        except _HANDLED as exc:
            raise _http_error(exc) from exc
        return outcome.to_dict()

    @app.delete("/api/organizations/{organization_id}/events/{event_id}")
    async def delete_event(organization_id: str, event_id: str) -> dict[str, Any]:
        try:
            outcome = await app.state.context.service.delete_event(organization_id, event_id)
        except _HANDLED as exc:
            raise _http_error(exc) from exc
        return outcome.to_dict()

    @app.get("/api/organizations/{organization_id}/calendar.ics")
    async def calendar_feed(organization_id: str) -> Response:
        service: CalendarService = app.state.context.service
        if service.view(organization_id).generation == 0:
            await service.refresh(organization_id)
        return Response(content=service.export_ics(organization_id), media_type="text/calendar")

    @app.get("/api/runs")
    def aggregation_runs(limit: int = 20, organization_id: str | None = None) -> dict[str, Any]:
        return {
            "runs": app.state.context.service.store.recent_aggregation_runs(
                limit=limit,
                organization_id=organization_id,
            )
        }

    @app.get("/api/audit")
    def audit_events(limit: int = 100, organization_id: str | None = None) -> dict[str, Any]:
        return {
            "events": app.state.context.service.store.recent_audit_events(
                limit=limit,
                organization_id=organization_id,
            )
        }

    return app
