from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from keytally.config_manager import MASK, SECRET_FIELDS, ConfigManager
from keytally.errors import AggregateUpdateError, AuthenticationError
from keytally.models import KeyDelta, MatchedEventRecord, event_date_of, duration_minutes
from keytally.sources import CalendarFactory, build_calendar_service
from keytally.state_store import StateStore
from keytally.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

REPORT_STATUS_CODES = {"success": 200, "empty": 200, "unauthorized": 401, "error": 500}


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class TrackingKeyCreateRequest(BaseModel):
    name: str = ""
    search_key: str = ""
    color: str = ""
    calendar_id: str | None = None


class TrackingKeyUpdateRequest(BaseModel):
    name: str | None = None
    search_key: str | None = None
    color: str | None = None
    calendar_id: str | None = None


class TrackedEventCreateRequest(BaseModel):
    summary: str = ""
    key_id: str = ""
    key_name: str = ""
    start_time: str = ""
    end_time: str = ""
    duration_minutes: int | None = None
    event_date: str = ""


class AppContext:
    def __init__(
        self,
        config_path: str,
        state_path: str,
        calendar_factory: CalendarFactory | None = None,
    ) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.calendar_factory = calendar_factory or build_calendar_service
        self.sync_engine = SyncEngine(self.config_manager, self.state_store, self.calendar_factory)


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section_name, field_name in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict):
            continue
        value = section.get(field_name)
        if value is not None and str(value).strip() in {"", MASK}:
            if str(current.get(section_name, {}).get(field_name, "")):
                section.pop(field_name, None)
            else:
                section[field_name] = ""
        if not section:
            sanitized.pop(section_name, None)
    return sanitized


def create_app(calendar_factory: CalendarFactory | None = None) -> FastAPI:
    config_path = os.getenv("KEYTALLY_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("KEYTALLY_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path, calendar_factory=calendar_factory)

    app = FastAPI(title="Keytally", version="0.1.0")
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/tracking")
    def run_tracking(authorization: str | None = Header(default=None)) -> JSONResponse:
        token = _bearer_token(authorization)
        report = app.state.context.sync_engine.run_once(token, trigger="api")
        return JSONResponse(
            status_code=REPORT_STATUS_CODES.get(report.status, 500),
            content=report.to_dict(),
        )

    @app.get("/api/keys")
    def list_keys() -> list[dict[str, Any]]:
        keys = app.state.context.state_store.load_keys()
        return [key.to_dict() for key in reversed(keys)]

    @app.post("/api/keys", status_code=201)
    def create_key(request: TrackingKeyCreateRequest) -> dict[str, Any]:
        if not request.name.strip():
            raise HTTPException(status_code=400, detail="Name is required")
        key = app.state.context.state_store.create_key(
            name=request.name,
            search_key=request.search_key,
            calendar_id=request.calendar_id or "",
            color=request.color,
        )
        return key.to_dict()

    @app.put("/api/keys/{key_id}")
    def update_key(key_id: str, request: TrackingKeyUpdateRequest) -> dict[str, Any]:
        try:
            key = app.state.context.state_store.update_key(key_id, **request.model_dump())
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="key not found") from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return key.to_dict()

    @app.delete("/api/keys/{key_id}")
    def delete_key(key_id: str) -> dict[str, bool]:
        if not app.state.context.state_store.delete_key(key_id):
            raise HTTPException(status_code=404, detail="key not found")
        return {"success": True}

    @app.get("/api/events")
    def list_events(key_id: str | None = None, search: str | None = None) -> list[dict[str, Any]]:
        if key_id == "all":
            key_id = None
        return app.state.context.state_store.list_tracked_events(key_id=key_id, search=search)

    @app.post("/api/events", status_code=201)
    def create_event(request: TrackedEventCreateRequest) -> dict[str, Any]:
        if not request.summary.strip() or not request.key_id.strip():
            raise HTTPException(status_code=400, detail="summary and key_id are required")
        store = app.state.context.state_store
        key = store.get_key(request.key_id)
        if key is None:
            raise HTTPException(status_code=404, detail="key not found")
        minutes = request.duration_minutes
        if minutes is None:
            try:
                minutes = duration_minutes(request.start_time, request.end_time)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"invalid start/end: {exc}") from exc
        event_date = (
            request.event_date
            or event_date_of(request.start_time)
            or datetime.now(timezone.utc).date().isoformat()
        )
        record = MatchedEventRecord(
            summary=request.summary,
            key_id=key.key_id,
            key_name=request.key_name or key.name,
            start_time=request.start_time,
            end_time=request.end_time,
            duration_minutes=max(0, int(minutes)),
            event_date=event_date,
        )
        try:
            event_id = store.insert_tracked_event(record)
        except Exception as exc:
            raise HTTPException(status_code=409, detail=f"event could not be recorded: {exc}") from exc
        delta = KeyDelta()
        delta.add(record.duration_minutes)
        try:
            app.state.context.sync_engine.apply_aggregate_delta(key.key_id, delta)
        except AggregateUpdateError as exc:
            logger.error("Stats update failed for key %s, removing event %s: %s", key.key_id, event_id, exc)
            store.delete_tracked_event(event_id)
            raise HTTPException(status_code=500, detail=f"key stats could not be updated: {exc}") from exc
        return {"id": event_id, **record.to_dict()}

    @app.get("/api/calendars")
    def list_calendars(authorization: str | None = Header(default=None)) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        service = None
        try:
            service = app.state.context.calendar_factory(config, _bearer_token(authorization))
            calendars = service.list_calendars()
        except AuthenticationError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        except Exception as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        finally:
            if service is not None:
                service.close()
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        try:
            app.state.context.config_manager.update(sanitized_payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/sync/runs")
    def list_sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit")
    def list_audit_events(limit: int = 100) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit)}

    return app


app = create_app()
