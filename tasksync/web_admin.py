from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from tasksync.config_manager import MASK, ConfigManager
from tasksync.logging_utils import configure_logging
from tasksync.scheduler import SyncScheduler
from tasksync.state_store import StateStore
from tasksync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    has_password = bool(str(config_dict.get("caldav", {}).get("password", "")).strip())
    return {"caldav": {"password": {"is_masked": has_password}}}


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_password = str(current.get("caldav", {}).get("password", ""))

    caldav = sanitized.get("caldav")
    if isinstance(caldav, dict):
        caldav = dict(caldav)
        password = caldav.get("password")
        if password is not None and str(password).strip() in {"", MASK}:
            if current_password:
                caldav.pop("password", None)
            else:
                caldav["password"] = ""
        if caldav:
            sanitized["caldav"] = caldav
        else:
            sanitized.pop("caldav", None)
    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("TASKSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("TASKSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="tasksync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        configure_logging(app.state.context.config_manager.load().logging.level)
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

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
        try:
            updated = app.state.context.config_manager.update(sanitized_payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        configure_logging(updated.logging.level)
        config = updated.to_dict()
        if config["caldav"]["password"]:
            config["caldav"]["password"] = MASK
        return {"message": "config updated", "config": config}

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        masked = app.state.context.config_manager.masked()
        return {"config": masked, "meta": _masked_meta(raw)}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-now")
    def run_sync_now() -> dict[str, Any]:
        return app.state.context.sync_engine.run_once(trigger="manual").to_dict()

    @app.get("/api/sync/status")
    def sync_status(limit: int = Query(default=20, ge=1, le=200)) -> dict[str, Any]:
        runs = app.state.context.state_store.recent_sync_runs(limit=limit)
        return {
            "scheduler_running": app.state.context.scheduler.running,
            "last_run": runs[0] if runs else None,
            "runs": runs,
        }

    @app.get("/api/sync/runs/{run_id}")
    def sync_run(run_id: int) -> dict[str, Any]:
        run = app.state.context.state_store.get_sync_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        events = app.state.context.state_store.recent_audit_events(limit=500, run_id=run_id)
        return {"run": run, "events": events}

    @app.get("/api/audit/events")
    def audit_events(
        limit: int = Query(default=100, ge=1, le=1000),
        run_id: int | None = None,
    ) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/mappings")
    def mappings() -> dict[str, Any]:
        rows = [mapping.to_dict() for mapping in app.state.context.state_store.load_mappings()]
        return {"count": len(rows), "mappings": rows}

    return app


app = create_app()
