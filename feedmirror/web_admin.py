from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from feedmirror.config_manager import MASK, ConfigManager
from feedmirror.feed_client import FeedLoadError
from feedmirror.scheduler import SyncScheduler
from feedmirror.state_store import StateStore
from feedmirror.sync_engine import LAST_SUCCESS_META_KEY, LAST_SYNC_META_KEY, SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncNowRequest(BaseModel):
    dry_run: bool = False


class DedupeRequest(BaseModel):
    dry_run: bool = True


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


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
    config_path = os.getenv("FEEDMIRROR_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("FEEDMIRROR_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="feedmirror admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
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
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-now")
    def run_sync_now(request: SyncNowRequest) -> dict[str, Any]:
        result = app.state.context.sync_engine.run_once(
            trigger="manual-dry-run" if request.dry_run else "manual-now",
            dry_run=request.dry_run,
        )
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        store = app.state.context.state_store
        return {
            "last_sync": store.get_meta(LAST_SYNC_META_KEY),
            "last_success": store.get_meta(LAST_SUCCESS_META_KEY),
            "scheduler_running": app.state.context.scheduler.is_running,
            "scheduler": app.state.context.scheduler.status(),
            "run_in_progress": app.state.context.sync_engine.is_busy,
            "runs": store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/debug/runs/{run_id}")
    def debug_run(run_id: int, limit: int = 500) -> dict[str, Any]:
        run = app.state.context.state_store.get_sync_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        store = app.state.context.state_store
        return {
            "run": run,
            "summary": store.audit_summary(run_id),
            "events": store.recent_audit_events(limit=limit, run_id=run_id),
        }

    @app.get("/api/feed/check")
    def feed_check() -> dict[str, Any]:
        return app.state.context.sync_engine.check_feed()

    @app.get("/api/feed/consistency")
    def feed_consistency_check() -> dict[str, Any]:
        try:
            return app.state.context.sync_engine.check_feed_consistency()
        except FeedLoadError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/api/diagnostics/matching")
    def matching_diagnostics() -> dict[str, Any]:
        try:
            return app.state.context.sync_engine.matching_diagnostics()
        except Exception as exc:
            raise HTTPException(status_code=400, detail=f"{type(exc).__name__}: {exc}") from exc

    @app.post("/api/maintenance/dedupe")
    def dedupe(request: DedupeRequest) -> dict[str, Any]:
        try:
            return app.state.context.sync_engine.cleanup_duplicates(dry_run=request.dry_run)
        except Exception as exc:
            raise HTTPException(status_code=400, detail=f"{type(exc).__name__}: {exc}") from exc

    return app
