from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from schoolcal.archive_store import ArchiveStore
from schoolcal.caldav_client import CalendarDirectory
from schoolcal.config_manager import MASK, ConfigManager
from schoolcal.errors import ConfigurationError
from schoolcal.models import serialize_datetime
from schoolcal.scheduler import SyncScheduler
from schoolcal.state_store import StateStore
from schoolcal.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    return {
        "calendar": {"password": {"is_masked": bool(str(config_dict.get("calendar", {}).get("password", "")).strip())}},
        "accounts": [
            {"short": account.get("short", ""), "password": {"is_masked": bool(account.get("password"))}}
            for account in config_dict.get("accounts", [])
        ],
    }


def _is_placeholder(value: Any) -> bool:
    return value is not None and str(value).strip() in {"", MASK}


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Keep stored secrets when an update carries them masked or empty."""
    sanitized = dict(payload)

    calendar = sanitized.get("calendar")
    if isinstance(calendar, dict):
        calendar = dict(calendar)
        current_password = str(current.get("calendar", {}).get("password", ""))
        if _is_placeholder(calendar.get("password")):
            if current_password:
                calendar.pop("password", None)
            else:
                calendar["password"] = ""
        if calendar:
            sanitized["calendar"] = calendar
        else:
            sanitized.pop("calendar", None)

    accounts = sanitized.get("accounts")
    if isinstance(accounts, list):
        # Lists replace the stored value wholesale, so secrets are restored per account.
        current_by_short = {
            str(account.get("short", "")): str(account.get("password", ""))
            for account in current.get("accounts", [])
        }
        cleaned_accounts = []
        for account in accounts:
            if not isinstance(account, dict):
                continue
            account = dict(account)
            if _is_placeholder(account.get("password")):
                account["password"] = current_by_short.get(str(account.get("short", "")), "")
            cleaned_accounts.append(account)
        sanitized["accounts"] = cleaned_accounts

    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("SCHOOLCAL_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("SCHOOLCAL_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="schoolcal admin", version="0.1.0")
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

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        masked = app.state.context.config_manager.masked()
        return {"config": masked, "meta": _masked_meta(raw)}

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        directory = CalendarDirectory(config.calendar)
        try:
            calendars = directory.list_calendars()
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            raise HTTPException(status_code=502, detail=f"{type(exc).__name__}: {exc}") from exc
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-now")
    def run_sync_now() -> dict[str, Any]:
        result = app.state.context.sync_engine.run_once(trigger="manual-now")
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/debug/runs/{run_id}")
    def debug_run(run_id: int, limit: int = 500) -> dict[str, Any]:
        run = app.state.context.state_store.get_sync_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        events = app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)
        return {"run": run, "events": events}

    @app.get("/api/archives")
    def list_archives() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        store = ArchiveStore(config.storage.archive_dir)
        items: list[dict[str, Any]] = []
        for key in store.list_keys():
            archive = store.load(key)
            if archive is None:
                items.append({"key": str(key), "readable": False})
                continue
            synced = [entry for entry in archive.entries if entry.sync_hash]
            items.append(
                {
                    "key": str(key),
                    "readable": True,
                    "entries": len(archive.entries),
                    "synced": len(synced),
                    "last_update": serialize_datetime(archive.metadata.last_update),
                    "generated_at": serialize_datetime(archive.metadata.generated_at),
                }
            )
        return {"archives": items}

    return app


app = create_app()
