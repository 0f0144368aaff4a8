"""
routes.py — REST API endpoints for Lapboard.

All endpoints under /api/. Leaderboard data is read from the snapshot
currently published in app.state.snapshots; a handler takes one snapshot
reference and uses only that object for the whole response.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, ValidationError

from core.metrics import Category, sanitize_rows
from core.normalizer import ROUND_TYPE_SCOPES
from core.settings import Settings, load_settings, save_settings
from core.sheets_client import result_headers
from core.snapshot import Snapshot
from core.source_reader import MalformedRecord, list_events, load_rounds
from api.websocket import notifier as ws_notifier

logger = logging.getLogger("lapboard.api")

router = APIRouter()

ALL_ROUNDS = {"id": "all", "name": "All rounds"}
ROUND_SCOPE_NAMES = {scope: f"All {event_type} rounds"
                     for scope, event_type in ROUND_TYPE_SCOPES.items()}


# ─── Helper ──────────────────────────────────────────────────────────

def _snapshot(request: Request) -> tuple[int, Snapshot]:
    return request.app.state.snapshots.read()


async def _settings(request: Request) -> Settings:
    return await asyncio.to_thread(load_settings, request.app.state.config_path)


def _round_options(settings: Settings) -> list[dict]:
    """Scope choices for the selected event. Only 'all' when no single event is selected."""
    event_id = settings.selected_event_id
    if not event_id or event_id == "all":
        return [ALL_ROUNDS]
    try:
        rounds = load_rounds(settings.events_dir, event_id)
    except MalformedRecord as e:
        logger.warning("Could not list rounds: %s", e)
        return [ALL_ROUNDS]
    if not rounds:
        return [ALL_ROUNDS]
    options = [ALL_ROUNDS]
    options += [{"id": scope, "name": name} for scope, name in ROUND_SCOPE_NAMES.items()]
    options += [{"id": r.id, "name": f"{r.event_type}Round{r.round_number}"} for r in rounds]
    return options


def _round_name(settings: Settings, leaderboard_round: str) -> str:
    if not leaderboard_round or leaderboard_round == "all":
        return ALL_ROUNDS["name"]
    if leaderboard_round in ROUND_SCOPE_NAMES:
        return ROUND_SCOPE_NAMES[leaderboard_round]
    for option in _round_options(settings):
        if option["id"] == leaderboard_round:
            return option["name"]
    return leaderboard_round


# ─── Pydantic models ─────────────────────────────────────────────────

class ConfigUpdate(BaseModel):
    """Partial settings update. Unknown keys are stored as given."""

    model_config = ConfigDict(extra="allow")

    source_root_path: Optional[str] = None
    selected_event_id: Optional[str] = None
    leaderboard_round: Optional[str] = None
    sorted_by: Optional[Category] = None
    google_spreadsheet_id: Optional[str] = None
    google_credentials_path: Optional[str] = None
    web_ui_port: Optional[int] = None
    debounce_seconds: Optional[float] = None
    watch_interval_seconds: Optional[float] = None


# ═══════════════════════════════════════════════════════════════════════
# LEADERBOARD
# ═══════════════════════════════════════════════════════════════════════

@router.get("/leaderboard")
async def get_leaderboard(request: Request, sorted_by: Optional[str] = Query(None)):
    """Ranking for one category plus the last/next heat panels."""
    _version, snap = _snapshot(request)
    settings = await _settings(request)

    key = sorted_by or settings.sorted_by.value
    try:
        category = Category(key)
    except ValueError:
        raise HTTPException(400, f"Unknown ranking category: {key}")
    round_name = await asyncio.to_thread(_round_name, settings, snap.leaderboard_round)

    return {
        "eventName": snap.event_name,
        "roundName": round_name,
        "sortedBy": category.value,
        "sortedByDisplayName": category.display_name,
        "ranking": [e.to_dict() for e in snap.ranking(category)],
        "lastHeatName": snap.latest_heat_name,
        "nextHeatName": snap.next_heat_name,
        "nextHeatPilots": snap.next_heat_pilots,
        "lastHeatPilotIds": snap.last_heat_pilot_ids,
        "generatedAt": snap.generated_at,
    }


@router.get("/min-laps")
async def get_min_laps(request: Request):
    _version, snap = _snapshot(request)
    return {
        "eventName": snap.event_name,
        "ranking": [e.to_dict() for e in snap.min_laps],
    }


@router.get("/results")
async def get_results(request: Request):
    """Per-pilot-per-race result table, sanitized for export."""
    _version, snap = _snapshot(request)
    return {
        "headers": result_headers(snap.laps_to_do),
        "rows": sanitize_rows(row.cells() for row in snap.result_rows),
    }


@router.get("/pilot_image")
async def pilot_image(request: Request,
                      id: Optional[str] = Query(None),
                      path: Optional[str] = Query(None)):
    """Serve a pilot photo from below the source root."""
    if not id and not path:
        raise HTTPException(400, "Pilot id or photo path is required")

    if not path:
        _version, snap = _snapshot(request)
        pilot = snap.pilots.get(id)
        if pilot is None or not pilot.photo_path:
            logger.info("No photo for pilot %s", id)
            return Response(status_code=204)
        path = pilot.photo_path

    root = (await _settings(request)).source_root.resolve()
    target = (root / path).resolve()
    if not target.is_relative_to(root):
        logger.error("Forbidden access attempt to: %s", path)
        raise HTTPException(403, "Forbidden")

    if not target.is_file():
        logger.info("Pilot image not found at %s", target)
        return Response(status_code=204)
    return FileResponse(target)


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════

@router.get("/config")
async def get_config(request: Request):
    return (await _settings(request)).model_dump(mode="json")


@router.post("/config")
async def update_config(body: ConfigUpdate, request: Request):
    """Merge the given keys into the settings file and re-run immediately."""
    updates = body.model_dump(mode="json", exclude_none=True)
    try:
        settings = await asyncio.to_thread(save_settings, updates,
                                           request.app.state.config_path)
    except ValidationError as e:
        raise HTTPException(400, f"Invalid settings: {e.errors()[0]['msg']}")
    except OSError as e:
        raise HTTPException(500, f"Could not save settings: {e}")

    logger.info("Config updated, reprocessing events...")
    request.app.state.scheduler.request_run("config update")
    return {"ok": True, "config": settings.model_dump(mode="json")}


@router.get("/events")
async def get_events(request: Request):
    settings = await _settings(request)
    return await asyncio.to_thread(list_events, settings.events_dir)


@router.get("/rounds")
async def get_rounds(request: Request):
    settings = await _settings(request)
    return await asyncio.to_thread(_round_options, settings)


# ═══════════════════════════════════════════════════════════════════════
# PROCESSING
# ═══════════════════════════════════════════════════════════════════════

@router.post("/reprocess")
async def reprocess(request: Request):
    """Explicit retrigger. Dropped if a run is already in progress."""
    scheduler = request.app.state.scheduler
    accepted = scheduler.request_run("manual")
    if not accepted:
        raise HTTPException(503, "Scheduler is not running")
    return {"ok": True, "state": scheduler.state.value}


# ═══════════════════════════════════════════════════════════════════════
# SYSTEM STATUS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/status")
async def system_status(request: Request):
    version, snap = _snapshot(request)
    scheduler = request.app.state.scheduler
    watcher = request.app.state.watcher
    return {
        "server": "Lapboard",
        "version": "1.0",
        "snapshot": {
            "version": version,
            "generated_at": snap.generated_at,
            "event_name": snap.event_name,
            "pilot_count": len(snap.pilots),
            "result_rows": len(snap.result_rows),
        },
        "scheduler": scheduler.get_status(),
        "watcher": watcher.get_status() if watcher else {
            "is_running": False, "status": "Stopped",
        },
        "ws_connections": ws_notifier.connection_count,
    }
