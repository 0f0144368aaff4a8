"""
Lapboard — Server entry point.

Starts the FastAPI server with the API routes, WebSocket and the HTML
leaderboard, plus the background watcher and reprocessing scheduler.
Usage:
    python server.py
    # or: uvicorn server:app --host 0.0.0.0 --port 3000
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from core.pipeline import build_snapshot
from core.scheduler import ReprocessScheduler
from core.settings import RunConfig, get_config_path, load_settings
from core.sheets_client import make_sheets_sink
from core.snapshot import Snapshot, SnapshotHolder
from core.watcher import SourceWatcher
from api.routes import router as api_router
from api.websocket import router as ws_router, notifier as ws_notifier

logger = logging.getLogger("lapboard")

BASE_DIR = Path(__file__).parent

templates = Jinja2Templates(directory=str(BASE_DIR / "web" / "templates"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: first run + file watching. Shutdown: stop both."""
    scheduler: ReprocessScheduler = app.state.scheduler
    watcher: SourceWatcher = app.state.watcher

    await scheduler.start()
    scheduler.request_run("startup")
    await watcher.start()

    yield

    await watcher.stop()
    await scheduler.stop()


def create_app(config_path: Optional[Path] = None) -> FastAPI:
    config_path = config_path or get_config_path()
    settings = load_settings(config_path)

    holder = SnapshotHolder()

    def run_pipeline() -> Snapshot:
        # Settings are re-read for every run and held fixed for its duration
        return build_snapshot(RunConfig.from_settings(load_settings(config_path)))

    async def broadcast(snapshot: Snapshot) -> None:
        await ws_notifier.broadcast_snapshot(snapshot, holder.version)

    scheduler = ReprocessScheduler(
        run_pipeline, holder,
        quiet_period=settings.debounce_seconds,
        sinks=[broadcast, make_sheets_sink(lambda: load_settings(config_path))],
    )
    watcher = SourceWatcher(settings.events_dir, scheduler.notify_change,
                            interval=settings.watch_interval_seconds)

    app = FastAPI(title="Lapboard", lifespan=lifespan)
    app.state.config_path = config_path
    app.state.snapshots = holder
    app.state.scheduler = scheduler
    app.state.watcher = watcher

    # API + WebSocket routers
    app.include_router(api_router, prefix="/api")
    app.include_router(ws_router)

    # ─── HTML page routes ───────────────────────────────────────────

    @app.get("/", response_class=HTMLResponse)
    @app.get("/leaderboard", response_class=HTMLResponse)
    async def leaderboard_page(request: Request):
        snap = request.app.state.snapshots.current()
        return templates.TemplateResponse(request, "leaderboard.html", {
            "event_name": snap.event_name,
        })

    return app


app = create_app()


# ─── Main ────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    port = load_settings(app.state.config_path).web_ui_port
    print(f"Lapboard — http://localhost:{port}/")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="warning")
