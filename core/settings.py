"""
settings.py — Flat key-value settings file (config.json) and the per-run
configuration snapshot derived from it.

The file is edited from the web UI (POST /api/config) and read once at the
start of every pipeline run. A broken or missing file never stops the
service: defaults are used and the problem is logged.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from core.metrics import Category

logger = logging.getLogger("lapboard.settings")

BASE_DIR = Path(__file__).parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / "config.json"
CONFIG_ENV_VAR = "LAPBOARD_CONFIG"


class Settings(BaseModel):
    """Recognized settings keys. Unknown keys are kept in the file but ignored."""

    model_config = ConfigDict(extra="ignore")

    source_root_path: str = "."
    selected_event_id: str = "all"
    leaderboard_round: str = "all"
    sorted_by: Category = Category.BEST_LAP
    google_spreadsheet_id: str = ""
    google_credentials_path: str = "credentials.json"
    web_ui_port: int = 3000
    debounce_seconds: float = 5.0
    watch_interval_seconds: float = 1.0

    @property
    def source_root(self) -> Path:
        return Path(self.source_root_path)

    @property
    def events_dir(self) -> Path:
        return self.source_root / "events"

    @property
    def channels_path(self) -> Path:
        return self.source_root / "httpfiles" / "Channels.json"

    @property
    def credentials_path(self) -> Path:
        path = Path(self.google_credentials_path)
        return path if path.is_absolute() else BASE_DIR / path


@dataclass(frozen=True)
class RunConfig:
    """Configuration captured at run start and held fixed for the whole run."""

    events_dir: Path
    channels_path: Path
    selected_event_id: str
    leaderboard_round: str
    sorted_by: Category

    @classmethod
    def from_settings(cls, settings: Settings) -> "RunConfig":
        return cls(
            events_dir=settings.events_dir,
            channels_path=settings.channels_path,
            selected_event_id=settings.selected_event_id or "all",
            leaderboard_round=settings.leaderboard_round or "all",
            sorted_by=settings.sorted_by,
        )


def get_config_path() -> Path:
    env = os.environ.get(CONFIG_ENV_VAR)
    return Path(env) if env else DEFAULT_CONFIG_PATH


def _read_raw(path: Path) -> dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"root of {path} must be an object, not {type(data).__name__}")
    return data


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from `path` (default: get_config_path()). Never raises."""
    path = path or get_config_path()
    if not path.exists():
        logger.warning("Settings file not found at %s, using defaults", path)
        return Settings()
    try:
        return Settings.model_validate(_read_raw(path))
    except (OSError, ValueError, ValidationError) as e:
        logger.error("Could not read settings from %s: %s. Using defaults.", path, e)
        return Settings()


def save_settings(updates: dict[str, Any], path: Optional[Path] = None) -> Settings:
    """Merge `updates` over the current file and write it back.

    Raises pydantic.ValidationError if the merged result is not valid; the
    file is left untouched in that case.
    """
    path = path or get_config_path()
    current: dict[str, Any] = {}
    if path.exists():
        try:
            current = _read_raw(path)
        except (OSError, ValueError) as e:
            logger.warning("Overwriting unreadable settings file %s: %s", path, e)

    merged = {**current, **updates}
    settings = Settings.model_validate(merged)

    # Normalize enum values back to plain strings for the file
    merged["sorted_by"] = settings.sorted_by.value
    path.write_text(json.dumps(merged, indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("Settings saved to %s", path)
    return settings
