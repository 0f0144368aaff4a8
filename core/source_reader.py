"""
source_reader.py — Loads the timing-system export tree for one run.

Layout (read-only):

    <root>/events/<event_id>/Event.json       [{"Name": ..., "Laps": 4, ...}]
    <root>/events/<event_id>/Pilots.json      [{"ID", "Name", "PhotoPath"}, ...]
    <root>/events/<event_id>/Rounds.json      [{"ID", "RoundNumber", "EventType", "Valid"}, ...]
    <root>/events/<event_id>/<race_id>/Race.json    [{"ID", "Round", "RaceNumber", "Valid",
                                                      "Laps", "Detections", "PilotChannels"}]
    <root>/events/<event_id>/<race_id>/Result.json  [{"Pilot", "Position"}, ...]   (optional)
    <root>/httpfiles/Channels.json            [{"ID", "DisplayName"}, ...]       (optional)

Records are parsed into explicit pydantic schemas. Unknown keys are ignored,
null lists become empty lists.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger("lapboard.reader")

EVENT_FILE = "Event.json"
PILOTS_FILE = "Pilots.json"
ROUNDS_FILE = "Rounds.json"
RACE_FILE = "Race.json"
RESULT_FILE = "Result.json"


class SourceUnavailable(Exception):
    """The source root or a required descriptor file is missing."""


class MalformedRecord(Exception):
    """A descriptor file exists but cannot be parsed."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


# ---------------------------------------------------------------------------
# Record schemas
# ---------------------------------------------------------------------------

class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class EventInfo(_Record):
    name: str = Field(default="", alias="Name")
    laps: int = Field(default=4, alias="Laps")


class Pilot(_Record):
    id: str = Field(alias="ID")
    name: str = Field(default="", alias="Name")
    photo_path: Optional[str] = Field(default=None, alias="PhotoPath")


class Round(_Record):
    id: str = Field(alias="ID")
    round_number: int = Field(default=0, alias="RoundNumber")
    event_type: str = Field(default="Race", alias="EventType")
    valid: bool = Field(default=False, alias="Valid")


class Lap(_Record):
    id: Optional[str] = Field(default=None, alias="ID")
    detection: Optional[str] = Field(default=None, alias="Detection")
    lap_number: int = Field(alias="LapNumber")
    length_seconds: float = Field(alias="LengthSeconds")
    start_time: Optional[str] = Field(default=None, alias="StartTime")


class Detection(_Record):
    id: str = Field(alias="ID")
    pilot: Optional[str] = Field(default=None, alias="Pilot")
    valid: bool = Field(default=False, alias="Valid")


class PilotChannel(_Record):
    pilot: Optional[str] = Field(default=None, alias="Pilot")
    channel: Optional[str] = Field(default=None, alias="Channel")


class Race(_Record):
    id: str = Field(alias="ID")
    round: Optional[str] = Field(default=None, alias="Round")
    race_number: int = Field(default=0, alias="RaceNumber")
    valid: bool = Field(default=False, alias="Valid")
    laps: list[Lap] = Field(default_factory=list, alias="Laps")
    detections: list[Detection] = Field(default_factory=list, alias="Detections")
    pilot_channels: list[PilotChannel] = Field(default_factory=list, alias="PilotChannels")

    @field_validator("laps", "detections", "pilot_channels", mode="before")
    @classmethod
    def none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class Result(_Record):
    pilot: Optional[str] = Field(default=None, alias="Pilot")
    position: Optional[int] = Field(default=None, alias="Position")


class Channel(_Record):
    id: str = Field(alias="ID")
    display_name: str = Field(default="", alias="DisplayName")


# ---------------------------------------------------------------------------
# Loaded tree
# ---------------------------------------------------------------------------

@dataclass
class RaceRecord:
    race: Race
    results: list[Result]
    directory: str


@dataclass
class EventRecord:
    event_id: str
    info: EventInfo
    pilots: dict[str, Pilot]
    rounds: dict[str, Round]
    races: list[RaceRecord] = field(default_factory=list)


@dataclass
class SourceTree:
    events: list[EventRecord]
    channels: dict[str, str]


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

def _read_json(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8-sig")
    except FileNotFoundError:
        raise SourceUnavailable(f"Missing file: {path}")
    except (OSError, UnicodeDecodeError) as e:
        raise MalformedRecord(path, f"unreadable ({e})")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedRecord(path, f"invalid JSON ({e})")


def _parse_list(path: Path, model: type[_Record]) -> list:
    data = _read_json(path)
    if not isinstance(data, list):
        raise MalformedRecord(path, f"expected an array, got {type(data).__name__}")
    try:
        return [model.model_validate(item) for item in data]
    except ValidationError as e:
        raise MalformedRecord(path, f"schema mismatch ({e.error_count()} errors): {e}")


def _parse_single(path: Path, model: type[_Record]):
    """Descriptors like Event.json and Race.json are one-element arrays."""
    items = _parse_list(path, model)
    if not items:
        raise MalformedRecord(path, "empty descriptor array")
    return items[0]


def _subdirs(directory: Path) -> list[Path]:
    return sorted((p for p in directory.iterdir() if p.is_dir()), key=lambda p: p.name)


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def load_channels(channels_path: Path) -> dict[str, str]:
    """Map channel id → display label. Missing file is not an error."""
    if not channels_path.exists():
        logger.warning("Channel directory not found at %s, band info unavailable",
                       channels_path)
        return {}
    return {c.id: c.display_name for c in _parse_list(channels_path, Channel)}


def load_race(race_dir: Path) -> Optional[RaceRecord]:
    """Load one race directory. Returns None when there is no Race.json."""
    race_path = race_dir / RACE_FILE
    if not race_path.exists():
        logger.debug("Skipping %s: no %s", race_dir, RACE_FILE)
        return None
    race = _parse_single(race_path, Race)
    result_path = race_dir / RESULT_FILE
    results = _parse_list(result_path, Result) if result_path.exists() else []
    return RaceRecord(race=race, results=results, directory=race_dir.name)


def load_event(event_dir: Path) -> EventRecord:
    for name in (EVENT_FILE, PILOTS_FILE, ROUNDS_FILE):
        if not (event_dir / name).exists():
            raise SourceUnavailable(f"Event {event_dir.name}: missing {name}")

    info = _parse_single(event_dir / EVENT_FILE, EventInfo)
    pilots = {p.id: p for p in _parse_list(event_dir / PILOTS_FILE, Pilot)}
    rounds = {r.id: r for r in _parse_list(event_dir / ROUNDS_FILE, Round)}

    record = EventRecord(event_id=event_dir.name, info=info, pilots=pilots, rounds=rounds)
    for race_dir in _subdirs(event_dir):
        race = load_race(race_dir)
        if race is not None:
            record.races.append(race)
    logger.debug("Loaded event %s (%s): %d pilots, %d rounds, %d races",
                 record.event_id, info.name, len(pilots), len(rounds), len(record.races))
    return record


def load_source_tree(events_dir: Path, selected_event_id: str = "all",
                     channels_path: Optional[Path] = None) -> SourceTree:
    """Load every event in scope. Raises SourceUnavailable / MalformedRecord."""
    if not events_dir.is_dir():
        raise SourceUnavailable(f"Events directory not found: {events_dir}")

    if selected_event_id and selected_event_id != "all":
        event_dir = events_dir / selected_event_id
        if not event_dir.is_dir():
            raise SourceUnavailable(f"Selected event not found: {event_dir}")
        event_dirs = [event_dir]
    else:
        event_dirs = []
        for d in _subdirs(events_dir):
            if (d / EVENT_FILE).exists():
                event_dirs.append(d)
            else:
                logger.debug("Ignoring %s: no %s", d, EVENT_FILE)

    logger.info("Processing event ids: %s", [d.name for d in event_dirs])
    events = [load_event(d) for d in event_dirs]
    channels = load_channels(channels_path) if channels_path else {}
    return SourceTree(events=events, channels=channels)


def list_events(events_dir: Path) -> list[dict]:
    """Return [{"id", "name"}] for every event directory with a readable Event.json."""
    if not events_dir.is_dir():
        return []
    events = []
    for d in _subdirs(events_dir):
        if not (d / EVENT_FILE).exists():
            continue
        try:
            info = _parse_single(d / EVENT_FILE, EventInfo)
        except MalformedRecord as e:
            logger.warning("Skipping event in listing: %s", e)
            continue
        events.append({"id": d.name, "name": info.name})
    return events


def load_rounds(events_dir: Path, event_id: str) -> list[Round]:
    """Valid rounds of one event, in file order. Empty if the file is absent."""
    path = events_dir / event_id / ROUNDS_FILE
    if not path.exists():
        return []
    return [r for r in _parse_list(path, Round) if r.valid]
