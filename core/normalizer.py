"""
normalizer.py — Joins raw race records into per-race views.

A RaceView carries everything the metrics and heat logic need for one race:
display name, start timestamp, the pilot roster (from detections) and each
pilot's valid laps in lap-number order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Optional

from core.source_reader import (
    EventRecord, Lap, Pilot, PilotChannel, RaceRecord, SourceTree,
)

# Spreadsheet serial dates count days from this epoch
SERIAL_EPOCH = datetime(1899, 12, 30)

ROUND_TYPE_SCOPES = {
    "allRace": "Race",
    "allPractice": "Practice",
    "allTimeTrial": "TimeTrial",
    "allEndurance": "Endurance",
}

_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


@dataclass(frozen=True)
class RaceView:
    race_id: str
    event_id: str
    event_name: str
    laps_to_do: int
    round_id: Optional[str]
    round_number: int
    event_type: str
    race_number: int
    valid: bool
    name: str
    timestamp: Optional[float]
    recorded_laps: int
    pilot_ids: tuple[str, ...]
    pilot_laps: Mapping[str, tuple[Lap, ...]]
    positions: Mapping[str, int]
    pilot_channels: tuple[PilotChannel, ...]
    pilots: Mapping[str, Pilot]

    @property
    def has_laps(self) -> bool:
        return self.recorded_laps > 0

    def laps_for(self, pilot_id: str) -> tuple[Lap, ...]:
        return self.pilot_laps.get(pilot_id, ())

    def position_for(self, pilot_id: str) -> Optional[int]:
        return self.positions.get(pilot_id)


# ---------------------------------------------------------------------------
# Naming and timestamps
# ---------------------------------------------------------------------------

def heat_name(event_type: str, round_number: int, race_number: int) -> str:
    """'Race 2-3', or 'Practice N/A-1' when the round is unknown."""
    display_round = "N/A" if round_number == 0 else round_number
    return f"{event_type} {display_round}-{race_number}"


def parse_start_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 lap start time to a naive local datetime (whole seconds).

    Offsets are converted to the local wall clock. Returns None if the value
    is absent or unparsable.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # .NET exports carry 7 fractional digits
    text = _LONG_FRACTION.sub(r"\1", text)
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt.replace(microsecond=0)


def to_serial_date(dt: datetime) -> float:
    return (dt - SERIAL_EPOCH).total_seconds() / 86400


def race_timestamp(laps: list[Lap]) -> Optional[float]:
    """Serial date of the lowest-numbered lap's start time, or None."""
    if not laps:
        return None
    first = sorted(laps, key=lambda lap: lap.lap_number)[0]
    dt = parse_start_time(first.start_time)
    return to_serial_date(dt) if dt else None


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

def _pilot_laps(record: RaceRecord) -> dict[str, tuple[Lap, ...]]:
    race = record.race
    detections = {}
    for d in race.detections:
        detections.setdefault(d.id, d)

    by_pilot: dict[str, list[Lap]] = {}
    for lap in race.laps:
        detection = detections.get(lap.detection) if lap.detection else None
        if detection is None or not detection.valid or detection.pilot is None:
            continue
        by_pilot.setdefault(detection.pilot, []).append(lap)

    return {
        pilot_id: tuple(sorted(laps, key=lambda lap: lap.lap_number))
        for pilot_id, laps in by_pilot.items()
    }


def build_race_view(event: EventRecord, record: RaceRecord) -> RaceView:
    race = record.race
    rnd = event.rounds.get(race.round) if race.round else None
    round_number = rnd.round_number if rnd else 0
    event_type = rnd.event_type if rnd else "Race"

    roster = tuple(dict.fromkeys(d.pilot for d in race.detections if d.pilot))
    positions = {}
    for result in record.results:
        if result.pilot and result.position is not None:
            positions.setdefault(result.pilot, result.position)

    return RaceView(
        race_id=race.id,
        event_id=event.event_id,
        event_name=event.info.name,
        laps_to_do=event.info.laps,
        round_id=race.round,
        round_number=round_number,
        event_type=event_type,
        race_number=race.race_number,
        valid=race.valid,
        name=heat_name(event_type, round_number, race.race_number),
        timestamp=race_timestamp(race.laps),
        recorded_laps=len(race.laps),
        pilot_ids=roster,
        pilot_laps=MappingProxyType(_pilot_laps(record)),
        positions=MappingProxyType(positions),
        pilot_channels=tuple(race.pilot_channels),
        pilots=MappingProxyType(event.pilots),
    )


def build_race_views(tree: SourceTree) -> list[RaceView]:
    """All races of all loaded events, ordered by round number then race number."""
    views = [
        build_race_view(event, record)
        for event in tree.events
        for record in event.races
    ]
    views.sort(key=lambda v: (v.round_number, v.race_number))
    return views


def valid_races(views: list[RaceView]) -> list[RaceView]:
    return [v for v in views if v.valid]


def matches_round(view: RaceView, leaderboard_round: str) -> bool:
    """Leaderboard scope: 'all', 'allRace' / 'allPractice' / ..., or a round id."""
    if not leaderboard_round or leaderboard_round == "all":
        return True
    event_type = ROUND_TYPE_SCOPES.get(leaderboard_round)
    if event_type is not None:
        return view.event_type == event_type
    return view.round_id == leaderboard_round
