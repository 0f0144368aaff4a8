"""
heats.py — Latest completed heat and next heat to run.

The latest heat is the valid race with recorded laps and the most recent
start time. The next heat is the first valid race without laps after it in
round/race order. Next-heat pilots come from the race's channel assignments
and are annotated with their current leaderboard rank.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from core.metrics import RankEntry
from core.normalizer import RaceView

UNKNOWN_BAND = "N/A"
UNKNOWN_PILOT = "Unknown Pilot"


@dataclass(frozen=True)
class LatestHeat:
    name: str
    race_id: str
    pilot_ids: tuple[str, ...]


@dataclass(frozen=True)
class NextHeatPilot:
    pilot_id: Optional[str]
    pilot_name: str
    photo_path: Optional[str]
    band: str
    rank: Optional[int]
    time: Optional[float]

    def to_dict(self) -> dict:
        return {
            "pilotId": self.pilot_id,
            "pilotName": self.pilot_name,
            "photopath": self.photo_path,
            "band": self.band,
            "rank": self.rank,
            "time": self.time,
        }


@dataclass(frozen=True)
class NextHeat:
    name: str
    race_id: str
    pilots: tuple[NextHeatPilot, ...]


@dataclass(frozen=True)
class HeatStatus:
    latest: Optional[LatestHeat]
    next: Optional[NextHeat]


def find_latest_index(views: Sequence[RaceView]) -> Optional[int]:
    """Index of the valid race with laps and the latest start time.

    Races without a start timestamp count as older than any timestamped
    race. On equal timestamps the earlier race in order wins.
    """
    latest = None
    latest_ts = float("-inf")
    for i, view in enumerate(views):
        if not view.valid or not view.has_laps:
            continue
        ts = view.timestamp if view.timestamp is not None else float("-inf")
        if latest is None or ts > latest_ts:
            latest, latest_ts = i, ts
    return latest


def find_next_index(views: Sequence[RaceView], latest_index: Optional[int]) -> Optional[int]:
    start = latest_index + 1 if latest_index is not None else 0
    for i in range(start, len(views)):
        if views[i].valid and not views[i].has_laps:
            return i
    return None


def _next_heat_pilots(view: RaceView, channels: Mapping[str, str],
                      ranking: Sequence[RankEntry]) -> tuple[NextHeatPilot, ...]:
    by_pilot = {entry.pilot_id: entry for entry in ranking}
    entries = []
    for assignment in view.pilot_channels:
        pilot = view.pilots.get(assignment.pilot) if assignment.pilot else None
        ranked = by_pilot.get(pilot.id) if pilot else None
        entries.append(NextHeatPilot(
            pilot_id=pilot.id if pilot else None,
            pilot_name=pilot.name if pilot else UNKNOWN_PILOT,
            photo_path=pilot.photo_path if pilot else None,
            band=channels.get(assignment.channel, UNKNOWN_BAND) if assignment.channel else UNKNOWN_BAND,
            rank=ranked.rank if ranked else None,
            time=ranked.time if ranked else None,
        ))
    return tuple(entries)


def locate_heats(views: Sequence[RaceView], channels: Mapping[str, str],
                 ranking: Sequence[RankEntry]) -> HeatStatus:
    """`views` is the full round/race-ordered list; `ranking` the configured category's."""
    latest_index = find_latest_index(views)
    latest = None
    if latest_index is not None:
        view = views[latest_index]
        latest = LatestHeat(view.name, view.race_id, view.pilot_ids)

    next_index = find_next_index(views, latest_index)
    next_heat = None
    if next_index is not None:
        view = views[next_index]
        next_heat = NextHeat(view.name, view.race_id,
                             _next_heat_pilots(view, channels, ranking))

    return HeatStatus(latest=latest, next=next_heat)
