"""
snapshot.py — The published result of one pipeline run, and its holder.

A Snapshot is never modified after construction. Readers (API handlers,
sinks) take `holder.current()` and keep using that object; the scheduler
replaces it wholesale with `holder.publish()`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from core.heats import LatestHeat, NextHeat
from core.metrics import Category, PilotBest, RankEntry, ResultRow
from core.source_reader import Pilot


def _frozen(mapping: Optional[dict] = None) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Snapshot:
    event_name: str = ""
    laps_to_do: int = 4
    leaderboard_round: str = "all"
    sorted_by: Category = Category.BEST_LAP
    pilots: Mapping[str, Pilot] = field(default_factory=_frozen)
    pilot_bests: Mapping[str, PilotBest] = field(default_factory=_frozen)
    rankings: Mapping[Category, tuple[RankEntry, ...]] = field(default_factory=_frozen)
    latest_heat: Optional[LatestHeat] = None
    next_heat: Optional[NextHeat] = None
    min_laps: tuple[RankEntry, ...] = ()
    result_rows: tuple[ResultRow, ...] = ()
    generated_at: Optional[str] = None

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls()

    def ranking(self, category: Category) -> tuple[RankEntry, ...]:
        return self.rankings.get(category, ())

    @property
    def latest_heat_name(self) -> Optional[str]:
        return self.latest_heat.name if self.latest_heat else None

    @property
    def next_heat_name(self) -> Optional[str]:
        return self.next_heat.name if self.next_heat else None

    @property
    def last_heat_pilot_ids(self) -> list[str]:
        return list(self.latest_heat.pilot_ids) if self.latest_heat else []

    @property
    def next_heat_pilots(self) -> list[dict]:
        return [p.to_dict() for p in self.next_heat.pilots] if self.next_heat else []

    def to_dict(self) -> dict:
        """JSON-ready form. Deterministic for identical inputs apart from generated_at."""
        return {
            "eventName": self.event_name,
            "lapsToDo": self.laps_to_do,
            "leaderboardRound": self.leaderboard_round,
            "sortedBy": self.sorted_by.value,
            "generatedAt": self.generated_at,
            "pilots": {
                pid: {"id": p.id, "name": p.name, "photoPath": p.photo_path}
                for pid, p in self.pilots.items()
            },
            "pilotBests": {
                pid: {
                    c.value: {"time": b.time, "timestamp": b.timestamp, "heatName": b.heat_name}
                    for c, b in pb.bests.items()
                }
                for pid, pb in self.pilot_bests.items()
            },
            "rankings": {
                c.value: [e.to_dict() for e in entries]
                for c, entries in self.rankings.items()
            },
            "latestHeatName": self.latest_heat_name,
            "lastHeatPilotIds": self.last_heat_pilot_ids,
            "nextHeatName": self.next_heat_name,
            "nextHeatPilots": self.next_heat_pilots,
            "minLaps": [e.to_dict() for e in self.min_laps],
            "resultRows": [r.cells() for r in self.result_rows],
        }


class SnapshotHolder:
    """Single reference to the current snapshot, swapped in one assignment."""

    def __init__(self, initial: Optional[Snapshot] = None):
        # (version, snapshot) travel together so readers never pair them wrongly
        self._state: tuple[int, Snapshot] = (0, initial or Snapshot.empty())

    def current(self) -> Snapshot:
        return self._state[1]

    @property
    def version(self) -> int:
        return self._state[0]

    def read(self) -> tuple[int, Snapshot]:
        return self._state

    def publish(self, snapshot: Snapshot) -> int:
        if not isinstance(snapshot, Snapshot):
            raise TypeError(f"expected Snapshot, got {type(snapshot).__name__}")
        version = self._state[0] + 1
        self._state = (version, snapshot)
        return version
