"""
metrics.py — Per-pilot "best of" categories, rankings and the flat
race-result table.

Each race contributes one LapStats per pilot. Every category value that is
finite is offered to the pilot's running best; a value replaces the current
best when it is strictly faster, or equally fast with an earlier source
timestamp. A category stays unset until a qualifying value is seen, so a
pilot without laps never appears in a ranking.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Optional, Sequence

if TYPE_CHECKING:
    from core.normalizer import RaceView
    from core.source_reader import Lap, Pilot

logger = logging.getLogger("lapboard.metrics")

SENTINEL_LAP = 999.0
SENTINEL_RACE_TIME = 9999.0
MIN_LAP_RANKING_SIZE = 100
LAP_SLOTS = 31  # slot 0 = holeshot, 1..30 = laps


class Category(str, Enum):
    BEST_LAP = "bestLap"
    CONSECUTIVE_2_LAP = "consecutive2Lap"
    CONSECUTIVE_3_LAP = "consecutive3Lap"
    RACE_TIME = "raceTime"
    FIRST_1_LAP_WITHOUT_HS = "first1LapWithoutHs"
    FIRST_2_LAPS_WITHOUT_HS = "first2LapsWithoutHs"
    FIRST_3_LAPS_WITHOUT_HS = "first3LapsWithoutHs"
    FIRST_1_LAP_WITH_HS = "first1LapWithHs"
    FIRST_2_LAPS_WITH_HS = "first2LapsWithHs"
    FIRST_3_LAPS_WITH_HS = "first3LapsWithHs"

    @property
    def display_name(self) -> str:
        return CATEGORY_DISPLAY_NAMES[self]


CATEGORY_DISPLAY_NAMES = {
    Category.BEST_LAP: "CONSECUTIVE 1 LAP (WITHOUT HS)",
    Category.CONSECUTIVE_2_LAP: "CONSECUTIVE 2 LAPS (WITHOUT HS)",
    Category.CONSECUTIVE_3_LAP: "CONSECUTIVE 3 LAPS (WITHOUT HS)",
    Category.RACE_TIME: "Race Time",
    Category.FIRST_1_LAP_WITHOUT_HS: "First 1 LAP (WITHOUT HS)",
    Category.FIRST_2_LAPS_WITHOUT_HS: "First 2 LAPS (WITHOUT HS)",
    Category.FIRST_3_LAPS_WITHOUT_HS: "First 3 LAPS (WITHOUT HS)",
    Category.FIRST_1_LAP_WITH_HS: "First 1 LAP (WITH HS)",
    Category.FIRST_2_LAPS_WITH_HS: "First 2 LAPS (WITH HS)",
    Category.FIRST_3_LAPS_WITH_HS: "First 3 LAPS (WITH HS)",
}


# ---------------------------------------------------------------------------
# Per-race lap statistics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LapStats:
    """Derived values for one pilot in one race. None = no qualifying value."""

    lap_count: int
    total_time: Optional[float]
    holeshot: Optional[float]
    racing_laps: tuple[float, ...]
    best_lap: Optional[float]
    consecutive_2: Optional[float]
    consecutive_3: Optional[float]
    race_time: Optional[float]
    lap_times: tuple[Optional[float], ...]

    def first_laps(self, k: int, with_holeshot: bool) -> Optional[float]:
        """Sum of the first k racing laps, optionally with the holeshot added."""
        if len(self.racing_laps) < k:
            return None
        total = sum(self.racing_laps[:k])
        if with_holeshot:
            if self.holeshot is None:
                return None
            total += self.holeshot
        return total


def best_window(times: Sequence[float], size: int) -> Optional[float]:
    """Minimum sum of `size` contiguous values (sliding window). None if too few."""
    if size <= 0 or len(times) < size:
        return None
    # Each window summed directly, no running total, so no float drift
    return min(sum(times[i:i + size]) for i in range(len(times) - size + 1))


def compute_lap_stats(laps: Sequence["Lap"], laps_to_do: int) -> LapStats:
    """`laps` must be one pilot's valid laps sorted by lap number."""
    racing = [lap for lap in laps if lap.lap_number >= 1]
    racing_times = tuple(lap.length_seconds for lap in racing)
    holeshot_lap = next((lap for lap in laps if lap.lap_number == 0), None)

    race_time = None
    if laps_to_do >= 1:
        needed = laps_to_do + 1 if holeshot_lap else laps_to_do
        if len(laps) >= needed:
            race_time = sum(lap.length_seconds for lap in laps[:needed])

    lap_times: list[Optional[float]] = [None] * LAP_SLOTS
    if holeshot_lap:
        lap_times[0] = holeshot_lap.length_seconds
    for lap in racing:
        if lap.lap_number < LAP_SLOTS:
            lap_times[lap.lap_number] = lap.length_seconds

    return LapStats(
        lap_count=len(racing),
        total_time=sum(lap.length_seconds for lap in laps) if laps else None,
        holeshot=holeshot_lap.length_seconds if holeshot_lap else None,
        racing_laps=racing_times,
        best_lap=min(racing_times) if racing_times else None,
        consecutive_2=best_window(racing_times, 2),
        consecutive_3=best_window(racing_times, 3),
        race_time=race_time,
        lap_times=tuple(lap_times),
    )


CATEGORY_VALUES: dict[Category, Callable[[LapStats], Optional[float]]] = {
    Category.BEST_LAP: lambda s: s.best_lap,
    Category.CONSECUTIVE_2_LAP: lambda s: s.consecutive_2,
    Category.CONSECUTIVE_3_LAP: lambda s: s.consecutive_3,
    Category.RACE_TIME: lambda s: s.race_time,
    Category.FIRST_1_LAP_WITHOUT_HS: lambda s: s.first_laps(1, with_holeshot=False),
    Category.FIRST_2_LAPS_WITHOUT_HS: lambda s: s.first_laps(2, with_holeshot=False),
    Category.FIRST_3_LAPS_WITHOUT_HS: lambda s: s.first_laps(3, with_holeshot=False),
    Category.FIRST_1_LAP_WITH_HS: lambda s: s.first_laps(1, with_holeshot=True),
    Category.FIRST_2_LAPS_WITH_HS: lambda s: s.first_laps(2, with_holeshot=True),
    Category.FIRST_3_LAPS_WITH_HS: lambda s: s.first_laps(3, with_holeshot=True),
}


# ---------------------------------------------------------------------------
# Pilot bests
# ---------------------------------------------------------------------------

def order_key(time: float, timestamp: Optional[float]) -> tuple:
    """Faster first, then earlier source timestamp; missing timestamps last."""
    return (time, timestamp is None, timestamp if timestamp is not None else 0.0)


@dataclass(frozen=True)
class CategoryBest:
    time: float
    timestamp: Optional[float]
    heat_name: str


@dataclass(frozen=True)
class PilotBest:
    pilot_id: str
    bests: Mapping[Category, CategoryBest]

    def get(self, category: Category) -> Optional[CategoryBest]:
        return self.bests.get(category)


class PilotBestBuilder:
    """Mutable accumulator for one pilot, frozen into a PilotBest at run end."""

    def __init__(self, pilot_id: str):
        self.pilot_id = pilot_id
        self._bests: dict[Category, CategoryBest] = {}

    def offer(self, category: Category, time: Optional[float],
              timestamp: Optional[float], heat_name: str) -> bool:
        if time is None or not math.isfinite(time):
            return False
        current = self._bests.get(category)
        if current is not None and not (
            order_key(time, timestamp) < order_key(current.time, current.timestamp)
        ):
            return False
        self._bests[category] = CategoryBest(time, timestamp, heat_name)
        return True

    def offer_stats(self, stats: LapStats, timestamp: Optional[float],
                    heat_name: str) -> None:
        for category, value_of in CATEGORY_VALUES.items():
            self.offer(category, value_of(stats), timestamp, heat_name)

    def freeze(self) -> PilotBest:
        ordered = {c: self._bests[c] for c in Category if c in self._bests}
        return PilotBest(self.pilot_id, MappingProxyType(ordered))


@dataclass(frozen=True)
class LapEntry:
    time: float
    pilot_id: str
    pilot_name: str
    heat_name: str
    timestamp: Optional[float]


@dataclass
class Aggregate:
    pilot_bests: dict[str, PilotBest] = field(default_factory=dict)
    pilots: dict[str, "Pilot"] = field(default_factory=dict)
    lap_pool: list[LapEntry] = field(default_factory=list)


def aggregate(views: Iterable["RaceView"]) -> Aggregate:
    """Fold the in-scope valid races into per-pilot bests and the lap pool."""
    builders: dict[str, PilotBestBuilder] = {}
    result = Aggregate()

    for view in views:
        for pilot_id in view.pilot_ids:
            pilot = view.pilots.get(pilot_id)
            if pilot is None:
                logger.debug("Race %s: unknown pilot %s", view.name, pilot_id)
                continue
            result.pilots.setdefault(pilot_id, pilot)
            builder = builders.setdefault(pilot_id, PilotBestBuilder(pilot_id))

            laps = view.laps_for(pilot_id)
            stats = compute_lap_stats(laps, view.laps_to_do)
            builder.offer_stats(stats, view.timestamp, view.name)

            for lap in laps:
                if lap.lap_number >= 1 and math.isfinite(lap.length_seconds):
                    result.lap_pool.append(LapEntry(
                        time=lap.length_seconds,
                        pilot_id=pilot_id,
                        pilot_name=pilot.name,
                        heat_name=view.name,
                        timestamp=view.timestamp,
                    ))

    result.pilot_bests = {pid: b.freeze() for pid, b in builders.items()}
    return result


# ---------------------------------------------------------------------------
# Rankings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RankEntry:
    rank: int
    pilot_id: str
    pilot_name: str
    time: float
    timestamp: Optional[float]
    heat_name: str

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "pilotId": self.pilot_id,
            "pilotName": self.pilot_name,
            "time": self.time,
            "timestamp": self.timestamp,
            "heatName": self.heat_name,
        }


def rank_category(pilot_bests: Mapping[str, PilotBest], pilots: Mapping[str, "Pilot"],
                  category: Category) -> list[RankEntry]:
    """Pilots with a value in `category`, best first. Stable on first-seen order."""
    candidates = []
    for pilot_id, pilot_best in pilot_bests.items():
        best = pilot_best.get(category)
        if best is not None:
            candidates.append((pilot_id, best))
    candidates.sort(key=lambda item: order_key(item[1].time, item[1].timestamp))

    ranking = []
    for i, (pilot_id, best) in enumerate(candidates):
        pilot = pilots.get(pilot_id)
        ranking.append(RankEntry(
            rank=i + 1,
            pilot_id=pilot_id,
            pilot_name=pilot.name if pilot else pilot_id,
            time=best.time,
            timestamp=best.timestamp,
            heat_name=best.heat_name,
        ))
    return ranking


def min_lap_ranking(pool: Iterable[LapEntry],
                    limit: int = MIN_LAP_RANKING_SIZE) -> list[RankEntry]:
    """Fastest individual laps across all pilots."""
    fastest = sorted(pool, key=lambda e: order_key(e.time, e.timestamp))[:limit]
    return [
        RankEntry(i + 1, e.pilot_id, e.pilot_name, e.time, e.timestamp, e.heat_name)
        for i, e in enumerate(fastest)
    ]


# ---------------------------------------------------------------------------
# Flat result table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResultRow:
    event_name: str
    heat_name: str
    timestamp: Optional[float]
    pilot_id: str
    pilot_name: str
    position: Optional[int]
    lap_count: int
    total_time: Optional[float]
    race_time: float
    best_lap: float
    consecutive_2: float
    consecutive_3: float
    lap_times: tuple[Optional[float], ...]

    def cells(self) -> list[Any]:
        """Export layout: event, heat, date, start time, pilot, position, laps,
        finish time, N-lap race time, best lap, 2-lap, 3-lap, HS, LAP1..LAP30.
        Absent values are blank strings; anything else passes through as-is.
        """
        ts = self.timestamp if self.timestamp is not None else ""
        return [
            self.event_name, self.heat_name, ts, ts, self.pilot_name,
            self.position if self.position is not None else "",
            self.lap_count,
            self.total_time if self.total_time is not None else "",
            self.race_time, self.best_lap, self.consecutive_2, self.consecutive_3,
            *("" if t is None else t for t in self.lap_times),
        ]


def _or_sentinel(value: Optional[float], sentinel: float) -> float:
    return sentinel if value is None else value


def build_result_rows(views: Iterable["RaceView"]) -> list[ResultRow]:
    """One row per known pilot per valid race, oldest race first.

    Not filtered by the leaderboard scope. Rows without a start timestamp go last.
    """
    rows = []
    for view in views:
        for pilot_id in view.pilot_ids:
            pilot = view.pilots.get(pilot_id)
            if pilot is None:
                continue
            stats = compute_lap_stats(view.laps_for(pilot_id), view.laps_to_do)
            rows.append(ResultRow(
                event_name=view.event_name,
                heat_name=view.name,
                timestamp=view.timestamp,
                pilot_id=pilot_id,
                pilot_name=pilot.name,
                position=view.position_for(pilot_id),
                lap_count=stats.lap_count,
                total_time=stats.total_time,
                race_time=_or_sentinel(stats.race_time, SENTINEL_RACE_TIME),
                best_lap=_or_sentinel(stats.best_lap, SENTINEL_LAP),
                consecutive_2=_or_sentinel(stats.consecutive_2, SENTINEL_LAP),
                consecutive_3=_or_sentinel(stats.consecutive_3, SENTINEL_LAP),
                lap_times=stats.lap_times,
            ))
    rows.sort(key=lambda r: (r.timestamp is None, r.timestamp or 0.0))
    return rows


def _is_invalid_cell(cell: Any) -> bool:
    return cell is None or (isinstance(cell, float) and not math.isfinite(cell))


def sanitize_rows(rows: Iterable[Sequence[Any]]) -> list[list[Any]]:
    """Return a copy with None / NaN / ±inf cells replaced by ''."""
    sanitized = []
    for row_index, row in enumerate(rows):
        clean = []
        for col_index, cell in enumerate(row):
            if _is_invalid_cell(cell):
                logger.warning(
                    "Invalid data in result row %d, column %d (value: %r). Replacing with blank.",
                    row_index + 1, col_index + 1, cell,
                )
                cell = ""
            clean.append(cell)
        sanitized.append(clean)
    return sanitized
