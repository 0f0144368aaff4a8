"""
pipeline.py — One full recomputation: source tree → race views → metrics →
heats → Snapshot. Always recomputes from the complete current tree.
"""

from __future__ import annotations

import logging
from datetime import datetime
from types import MappingProxyType
from typing import Optional

from core.heats import locate_heats
from core.metrics import (
    Category, aggregate, build_result_rows, min_lap_ranking, rank_category,
)
from core.normalizer import build_race_views, matches_round, valid_races
from core.settings import RunConfig
from core.snapshot import Snapshot
from core.source_reader import load_source_tree

logger = logging.getLogger("lapboard.pipeline")


def build_snapshot(config: RunConfig, now: Optional[datetime] = None) -> Snapshot:
    """Run the whole pipeline. Raises SourceUnavailable / MalformedRecord."""
    tree = load_source_tree(config.events_dir, config.selected_event_id,
                            config.channels_path)

    views = build_race_views(tree)
    valid = valid_races(views)
    scoped = [v for v in valid if matches_round(v, config.leaderboard_round)]

    agg = aggregate(scoped)
    rankings = {
        category: tuple(rank_category(agg.pilot_bests, agg.pilots, category))
        for category in Category
    }
    heats = locate_heats(views, tree.channels, rankings[config.sorted_by])
    rows = build_result_rows(valid)

    # The last loaded event names the board
    event_name, laps_to_do = "", 4
    if tree.events:
        event_name = tree.events[-1].info.name
        laps_to_do = tree.events[-1].info.laps

    logger.info("Pipeline: %d races (%d valid, %d in scope), %d pilots, %d result rows",
                len(views), len(valid), len(scoped), len(agg.pilot_bests), len(rows))

    return Snapshot(
        event_name=event_name,
        laps_to_do=laps_to_do,
        leaderboard_round=config.leaderboard_round,
        sorted_by=config.sorted_by,
        pilots=MappingProxyType(dict(agg.pilots)),
        pilot_bests=MappingProxyType(dict(agg.pilot_bests)),
        rankings=MappingProxyType(rankings),
        latest_heat=heats.latest,
        next_heat=heats.next,
        min_laps=tuple(min_lap_ranking(agg.lap_pool)),
        result_rows=tuple(rows),
        generated_at=(now or datetime.now()).isoformat(timespec="seconds"),
    )
