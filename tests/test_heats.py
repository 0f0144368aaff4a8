"""
test_heats.py — Latest completed heat and next heat with rank annotations.
"""

from core.heats import find_latest_index, find_next_index, locate_heats
from core.metrics import RankEntry
from core.normalizer import build_race_views
from core.source_reader import load_source_tree


def _load(source):
    tree = load_source_tree(source.events_dir, channels_path=source.channels_path)
    return build_race_views(tree), tree.channels


def test_latest_is_most_recent_start_not_last_in_order(source):
    source.add_event(rounds=[("r1", 1, "Race")])
    source.add_race("h1", {"pA": [2.0, 30.0]}, race_number=1, start="2024-05-01T10:10:00")
    source.add_race("h2", {"pB": [2.0, 30.0]}, race_number=2, start="2024-05-01T10:00:00")
    source.add_race("h3", {}, race_number=3, channels={"pC": "ch1"})

    views, channels = _load(source)
    heats = locate_heats(views, channels, [])
    assert heats.latest.name == "Race 1-1"
    assert heats.latest.pilot_ids == ("pA",)
    # Next heat is searched after the latest one in round/race order
    assert heats.next.name == "Race 1-3"


def test_invalid_and_lapless_races_are_not_latest(source):
    source.add_event()
    source.add_race("h1", {"pA": [2.0, 30.0]}, race_number=1, start="2024-05-01T10:00:00")
    source.add_race("h2", {"pB": [2.0, 30.0]}, race_number=2, valid=False,
                    start="2024-05-01T11:00:00")
    views, _ = _load(source)
    assert views[find_latest_index(views)].race_id == "h1"


def test_untimed_race_counts_as_oldest(source):
    source.add_event()
    source.add_race("h1", {"pA": [2.0, 30.0]}, race_number=1, start=None)
    source.add_race("h2", {"pB": [2.0, 30.0]}, race_number=2, start="2024-05-01T09:00:00")
    views, _ = _load(source)
    assert views[find_latest_index(views)].race_id == "h2"


def test_equal_timestamps_first_in_order_wins(source):
    source.add_event()
    source.add_race("h1", {"pA": [2.0, 30.0]}, race_number=1)
    source.add_race("h2", {"pB": [2.0, 30.0]}, race_number=2)
    views, _ = _load(source)
    assert find_latest_index(views) == 0


def test_no_completed_race_next_is_first_pending(source):
    source.add_event()
    source.add_race("h1", {}, race_number=1, valid=False)
    source.add_race("h2", {}, race_number=2)
    views, channels = _load(source)

    assert find_latest_index(views) is None
    assert find_next_index(views, None) == 1
    heats = locate_heats(views, channels, [])
    assert heats.latest is None
    assert heats.next.race_id == "h2"


def test_no_pending_race(source):
    source.add_event()
    source.add_race("h1", {"pA": [2.0, 30.0]})
    views, channels = _load(source)
    assert locate_heats(views, channels, []).next is None


def test_next_heat_pilots_annotated(source):
    source.add_event()
    source.add_channels({"ch1": "R1", "ch2": "F4"})
    source.add_race("h1", {"pA": [2.0, 30.0]}, race_number=1)
    source.add_race("h2", {}, race_number=2,
                    channels={"pA": "ch1", "pB": "ch9", "ghost": "ch2"})

    ranking = [RankEntry(1, "pA", "Alice", 30.0, 1.0, "Race 1-1")]
    views, channels = _load(source)
    pilots = locate_heats(views, channels, ranking).next.pilots

    assert [p.to_dict() for p in pilots] == [
        {"pilotId": "pA", "pilotName": "Alice", "photopath": "pilots/pA.jpg",
         "band": "R1", "rank": 1, "time": 30.0},
        {"pilotId": "pB", "pilotName": "Bob", "photopath": "pilots/pB.jpg",
         "band": "N/A", "rank": None, "time": None},
        {"pilotId": None, "pilotName": "Unknown Pilot", "photopath": None,
         "band": "F4", "rank": None, "time": None},
    ]


def test_rank_without_timestamp_is_used_for_annotation(source):
    source.add_event()
    source.add_race("h1", {}, channels={"pB": "ch1"})
    ranking = [RankEntry(3, "pB", "Bob", 90.0, None, "Race 1-1")]
    views, channels = _load(source)
    pilot = locate_heats(views, channels, ranking).next.pilots[0]
    assert (pilot.rank, pilot.time) == (3, 90.0)
