"""
conftest.py — Shared fixtures: builds timing-system export trees in tmp_path.

A race is described as {pilot_id: [lap lengths]}; with holeshot=True the
first length of every pilot is lap 0. Each lap gets its own detection and a
start time counted up from the race start.
"""

import json
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

DEFAULT_PILOTS = {"pA": "Alice", "pB": "Bob", "pC": "Chiaki"}
DEFAULT_ROUNDS = [("r1", 1, "Race")]


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


class SourceTreeBuilder:
    """Writes Event/Pilots/Rounds/Race/Result/Channels files under a root."""

    def __init__(self, root: Path):
        self.root = root
        self.events_dir = root / "events"
        self.events_dir.mkdir(parents=True, exist_ok=True)
        self.channels_path = root / "httpfiles" / "Channels.json"

    def add_event(self, event_id="evt1", name="Test Cup", laps=4,
                  pilots=None, rounds=None) -> Path:
        event_dir = self.events_dir / event_id
        pilots = DEFAULT_PILOTS if pilots is None else pilots
        rounds = DEFAULT_ROUNDS if rounds is None else rounds
        write_json(event_dir / "Event.json", [{"Name": name, "Laps": laps}])
        write_json(event_dir / "Pilots.json", [
            {"ID": pid, "Name": pname, "PhotoPath": f"pilots/{pid}.jpg"}
            for pid, pname in pilots.items()
        ])
        write_json(event_dir / "Rounds.json", [
            {"ID": rid, "RoundNumber": number, "EventType": etype, "Valid": True}
            for rid, number, etype in rounds
        ])
        return event_dir

    def add_race(self, race_id, laps=None, event_id="evt1", round_id="r1",
                 race_number=1, valid=True, holeshot=True,
                 start="2024-05-01T10:00:00", results=None, channels=None,
                 invalid_laps=(), roster=()) -> Path:
        """`holeshot` is a bool or the set of pilots whose first lap is lap 0;
        `invalid_laps` holds (pilot_id, lap_number) pairs whose detection is invalid;
        `roster` adds pilots detected without any lap."""
        laps = laps or {}
        race_start = datetime.fromisoformat(start) if start else None
        lap_records, detections = [], []

        for pilot_id, lengths in laps.items():
            elapsed = 0.0
            has_holeshot = holeshot if isinstance(holeshot, bool) else pilot_id in holeshot
            first_number = 0 if has_holeshot else 1
            for i, length in enumerate(lengths):
                number = first_number + i
                det_id = f"{race_id}-{pilot_id}-{number}"
                detections.append({
                    "ID": det_id, "Pilot": pilot_id,
                    "Valid": (pilot_id, number) not in invalid_laps,
                })
                lap_records.append({
                    "ID": f"lap-{det_id}",
                    "Detection": det_id,
                    "LapNumber": number,
                    "LengthSeconds": length,
                    "StartTime": (race_start + timedelta(seconds=elapsed)).isoformat()
                    if race_start else None,
                })
                elapsed += length

        for pilot_id in roster:
            detections.append({"ID": f"{race_id}-{pilot_id}-none", "Pilot": pilot_id,
                               "Valid": True})

        race_dir = self.events_dir / event_id / race_id
        write_json(race_dir / "Race.json", [{
            "ID": race_id,
            "Round": round_id,
            "RaceNumber": race_number,
            "Valid": valid,
            "Laps": lap_records,
            "Detections": detections,
            "PilotChannels": [
                {"Pilot": pid, "Channel": ch} for pid, ch in (channels or {}).items()
            ],
        }])
        if results is not None:
            write_json(race_dir / "Result.json", [
                {"Pilot": pid, "Position": pos} for pid, pos in results.items()
            ])
        return race_dir

    def add_channels(self, channels: dict) -> Path:
        return write_json(self.channels_path, [
            {"ID": cid, "DisplayName": label} for cid, label in channels.items()
        ])


@pytest.fixture
def source(tmp_path) -> SourceTreeBuilder:
    return SourceTreeBuilder(tmp_path / "trackside")


@pytest.fixture
def config_file(tmp_path, source) -> Path:
    """Settings file pointing at the `source` tree."""
    return write_json(tmp_path / "config.json", {
        "source_root_path": str(source.root),
        "selected_event_id": "all",
        "leaderboard_round": "all",
        "sorted_by": "bestLap",
        "google_spreadsheet_id": "",
    })
