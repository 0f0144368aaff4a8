"""
test_sheets.py — Spreadsheet sink: request builders and the REST client
against an in-memory spreadsheet (httpx.MockTransport).
"""

import asyncio
import json
from datetime import datetime

import httpx
import pytest

from core.metrics import Category, RankEntry
from core.pipeline import build_snapshot
from core.settings import RunConfig, Settings
from core.sheets_client import (
    MIN_COLUMN_COUNT, RESULT_COLUMNS, SheetsClient, SinkFailure,
    build_ranking_sheet_requests, build_result_sheet_requests, make_sheets_sink,
    result_cell, result_headers,
)
from core.snapshot import Snapshot

BASE = "https://sheets.test/v4/spreadsheets"


class FakeSpreadsheet:
    """Answers spreadsheets.get and spreadsheets.batchUpdate from memory."""

    def __init__(self, sheets=None, fail_status=None, fail_titles=(), fail_banding=False):
        self.sheets = list(sheets or [])
        self.fail_status = fail_status
        self.fail_titles = set(fail_titles)
        self.fail_banding = fail_banding
        self.batches = []
        self.auth = set()
        self._next_id = 100

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.auth.add(request.headers.get("Authorization"))
        if self.fail_status:
            return httpx.Response(self.fail_status, json={"error": "nope"})
        if request.method == "GET":
            return httpx.Response(200, json={"sheets": self.sheets})

        assert request.url.path.endswith(":batchUpdate")
        requests = json.loads(request.content)["requests"]
        if any(r.get("addSheet", {}).get("properties", {}).get("title") in self.fail_titles
               for r in requests):
            return httpx.Response(429, json={"error": "quota"})
        if self.fail_banding and any("deleteBanding" in r for r in requests):
            return httpx.Response(400, json={"error": "no such banding"})
        self.batches.append(requests)
        replies = []
        for r in requests:
            if "addSheet" in r:
                props = {**r["addSheet"]["properties"], "sheetId": self._next_id}
                self._next_id += 1
                self.sheets.append({"properties": props})
                replies.append({"addSheet": {"properties": props}})
            else:
                replies.append({})
        return httpx.Response(200, json={"replies": replies})

    def requests_of(self, kind):
        return [r[kind] for batch in self.batches for r in batch if kind in r]


def run_client(fake, coro_fn, token_calls=None):
    def token():
        if token_calls is not None:
            token_calls.append(1)
        return "tok"

    async def main():
        transport = httpx.MockTransport(fake)
        async with httpx.AsyncClient(transport=transport) as http:
            client = SheetsClient("sheet123", token, client=http, base_url=BASE)
            return await coro_fn(client)

    return asyncio.run(main())


# ─── Builders ────────────────────────────────────────────────────────

def test_result_headers():
    headers = result_headers(3)
    assert len(headers) == RESULT_COLUMNS
    assert headers[8] == "Race Time (3Lap)"
    assert headers[12] == "HS(LAP0)"
    assert headers[-1] == "LAP30"


def test_result_cell_formats():
    assert result_cell(2, 45413.5)["userEnteredFormat"]["numberFormat"]["type"] == "DATE"
    assert result_cell(3, 45413.5)["userEnteredFormat"]["numberFormat"]["type"] == "TIME"
    assert result_cell(9, 27.0)["userEnteredValue"] == {"numberValue": 27.0}
    assert result_cell(9, 27.0)["userEnteredFormat"]["numberFormat"]["pattern"] == "0.000"
    assert result_cell(5, 1)["userEnteredFormat"] == {"horizontalAlignment": "RIGHT"}
    assert result_cell(4, "Alice")["userEnteredValue"] == {"stringValue": "Alice"}
    assert result_cell(14, "")["userEnteredValue"] == {"stringValue": ""}


def test_result_sheet_requests():
    rows = [["Cup", "Race 1-1", 1.0, 1.0, "Alice", 1, 2] + [""] * 36]
    requests = build_result_sheet_requests(7, rows, 4, column_count=26)
    assert requests[0]["updateSheetProperties"]["properties"]["gridProperties"] == {
        "columnCount": MIN_COLUMN_COUNT}
    header = requests[3]["updateCells"]["rows"][0]["values"]
    assert header[8]["userEnteredValue"]["stringValue"] == "Race Time (4Lap)"
    assert any("addBanding" in r for r in requests)

    wide = build_result_sheet_requests(7, [], 4, column_count=MIN_COLUMN_COUNT)
    assert not any("gridProperties" in r.get("updateSheetProperties", {}).get("properties", {})
                   for r in wide)
    assert not any("addBanding" in r for r in wide)


def test_ranking_sheet_requests():
    entries = [RankEntry(1, "pA", "Alice", 27.0, 1.0, "Race 1-1"),
               RankEntry(2, "pB", "Bob", 30.0, 1.0, "")]
    requests = build_ranking_sheet_requests(5, "Best Lap", 1, entries)
    body = [r for r in requests if "updateCells" in r and "rows" in r["updateCells"]]
    title, header, data = body
    assert title["updateCells"]["rows"][0]["values"][0]["userEnteredValue"] == {
        "stringValue": "Best Lap"}
    values = data["updateCells"]["rows"][1]["values"]
    assert values[0]["userEnteredValue"] == {"numberValue": 2}
    assert values[3]["userEnteredValue"] == {"stringValue": "-"}


# ─── Client ──────────────────────────────────────────────────────────

def test_push_snapshot_creates_missing_sheets(source):
    source.add_event(laps=3)
    source.add_race("race1", {"pA": [2.0, 28.0, 27.0, 27.5, 29.0], "pB": [30.0, 31.0]},
                    holeshot={"pA"})
    snap = build_snapshot(RunConfig(source.events_dir, source.channels_path, "all", "all",
                                    Category.BEST_LAP), now=datetime(2024, 5, 1))
    fake = FakeSpreadsheet()
    token_calls = []

    run_client(fake, lambda client: client.push_snapshot(snap), token_calls)

    created = [r["properties"]["title"] for r in fake.requests_of("addSheet")]
    assert created == ["Best Lap", "Best 2-Lap", "Best 3-Lap", "Best Race Time",
                       "Minimum Lap Ranking", "RaceResult"]
    assert fake.auth == {"Bearer tok"}
    assert len(token_calls) == 1

    result_rows = fake.batches[-1]
    data = [r["updateCells"] for r in result_rows
            if "updateCells" in r and "start" in r["updateCells"]]
    assert len(data[0]["rows"]) == 2


def test_existing_sheet_banding_is_dropped():
    fake = FakeSpreadsheet(sheets=[{
        "properties": {"sheetId": 9, "title": "Best Lap", "index": 1},
        "bandedRanges": [{"bandedRangeId": 41}, {"bandedRangeId": 42}],
    }])
    props = run_client(fake, lambda client: client.ensure_sheet("Best Lap", 1))
    assert props["sheetId"] == 9
    assert fake.requests_of("deleteBanding") == [{"bandedRangeId": 41}, {"bandedRangeId": 42}]
    assert fake.requests_of("addSheet") == []


def test_http_error_raises_sink_failure():
    fake = FakeSpreadsheet(fail_status=500)
    with pytest.raises(SinkFailure):
        run_client(fake, lambda client: client.get_sheets())


def test_sink_skips_without_spreadsheet_id(caplog):
    sink = make_sheets_sink(lambda: Settings(google_spreadsheet_id=""))
    asyncio.run(sink(Snapshot()))
    assert "Skipping spreadsheet update" in caplog.text


def test_failing_sheet_does_not_block_the_others(source):
    source.add_event(laps=3)
    source.add_race("race1", {"pA": [2.0, 28.0, 27.0, 27.5]}, holeshot={"pA"})
    snap = build_snapshot(RunConfig(source.events_dir, source.channels_path, "all", "all",
                                    Category.BEST_LAP), now=datetime(2024, 5, 1))
    fake = FakeSpreadsheet(fail_titles={"Best Lap"})

    with pytest.raises(SinkFailure, match="Best Lap"):
        run_client(fake, lambda client: client.push_snapshot(snap))

    created = [r["properties"]["title"] for r in fake.requests_of("addSheet")]
    assert created == ["Best 2-Lap", "Best 3-Lap", "Best Race Time",
                       "Minimum Lap Ranking", "RaceResult"]
    result_data = [r["updateCells"] for r in fake.batches[-1]
                   if "updateCells" in r and "start" in r["updateCells"]]
    assert len(result_data[0]["rows"]) == 1


def test_banding_delete_failure_is_tolerated(caplog):
    fake = FakeSpreadsheet(sheets=[{
        "properties": {"sheetId": 9, "title": "RaceResult", "index": 0},
        "bandedRanges": [{"bandedRangeId": 41}],
    }], fail_banding=True)
    props = run_client(fake, lambda client: client.ensure_sheet("RaceResult", 0))
    assert props["sheetId"] == 9
    assert "Could not delete old banding" in caplog.text
