"""
sheets_client.py — Google Sheets REST client (spreadsheet export sink).

Pushes the per-category ranking sheets and the flat RaceResult sheet after
every published snapshot. Delivery is best-effort: failures raise
SinkFailure, which the scheduler logs; nothing is retried or rolled back.

Authentication uses a service-account key file (google-auth); the API
itself is called with httpx.
"""

from __future__ import annotations

import asyncio
import logging
import math
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import httpx
from google.auth.transport.requests import Request as AuthRequest
from google.oauth2 import service_account

from core.metrics import Category, RankEntry, sanitize_rows
from core.settings import Settings
from core.snapshot import Snapshot

logger = logging.getLogger("lapboard.sheets")

SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"
SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

RESULT_SHEET = "RaceResult"
RESULT_COLUMNS = 43
MIN_COLUMN_COUNT = 100
MIN_LAP_SHEET = "Minimum Lap Ranking"
RANKING_SHEETS = [
    (Category.BEST_LAP, "Best Lap"),
    (Category.CONSECUTIVE_2_LAP, "Best 2-Lap"),
    (Category.CONSECUTIVE_3_LAP, "Best 3-Lap"),
    (Category.RACE_TIME, "Best Race Time"),
]

HEADER_FORMAT = {
    "backgroundColor": {"red": 0.4, "green": 0.4, "blue": 0.4},
    "textFormat": {"bold": True, "foregroundColor": {"red": 1, "green": 1, "blue": 1}},
    "horizontalAlignment": "RIGHT",
}
BAND_COLORS = {
    "firstBandColor": {"red": 0.9, "green": 0.9, "blue": 0.9},
    "secondBandColor": {"red": 1, "green": 1, "blue": 1},
}
CELL_FIELDS = "userEnteredValue,userEnteredFormat"

RESULT_COLUMN_WIDTHS = [150, 130, 100, 100, 150, 60, 60, 80, 80, 80, 80, 80, 80]
RANKING_COLUMN_WIDTHS = [50, 150, 60, 130]


class SinkFailure(Exception):
    """The spreadsheet service rejected or did not answer a request."""


def result_headers(laps_to_do: int) -> list[str]:
    return [
        "Event", "HEAT", "Date", "Start time", "Pilot", "Position", "Laps",
        "Finish time", f"Race Time ({laps_to_do}Lap)", "Best LAP",
        "2 Consecutive", "3 Consecutive", "HS(LAP0)",
        *(f"LAP{i}" for i in range(1, 31)),
    ]


def service_account_token(credentials_path: Path) -> str:
    """Mint an OAuth access token from a service-account key file (blocking)."""
    creds = service_account.Credentials.from_service_account_file(
        str(credentials_path), scopes=SCOPES,
    )
    creds.refresh(AuthRequest())
    return creds.token


# ---------------------------------------------------------------------------
# Request builders (pure)
# ---------------------------------------------------------------------------

def _is_number(cell: Any) -> bool:
    return (isinstance(cell, (int, float)) and not isinstance(cell, bool)
            and math.isfinite(cell))


def _header_row(labels: Sequence[str]) -> dict:
    return {"values": [
        {"userEnteredValue": {"stringValue": label}, "userEnteredFormat": HEADER_FORMAT}
        for label in labels
    ]}


def result_cell(col: int, cell: Any) -> dict:
    """Cell data for RaceResult column `col` (0-based)."""
    fmt: dict[str, Any] = {"horizontalAlignment": "RIGHT"}
    if not _is_number(cell):
        return {"userEnteredValue": {"stringValue": str(cell)}, "userEnteredFormat": fmt}
    if col == 2:
        fmt["numberFormat"] = {"type": "DATE", "pattern": "yyyy-mm-dd"}
    elif col == 3:
        fmt["numberFormat"] = {"type": "TIME", "pattern": "hh:mm:ss"}
    elif 7 <= col < RESULT_COLUMNS:
        fmt["numberFormat"] = {"type": "NUMBER", "pattern": "0.000"}
    return {"userEnteredValue": {"numberValue": cell}, "userEnteredFormat": fmt}


def _column_width(sheet_id: int, start: int, end: int, size: int) -> dict:
    return {"updateDimensionProperties": {
        "range": {"sheetId": sheet_id, "dimension": "COLUMNS",
                  "startIndex": start, "endIndex": end},
        "properties": {"pixelSize": size},
        "fields": "pixelSize",
    }}


def _banding(sheet_id: int, start_row: int, end_row: int, end_col: int) -> dict:
    return {"addBanding": {"bandedRange": {
        "range": {"sheetId": sheet_id, "startRowIndex": start_row, "endRowIndex": end_row,
                  "startColumnIndex": 0, "endColumnIndex": end_col},
        "rowProperties": BAND_COLORS,
    }}}


def build_result_sheet_requests(sheet_id: int, rows: Sequence[Sequence[Any]],
                                laps_to_do: int, column_count: int = 0) -> list[dict]:
    """batchUpdate requests that rewrite the RaceResult sheet. `rows` must be sanitized."""
    requests: list[dict] = []
    if column_count < MIN_COLUMN_COUNT:
        requests.append({"updateSheetProperties": {
            "properties": {"sheetId": sheet_id,
                           "gridProperties": {"columnCount": MIN_COLUMN_COUNT}},
            "fields": "gridProperties.columnCount",
        }})
    requests.append({"updateSheetProperties": {
        "properties": {"sheetId": sheet_id, "index": 0}, "fields": "index",
    }})
    requests.append({"updateCells": {"range": {"sheetId": sheet_id}, "fields": CELL_FIELDS}})
    requests.append({"updateCells": {
        "rows": [_header_row(result_headers(laps_to_do))],
        "range": {"sheetId": sheet_id, "startRowIndex": 0,
                  "startColumnIndex": 0, "endColumnIndex": RESULT_COLUMNS},
        "fields": CELL_FIELDS,
    }})

    if rows:
        requests.append(_banding(sheet_id, 1, 1 + len(rows), RESULT_COLUMNS))
        requests.append({"updateCells": {
            "rows": [{"values": [result_cell(i, c) for i, c in enumerate(row)]} for row in rows],
            "start": {"sheetId": sheet_id, "rowIndex": 1, "columnIndex": 0},
            "fields": CELL_FIELDS,
        }})

    for i, size in enumerate(RESULT_COLUMN_WIDTHS):
        requests.append(_column_width(sheet_id, i, i + 1, size))
    requests.append(_column_width(sheet_id, 13, RESULT_COLUMNS, 60))
    return requests


def build_ranking_sheet_requests(sheet_id: int, title: str, index: int,
                                 entries: Sequence[RankEntry]) -> list[dict]:
    """batchUpdate requests for one 'Rank / Pilot / Time / HEAT' sheet."""
    right = {"horizontalAlignment": "RIGHT"}
    requests: list[dict] = [
        {"updateSheetProperties": {
            "properties": {"sheetId": sheet_id, "index": index}, "fields": "index"}},
        {"updateCells": {"range": {"sheetId": sheet_id}, "fields": CELL_FIELDS}},
        {"updateCells": {
            "rows": [{"values": [{
                "userEnteredValue": {"stringValue": title},
                "userEnteredFormat": {"textFormat": {"fontSize": 14, "bold": True},
                                      "horizontalAlignment": "CENTER"},
            }]}],
            "start": {"sheetId": sheet_id, "rowIndex": 0, "columnIndex": 0},
            "fields": CELL_FIELDS,
        }},
        {"mergeCells": {
            "range": {"sheetId": sheet_id, "startRowIndex": 0, "endRowIndex": 1,
                      "startColumnIndex": 0, "endColumnIndex": 4},
            "mergeType": "MERGE_ALL",
        }},
        {"updateCells": {
            "rows": [_header_row(["Rank", "Pilot", "Time", "HEAT"])],
            "start": {"sheetId": sheet_id, "rowIndex": 2, "columnIndex": 0},
            "fields": CELL_FIELDS,
        }},
    ]

    if entries:
        requests.append(_banding(sheet_id, 3, 3 + len(entries), 4))
        requests.append({"updateCells": {
            "rows": [{"values": [
                {"userEnteredValue": {"numberValue": e.rank}, "userEnteredFormat": right},
                {"userEnteredValue": {"stringValue": e.pilot_name}, "userEnteredFormat": right},
                {"userEnteredValue": {"numberValue": e.time},
                 "userEnteredFormat": {**right, "numberFormat": {"type": "NUMBER",
                                                                 "pattern": "0.000"}}},
                {"userEnteredValue": {"stringValue": e.heat_name or "-"},
                 "userEnteredFormat": right},
            ]} for e in entries],
            "start": {"sheetId": sheet_id, "rowIndex": 3, "columnIndex": 0},
            "fields": CELL_FIELDS,
        }})

    border_range = {"sheetId": sheet_id, "startRowIndex": 0,
                    "endRowIndex": 3 + len(entries),
                    "startColumnIndex": 0, "endColumnIndex": 4}
    solid = {"style": "SOLID", "width": 1}
    requests.append({"updateBorders": {"range": border_range, "top": solid,
                                       "bottom": solid, "left": solid, "right": solid}})
    for i, size in enumerate(RANKING_COLUMN_WIDTHS):
        requests.append(_column_width(sheet_id, i, i + 1, size))
    return requests


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SheetsClient:
    """Thin async wrapper over spreadsheets.get / spreadsheets.batchUpdate."""

    def __init__(self, spreadsheet_id: str, token_provider: Callable[[], str],
                 client: Optional[httpx.AsyncClient] = None,
                 base_url: str = SHEETS_API):
        self.spreadsheet_id = spreadsheet_id
        self.token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._token: Optional[str] = None

    async def __aenter__(self) -> "SheetsClient":
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=15.0,
                headers={"User-Agent": "lapboard/1.0"},
            )
        return self

    async def __aexit__(self, *exc) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def _url(self) -> str:
        return f"{self.base_url}/{self.spreadsheet_id}"

    async def _headers(self) -> dict:
        # One token per client session
        if self._token is None:
            self._token = await asyncio.to_thread(self.token_provider)
        return {"Authorization": f"Bearer {self._token}"}

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = await self._client.request(method, url, headers=await self._headers(),
                                              **kwargs)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise SinkFailure(f"{method} {url}: {e}") from e
        return resp.json() if resp.content else {}

    async def get_sheets(self) -> list[dict]:
        data = await self._request(
            "GET", self._url, params={"fields": "sheets(properties,bandedRanges)"},
        )
        return data.get("sheets", [])

    async def batch_update(self, requests: list[dict]) -> dict:
        return await self._request("POST", f"{self._url}:batchUpdate",
                                   json={"requests": requests})

    async def ensure_sheet(self, title: str, index: int) -> dict:
        """Return the sheet's properties, creating it (or dropping stale banding)."""
        sheet = next((s for s in await self.get_sheets()
                      if s.get("properties", {}).get("title") == title), None)

        if sheet is None:
            logger.info('Sheet "%s" not found, creating it...', title)
            reply = await self.batch_update([{"addSheet": {"properties": {
                "title": title, "index": index,
                "gridProperties": {"rowCount": 1000, "columnCount": MIN_COLUMN_COUNT},
            }}}])
            return reply["replies"][0]["addSheet"]["properties"]

        bands = sheet.get("bandedRanges") or []
        if bands:
            try:
                await self.batch_update([
                    {"deleteBanding": {"bandedRangeId": b["bandedRangeId"]}} for b in bands
                ])
            except SinkFailure as e:
                logger.warning('Could not delete old banding on "%s": %s', title, e)
        return sheet["properties"]

    async def update_result_sheet(self, rows: Sequence[Sequence[Any]], laps_to_do: int) -> None:
        props = await self.ensure_sheet(RESULT_SHEET, 0)
        column_count = props.get("gridProperties", {}).get("columnCount", 0)
        await self.batch_update(build_result_sheet_requests(
            props["sheetId"], rows, laps_to_do, column_count,
        ))
        logger.info('Updated sheet "%s" (%d rows)', RESULT_SHEET, len(rows))

    async def update_ranking_sheet(self, title: str, index: int,
                                   entries: Sequence[RankEntry]) -> None:
        props = await self.ensure_sheet(title, index)
        await self.batch_update(build_ranking_sheet_requests(
            props["sheetId"], title, index, entries,
        ))
        logger.info('Updated sheet "%s" (%d entries)', title, len(entries))

    async def push_snapshot(self, snapshot: Snapshot) -> None:
        """Update every sheet. A failing sheet does not stop the ones after it."""
        failed = []
        updates = [
            (title, partial(self.update_ranking_sheet, title, index, snapshot.ranking(category)))
            for index, (category, title) in enumerate(RANKING_SHEETS, start=1)
        ]
        updates.append((MIN_LAP_SHEET, partial(
            self.update_ranking_sheet, MIN_LAP_SHEET, len(RANKING_SHEETS) + 1, snapshot.min_laps)))
        rows = sanitize_rows(row.cells() for row in snapshot.result_rows)
        updates.append((RESULT_SHEET, partial(self.update_result_sheet, rows, snapshot.laps_to_do)))

        for title, update in updates:
            try:
                await update()
            except SinkFailure as e:
                logger.error('Error updating sheet "%s": %s', title, e)
                failed.append(title)

        if failed:
            raise SinkFailure(f"{len(failed)} sheet(s) failed: {', '.join(failed)}")


def make_sheets_sink(load: Callable[[], Settings]):
    """Scheduler sink that reads the sink settings at delivery time."""

    async def push_to_sheets(snapshot: Snapshot) -> None:
        settings = await asyncio.to_thread(load)
        if not settings.google_spreadsheet_id:
            logger.warning("google_spreadsheet_id is not set. Skipping spreadsheet update.")
            return
        credentials = settings.credentials_path

        async with SheetsClient(settings.google_spreadsheet_id,
                                lambda: service_account_token(credentials)) as client:
            await client.push_snapshot(snapshot)

    return push_to_sheets
