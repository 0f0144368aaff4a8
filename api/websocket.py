"""
websocket.py — Snapshot notices for leaderboard pages.

Server → Client: {"type": "snapshot", "version", "eventName", "latestHeatName",
"nextHeatName", "generatedAt"} after every publication. Clients re-fetch
/api/leaderboard on receipt. Nothing is sent on connect; a page loads the
current snapshot over HTTP.

Single endpoint: ws://{host}:{port}/ws
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from core.snapshot import Snapshot

logger = logging.getLogger("lapboard.ws")

router = APIRouter()


def snapshot_notice(snapshot: Snapshot, version: int) -> dict:
    return {
        "type": "snapshot",
        "version": version,
        "eventName": snapshot.event_name,
        "latestHeatName": snapshot.latest_heat_name,
        "nextHeatName": snapshot.next_heat_name,
        "generatedAt": snapshot.generated_at,
    }


class SnapshotNotifier:
    """Leaderboard pages listening for new snapshots.

    A page that cannot take a notice is dropped; it reconnects and
    re-fetches on its own.
    """

    def __init__(self):
        self.listeners: list[WebSocket] = []

    async def attach(self, ws: WebSocket):
        await ws.accept()
        self.listeners.append(ws)
        logger.info("Leaderboard page attached (%d listening)", len(self.listeners))

    def detach(self, ws: WebSocket):
        if ws in self.listeners:
            self.listeners.remove(ws)
            logger.info("Leaderboard page detached (%d listening)", len(self.listeners))

    async def broadcast_snapshot(self, snapshot: Snapshot, version: int):
        if not self.listeners:
            return
        data = json.dumps(snapshot_notice(snapshot, version), ensure_ascii=False)
        for ws in list(self.listeners):
            try:
                await ws.send_text(data)
            except Exception as e:
                logger.debug("Dropping leaderboard page after failed notice v%d: %s",
                             version, e)
                self.detach(ws)

    @property
    def connection_count(self) -> int:
        return len(self.listeners)


notifier = SnapshotNotifier()


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await notifier.attach(ws)
    try:
        while True:
            # Inbound messages are not used; keep reading to detect disconnects
            await ws.receive_text()
    except WebSocketDisconnect:
        notifier.detach(ws)
