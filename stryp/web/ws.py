"""WebSocket manager for live document snapshots and generation progress."""

import json
import logging
from collections import defaultdict
from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WSManager:
    def __init__(self):
        self.connections: dict[str, list[WebSocket]] = defaultdict(list)

    async def connect(self, user_id: str, ws: WebSocket):
        await ws.accept()
        self.connections[user_id].append(ws)

    def disconnect(self, user_id: str, ws: WebSocket):
        if ws in self.connections.get(user_id, []):
            self.connections[user_id].remove(ws)

    async def send(self, ws: WebSocket, data: dict):
        await ws.send_text(json.dumps(data))

    async def broadcast(self, user_id: str, data: dict):
        dead = []
        for ws in list(self.connections.get(user_id, [])):
            try:
                await ws.send_text(json.dumps(data))
            except Exception as e:
                logger.debug("Dropping dead websocket for %s: %s", user_id, e)
                dead.append(ws)
        for ws in dead:
            self.disconnect(user_id, ws)


ws_manager = WSManager()
