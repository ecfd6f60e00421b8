"""
Room-based WebSocket fan-out.

Clients join the admin room or a per-user room keyed by email. Events are
pushed as {"event": name, "data": payload}. Nothing is persisted: a client
that is not connected when an event is emitted never sees it.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional, Set

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

ADMIN_ROOM = "admin"


def user_room(email: str) -> str:
    return f"user_{email.strip().lower()}"


class ConnectionManager:
    def __init__(self):
        self.rooms: Dict[str, Set] = {}
        self._tasks: Set[asyncio.Task] = set()

    def join(self, room: str, websocket):
        self.rooms.setdefault(room, set()).add(websocket)

    def disconnect(self, websocket):
        for room in list(self.rooms):
            members = self.rooms[room]
            members.discard(websocket)
            if not members:
                del self.rooms[room]

    def subscribers(self, rooms: Optional[Iterable[str]] = None) -> Set:
        if rooms is None:
            rooms = list(self.rooms)
        targets = set()
        for room in rooms:
            targets |= self.rooms.get(room, set())
        return targets

    async def publish(self, event: str, payload: dict, rooms: Optional[Iterable[str]] = None) -> int:
        """Send to every subscriber of the given rooms (all rooms when None). Returns deliveries."""
        message = {"event": event, "data": jsonable_encoder(payload)}
        delivered = 0
        for websocket in self.subscribers(rooms):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception:
                logger.warning("Dropping dead websocket while sending %s", event, exc_info=True)
                self.disconnect(websocket)
        return delivered

    def emit(self, event: str, payload: dict, rooms: Optional[Iterable[str]] = None):
        """Schedule publish() without waiting for it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, %s event dropped", event)
            return None

        task = loop.create_task(self.publish(event, payload, None if rooms is None else list(rooms)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Wait for every scheduled publish to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
