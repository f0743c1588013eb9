import asyncio
import logging
from collections import defaultdict
from typing import Any

from fastapi import WebSocket


class UserConnectionManager:
    """Per-user websocket rooms. Doubles as the presence tracker."""

    def __init__(self) -> None:
        self._rooms: dict[int, list[WebSocket]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def join_room(self, user_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            self._rooms[user_id].append(websocket)
            total = len(self._rooms[user_id])
        logger.info("WS join user_id=%s sockets=%s", user_id, total)

    async def leave_room(self, user_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            if user_id not in self._rooms:
                return
            self._rooms[user_id] = [ws for ws in self._rooms[user_id] if ws is not websocket]
            if not self._rooms[user_id]:
                self._rooms.pop(user_id, None)
                remaining = 0
            else:
                remaining = len(self._rooms[user_id])
        logger.info("WS leave user_id=%s sockets=%s", user_id, remaining)

    async def is_online(self, user_id: int) -> bool:
        async with self._lock:
            return bool(self._rooms.get(user_id))

    async def online_count(self) -> int:
        async with self._lock:
            return len(self._rooms)

    async def send_to_user(self, user_id: int, event_name: str, payload: dict[str, Any]) -> int:
        """Send to every socket of one user; returns how many sockets accepted the message."""
        async with self._lock:
            sockets = list(self._rooms.get(user_id, []))
        if not sockets:
            return 0

        delivered = 0
        to_remove: list[WebSocket] = []
        for websocket in sockets:
            try:
                await websocket.send_json({"type": event_name, **payload})
                delivered += 1
            except Exception:
                logger.exception("WS send failed user_id=%s event=%s", user_id, event_name)
                to_remove.append(websocket)

        if to_remove:
            async with self._lock:
                kept = [ws for ws in self._rooms.get(user_id, []) if ws not in to_remove]
                if kept:
                    self._rooms[user_id] = kept
                else:
                    self._rooms.pop(user_id, None)
            logger.info("WS pruned user_id=%s sockets=%s", user_id, len(kept))
        return delivered


logger = logging.getLogger("wishlisty.ws")
manager = UserConnectionManager()
