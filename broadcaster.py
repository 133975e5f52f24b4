from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    def join_room(self, client_id: str, room: str) -> None: ...

    def to_room(self, room: str, event: str, data: Any) -> None: ...

    def to_client(self, client_id: str, event: str, data: Any) -> None: ...


def frame(event: str, data: Any) -> dict[str, Any]:
    return {"event": event, "data": data}


class QueueBroadcaster:
    # Event loop thread only; sends never block.

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue] = {}
        self._rooms: dict[str, set[str]] = {}
        self._client_room: dict[str, str] = {}

    def connect(self, client_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues[client_id] = queue
        return queue

    def disconnect(self, client_id: str) -> None:
        self._queues.pop(client_id, None)
        room = self._client_room.pop(client_id, None)
        if room is not None:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(client_id)
                if not members:
                    del self._rooms[room]

    def join_room(self, client_id: str, room: str) -> None:
        previous = self._client_room.get(client_id)
        if previous == room:
            return
        if previous is not None:
            self._rooms.get(previous, set()).discard(client_id)
        self._rooms.setdefault(room, set()).add(client_id)
        self._client_room[client_id] = room

    def to_client(self, client_id: str, event: str, data: Any) -> None:
        queue = self._queues.get(client_id)
        if queue is None:
            logger.debug("dropping %s for disconnected client %s", event, client_id)
            return
        queue.put_nowait(frame(event, data))

    def to_room(self, room: str, event: str, data: Any) -> None:
        for client_id in list(self._rooms.get(room, ())):
            self.to_client(client_id, event, data)
