from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Union

from pokertable_backend.engine.models import BroadcastEvent, ChangeEvent, ChangeKind


logger = logging.getLogger(__name__)

FeedItem = Union[ChangeEvent, BroadcastEvent]

QUEUE_SIZE = 256


class RoomFeed:
    def __init__(self, queue_size: int = QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscriptions: dict[str, set[asyncio.Queue[FeedItem]]] = defaultdict(set)
        self._loop: asyncio.AbstractEventLoop | None = None

    def subscribe(self, room_id: str) -> asyncio.Queue[FeedItem]:
        self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue[FeedItem] = asyncio.Queue(maxsize=self._queue_size)
        self._subscriptions[room_id].add(queue)
        return queue

    def unsubscribe(self, room_id: str, queue: asyncio.Queue[FeedItem]) -> None:
        subscribers = self._subscriptions.get(room_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscriptions[room_id]

    def subscriber_count(self, room_id: str) -> int:
        return len(self._subscriptions.get(room_id, ()))

    def publish_change(
        self,
        room_id: str,
        table: str,
        kind: ChangeKind,
        old: dict[str, Any] | None,
        new: dict[str, Any] | None,
    ) -> None:
        self._fan_out(room_id, ChangeEvent(room_id=room_id, table=table, kind=kind, old=old, new=new))

    def publish_broadcast(self, room_id: str, event: str, payload: dict[str, Any]) -> None:
        self._fan_out(room_id, BroadcastEvent(room_id=room_id, event=event, payload=payload))

    def _fan_out(self, room_id: str, item: FeedItem) -> None:
        loop = self._loop
        if loop is None or _running_on(loop):
            self._deliver(room_id, item)
            return
        # queues belong to the loop; storage threads publish through it
        if loop.is_closed():
            logger.debug("dropping %s for room %s, event loop is closed", type(item).__name__, room_id)
            return
        loop.call_soon_threadsafe(self._deliver, room_id, item)

    def _deliver(self, room_id: str, item: FeedItem) -> None:
        for queue in list(self._subscriptions.get(room_id, set())):
            try:
                queue.put_nowait(item)
            except asyncio.QueueFull:
                logger.debug("dropping %s for a slow subscriber of room %s", type(item).__name__, room_id)
                continue


def _running_on(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False
