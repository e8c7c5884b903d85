"""In-process fan-out of training events to live subscribers (WebSocket clients)."""

import asyncio
from collections import defaultdict

import structlog

logger = structlog.get_logger()


class ProgressBroadcaster:
    def __init__(self, max_queue: int = 100):
        self._max_queue = max_queue
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers[session_id].add(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[session_id]

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def publish(self, session_id: str, event: dict) -> None:
        """Deliver without blocking; a full queue drops its oldest event."""
        for queue in list(self._subscribers.get(session_id, ())):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug("progress_event_dropped", session_id=session_id)
            queue.put_nowait(event)
