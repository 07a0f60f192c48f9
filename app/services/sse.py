import asyncio
import json
import logging
import threading
from typing import Any, Dict, List, Tuple

logger = logging.getLogger(__name__)

QUEUE_SIZE = 100


class NotificationBroker:
    """
    In-process fan-out of new notifications to open SSE streams.

    Streams subscribe from the event loop; publishers may call from any
    thread (request threadpool, sweeper thread).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[int, List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = {}

    def subscribe(self, user_id: int) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)
        loop = asyncio.get_running_loop()
        with self._lock:
            self._subscribers.setdefault(user_id, []).append((loop, queue))
        return queue

    def unsubscribe(self, user_id: int, queue: asyncio.Queue) -> None:
        with self._lock:
            entries = [e for e in self._subscribers.get(user_id, []) if e[1] is not queue]
            if entries:
                self._subscribers[user_id] = entries
            else:
                self._subscribers.pop(user_id, None)

    def subscriber_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, []))

    def publish(self, user_id: int, payload: Dict[str, Any]) -> int:
        with self._lock:
            entries = list(self._subscribers.get(user_id, []))

        delivered = 0
        for loop, queue in entries:
            try:
                loop.call_soon_threadsafe(self._offer, queue, payload)
                delivered += 1
            except RuntimeError:
                # loop already closed
                self.unsubscribe(user_id, queue)
        return delivered

    @staticmethod
    def _offer(queue: asyncio.Queue, payload: Dict[str, Any]) -> None:
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("SSE queue full, dropping notification")


def format_sse(payload: Dict[str, Any], event: str = "notification") -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"
