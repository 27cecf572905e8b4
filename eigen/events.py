import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger("uvicorn.error")

SUBSCRIBER_QUEUE_SIZE = 1000

Listener = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class EventBus:
    """In-memory fan-out of UI events.

    Delivery is fire-and-forget: a failing listener or subscriber is logged and
    skipped, it never turns into an error for the operation that emitted.
    """

    def __init__(self) -> None:
        self.subscribers: List[asyncio.Queue] = []
        self.listeners: List[Listener] = []
        self.lock = asyncio.Lock()
        self._seq = 0

    def add_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def emit(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        try:
            async with self.lock:
                self._seq += 1
                event = {
                    "seq": self._seq,
                    "event_type": event_type,
                    "payload": dict(payload or {}),
                    "ts": time.time(),
                }
                queues = list(self.subscribers)
                listeners = list(self.listeners)
        except Exception as exc:
            logger.warning("Dropping event %s: %s", event_type, exc)
            return None
        for queue in queues:
            try:
                queue.put_nowait(event)
            except Exception as exc:
                logger.warning("Subscriber rejected event %s: %s", event_type, exc)
        for listener in listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning("Listener failed for event %s: %s", event_type, exc)
        return event

    async def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        async with self.lock:
            self.subscribers.append(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.subscribers:
                self.subscribers.remove(queue)
