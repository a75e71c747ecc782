"""Per-key request queue.

Guarantees at most one in-flight Gemini call per API key. Keys are
independent: calls on different keys run concurrently. Waiters on one key
are admitted by priority (higher first) and then by arrival order.
"""

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from pagegen.errors import QueueClearedError, QueueFullError
from pagegen.models import mask_key

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(order=True)
class _Ticket:
    sort_key: tuple
    enqueued_at: float = field(compare=False)
    future: "asyncio.Future[None]" = field(compare=False)
    admitted: bool = field(default=False, compare=False)


class CallSerializer:
    """Serializes calls per API key."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._queues: Dict[str, List[_Ticket]] = {}
        self._running: Set[str] = set()
        self._sequence = itertools.count()

    async def execute(
        self,
        api_key: str,
        operation: Callable[[str], Awaitable[T]],
        priority: int = 0,
    ) -> T:
        queue = self._queues.setdefault(api_key, [])
        if len(queue) >= self.max_queue_size:
            raise QueueFullError(
                f"Queue for key {mask_key(api_key)} is full "
                f"({self.max_queue_size}), try again later"
            )

        loop = asyncio.get_running_loop()
        ticket = _Ticket(
            sort_key=(-priority, next(self._sequence)),
            enqueued_at=time.time(),
            future=loop.create_future(),
        )
        heapq.heappush(queue, ticket)
        self._dispatch(api_key)

        try:
            await ticket.future
        except asyncio.CancelledError:
            if ticket.admitted:
                self._release(api_key)
            else:
                self._discard(api_key, ticket)
            raise

        try:
            return await operation(api_key)
        finally:
            self._release(api_key)

    def queue_depth(self, api_key: str) -> int:
        return len(self._queues.get(api_key, []))

    def total_queue_depth(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    def is_processing(self, api_key: str) -> bool:
        return api_key in self._running

    def get_queue_status(self, api_key: Optional[str] = None) -> List[Dict[str, object]]:
        keys = [api_key] if api_key is not None else list(self._queues)
        now = time.time()
        statuses = []
        for key in keys:
            queue = self._queues.get(key, [])
            oldest = min((t.enqueued_at for t in queue), default=None)
            statuses.append(
                {
                    "key": mask_key(key),
                    "queue_length": len(queue),
                    "is_processing": key in self._running,
                    "oldest_request_age": now - oldest if oldest is not None else 0.0,
                }
            )
        return statuses

    def clear(self, api_key: str) -> int:
        queue = self._queues.pop(api_key, [])
        for ticket in queue:
            if not ticket.future.done():
                ticket.future.set_exception(
                    QueueClearedError(f"Queue for key {mask_key(api_key)} was cleared")
                )
        if queue:
            logger.info("Cleared %d queued request(s) for key %s", len(queue), mask_key(api_key))
        return len(queue)

    def clear_all(self) -> int:
        return sum(self.clear(api_key) for api_key in list(self._queues))

    def _dispatch(self, api_key: str) -> None:
        if api_key in self._running:
            return
        queue = self._queues.get(api_key)
        while queue:
            ticket = heapq.heappop(queue)
            if ticket.future.done():
                continue
            ticket.admitted = True
            self._running.add(api_key)
            ticket.future.set_result(None)
            return

    def _release(self, api_key: str) -> None:
        self._running.discard(api_key)
        self._dispatch(api_key)

    def _discard(self, api_key: str, ticket: _Ticket) -> None:
        queue = self._queues.get(api_key)
        if queue and ticket in queue:
            queue.remove(ticket)
            heapq.heapify(queue)
