"""In-process transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..models import FiringRequest
from .base import BaseTransport

Delivery = Tuple[str, str]


class InMemoryTransport(BaseTransport[Delivery]):
    """FIFO deque per topic; ``acked`` counts handled requests."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[Delivery]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval
        self.acked = 0

    async def publish(self, topic: str, message: FiringRequest) -> None:
        async with self._lock:
            self._queues[topic].append((topic, message.to_json()))

    async def _next(self, topic: str) -> Optional[Delivery]:
        async with self._lock:
            queue = self._queues[topic]
            return queue.popleft() if queue else None

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Delivery, FiringRequest]]:
        loop = asyncio.get_running_loop()
        deadline = None if lifespan is None else loop.time() + lifespan
        while deadline is None or loop.time() < deadline:
            delivery = await self._next(topic)
            if delivery is None:
                await asyncio.sleep(self._poll_interval)
                continue
            yield delivery, FiringRequest.from_json(delivery[1])

    async def ack(self, raw_message: Delivery) -> None:
        self.acked += 1

    async def nack(self, raw_message: Delivery, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].appendleft(raw_message)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
