"""Redis transport: firing requests survive a consumer crash.

Each topic is a Redis list consumed from the right. A received request is
moved atomically onto the topic's processing list and stays there until it
is acked. Requests left on the processing list by a dead consumer are moved
back to the front of the queue when a new subscription starts.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..errors import InfrastructureError
from ..models import FiringRequest
from .base import BaseTransport

logger = logging.getLogger(__name__)

# (topic, serialized request) as it sits on the processing list.
Delivery = Tuple[str, str]


class RedisTransport(BaseTransport[Delivery]):
    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        block_seconds: int = 1,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.block_seconds = block_seconds
        self._client: Optional[Any] = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"waypoint:{topic}"

    @classmethod
    def processing_name(cls, topic: str) -> str:
        return f"{cls.queue_name(topic)}:processing"

    async def _redis(self) -> Any:
        if self._client is None:
            await self.connect()
        return self._client

    async def connect(self) -> None:
        client = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await client.ping()
        except redis.RedisError as exc:
            await client.aclose()
            raise InfrastructureError(
                f"Redis at {self.host}:{self.port} unavailable: {exc}"
            ) from exc
        self._client = client
        logger.info(f"Connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def publish(self, topic: str, message: FiringRequest) -> None:
        client = await self._redis()
        try:
            await client.lpush(self.queue_name(topic), message.to_json())
        except redis.RedisError as exc:
            raise InfrastructureError(f"Publishing to {topic} failed: {exc}") from exc

    async def _reclaim(self, topic: str) -> int:
        """Move unacked deliveries back to the consuming end of the queue."""
        client = await self._redis()
        moved = 0
        while await client.lmove(
            self.processing_name(topic), self.queue_name(topic), "LEFT", "RIGHT"
        ):
            moved += 1
        if moved:
            logger.warning(f"Requeued {moved} unacked firing request(s) on {topic}")
        return moved

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Delivery, FiringRequest]]:
        client = await self._redis()
        await self._reclaim(topic)

        loop = asyncio.get_running_loop()
        deadline = None if lifespan is None else loop.time() + lifespan
        while deadline is None or loop.time() < deadline:
            try:
                data = await client.blmove(
                    self.queue_name(topic),
                    self.processing_name(topic),
                    self.block_seconds,
                    "RIGHT",
                    "LEFT",
                )
            except redis.RedisError as exc:
                raise InfrastructureError(f"Receiving from {topic} failed: {exc}") from exc
            if data is None:
                continue
            try:
                request = FiringRequest.from_json(data)
            except (json.JSONDecodeError, PydanticValidationError) as exc:
                logger.warning(f"Dropping unparseable firing request on {topic}: {exc}")
                await client.lrem(self.processing_name(topic), 1, data)
                continue
            yield (topic, data), request

    async def ack(self, raw_message: Delivery) -> None:
        topic, data = raw_message
        client = await self._redis()
        await client.lrem(self.processing_name(topic), 1, data)

    async def nack(self, raw_message: Delivery, requeue: bool = True) -> None:
        topic, data = raw_message
        client = await self._redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_name(topic), 1, data)
            if requeue:
                pipe.rpush(self.queue_name(topic), data)
            await pipe.execute()
