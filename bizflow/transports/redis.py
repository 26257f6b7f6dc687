"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..config import RedisConfig
from ..contracts import TriggerEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawEvent = Tuple[str, str]


class RedisTransport(BaseTransport[RawEvent]):
    """Redis-based transport using lists as queues."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        queue_prefix: str = "bizflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.queue_prefix = queue_prefix
        self._redis: Optional[Any] = None

    @classmethod
    def from_config(cls, config: RedisConfig) -> "RedisTransport":
        return cls(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            queue_prefix=config.queue_prefix,
        )

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def queue_name(self, topic: str) -> str:
        return f"{self.queue_prefix}:{topic}"

    async def publish(self, topic: str, event: TriggerEvent) -> None:
        """Publish event to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, TriggerEvent]]:
        """Subscribe to events from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            # Blocking pop with timeout
            result = await self._redis.brpop(queue_name, timeout=1)

            if result:
                _, event_json = result
                try:
                    event = TriggerEvent.from_json(event_json)
                except ValidationError as e:
                    logger.warning(f"Discarding malformed trigger event on {queue_name}: {e}")
                    continue
                yield (topic, event_json), event

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: RawEvent) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        """Push the event back on the consuming end of its queue."""
        if not requeue:
            return
        topic, event_json = raw_message
        if not self._redis:
            await self.connect()
        await self._redis.rpush(self.queue_name(topic), event_json)
