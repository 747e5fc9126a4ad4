"""Redis transport: each topic is a list used as a FIFO queue."""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

from ..contracts import OutboundMessage
from .base import BaseTransport


class RedisTransport(BaseTransport):
    """LPUSHes the JSON text; consumers BRPOP from the other end."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "journeyflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self._redis: Optional[redis.Redis] = None

    def queue_key(self, topic: str) -> str:
        return f"{self.key_prefix}:{topic}"

    async def _client(self) -> redis.Redis:
        if self._redis is None:
            await self.connect()
        return self._redis

    async def connect(self) -> None:
        client = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await client.ping()
        self._redis = client

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: OutboundMessage) -> None:
        client = await self._client()
        await client.lpush(self.queue_key(topic), message.to_json())

    async def pending_count(self, topic: str) -> int:
        """Number of messages waiting on ``topic``."""
        client = await self._client()
        return await client.llen(self.queue_key(topic))

