"""
Redis Session Storage

One hash per device (``{prefix}:{device_id}``) holding
``session_table_{table}`` → token. The hash expires after a period of
inactivity so abandoned devices do not accumulate forever; every
read refreshes the expiry.
"""

import logging
from typing import Optional

import redis.asyncio as aioredis

from tablebill.services.sessions.base import BaseSessionStorage

logger = logging.getLogger(__name__)


class RedisSessionStorage(BaseSessionStorage):
    def __init__(
        self,
        client: aioredis.Redis,
        key_prefix: str = "tablebill:sessions",
        ttl_seconds: int = 12 * 3600,
    ):
        self._client = client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, key_prefix: str, ttl_seconds: int) -> "RedisSessionStorage":
        return cls(aioredis.from_url(url, decode_responses=True), key_prefix, ttl_seconds)

    @property
    def provider_name(self) -> str:
        return "redis"

    def _device_key(self, device_id: str) -> str:
        return f"{self.key_prefix}:{device_id}"

    async def read(self, device_id: str, key: str) -> Optional[str]:
        device_key = self._device_key(device_id)
        value = await self._client.hget(device_key, key)
        if value is not None:
            await self._client.expire(device_key, self.ttl_seconds)
        return value

    async def write(self, device_id: str, key: str, value: str) -> None:
        device_key = self._device_key(device_id)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.hset(device_key, key, value)
            pipe.expire(device_key, self.ttl_seconds)
            await pipe.execute()

    async def clear(self, device_id: str, key: str) -> bool:
        return bool(await self._client.hdel(self._device_key(device_id), key))

    async def clear_device(self, device_id: str) -> int:
        device_key = self._device_key(device_id)
        count = await self._client.hlen(device_key)
        await self._client.delete(device_key)
        return count

    async def clear_key_everywhere(self, key: str) -> int:
        removed = 0
        async for device_key in self._client.scan_iter(match=f"{self.key_prefix}:*"):
            removed += await self._client.hdel(device_key, key)
        logger.info(f"Cleared {key} from {removed} device(s)")
        return removed
