"""
Redis Pub/Sub Change Feed

Shares order change events between every API worker. Each restaurant
has its own channel (``{prefix}:{restaurant_id}``); a subscription owns
one pub/sub connection and a reader task that forwards matching
events to its callback.

Used in staging and production (ENV_MODE=staging|production).
"""

import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tablebill.services.change_feed.base import BaseChangeFeed, dispatch
from tablebill.services.store.base import (
    ChangeCallback,
    ChangeEvent,
    Subscription,
    SubscriptionScope,
)

logger = logging.getLogger(__name__)

POLL_TIMEOUT = 1.0


class RedisSubscription(Subscription):
    """Pub/sub connection plus the task reading from it."""

    def __init__(self, pubsub, reader: asyncio.Task, channel: str):
        self._pubsub = pubsub
        self._reader = reader
        self._channel = channel
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._reader.cancel()
        try:
            await self._reader
        except asyncio.CancelledError:
            pass
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning(f"Error releasing subscription on {self._channel}: {e}")
        logger.debug(f"Redis subscription on {self._channel} released")


class RedisChangeFeed(BaseChangeFeed):
    """
    Change feed over Redis pub/sub.

    Attributes:
        channel_prefix: Prefix of the per-restaurant channels
    """

    def __init__(self, client: aioredis.Redis, channel_prefix: str = "tablebill:orders"):
        self._client = client
        self.channel_prefix = channel_prefix

    @classmethod
    def from_url(cls, url: str, channel_prefix: str = "tablebill:orders") -> "RedisChangeFeed":
        return cls(aioredis.from_url(url, decode_responses=True), channel_prefix)

    @property
    def provider_name(self) -> str:
        return "redis"

    def channel_for(self, restaurant_id: str) -> str:
        return f"{self.channel_prefix}:{restaurant_id}"

    async def publish(self, event: ChangeEvent) -> None:
        channel = self.channel_for(event.restaurant_id)
        try:
            await self._client.publish(channel, json.dumps(event.to_dict()))
        except RedisError as e:
            # The write is already committed; observers catch up on the next event
            logger.error(f"Failed to publish change on {channel}: {e}")

    async def subscribe(
        self,
        scope: SubscriptionScope,
        callback: ChangeCallback,
    ) -> Subscription:
        channel = self.channel_for(scope.restaurant_id)
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)
        reader = asyncio.create_task(self._read(pubsub, scope, callback))
        logger.debug(f"Redis subscription on {channel} for {scope}")
        return RedisSubscription(pubsub, reader, channel)

    async def _read(self, pubsub, scope: SubscriptionScope, callback: ChangeCallback) -> None:
        while True:
            try:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=POLL_TIMEOUT
                )
            except RedisError as e:
                logger.warning(f"Change feed read failed, retrying: {e}")
                await asyncio.sleep(POLL_TIMEOUT)
                continue
            if message is None:
                continue
            event = self._decode(message.get("data"))
            if event is not None and scope.matches(event):
                await dispatch(callback, event)

    @staticmethod
    def _decode(data) -> Optional[ChangeEvent]:
        if isinstance(data, bytes):
            data = data.decode()
        try:
            return ChangeEvent.from_dict(json.loads(data))
        except (TypeError, ValueError, KeyError):
            logger.warning(f"Ignoring malformed change event: {data!r}")
            return None

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()
