"""
In-Process Change Feed

Delivers change events to subscribers living in the same process.
Used in development mode (ENV_MODE=development) and in tests:
    - No Redis required
    - Events are delivered before ``publish`` returns, so a caller that
      awaited a write knows every local observer has been notified
"""

import itertools
import logging

from tablebill.services.change_feed.base import BaseChangeFeed, dispatch
from tablebill.services.store.base import (
    ChangeCallback,
    ChangeEvent,
    Subscription,
    SubscriptionScope,
)

logger = logging.getLogger(__name__)


class LocalSubscription(Subscription):
    def __init__(self, feed: "LocalChangeFeed", key: int):
        self._feed = feed
        self._key = key
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._subscribers.pop(self._key, None)
        logger.debug(f"Local subscription {self._key} released")


class LocalChangeFeed(BaseChangeFeed):
    """Dictionary of subscribers keyed by a counter."""

    def __init__(self):
        self._subscribers: dict[int, tuple[SubscriptionScope, ChangeCallback]] = {}
        self._keys = itertools.count(1)
        self.published = 0

    @property
    def provider_name(self) -> str:
        return "local"

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: ChangeEvent) -> None:
        self.published += 1
        # Copy: callbacks may subscribe or unsubscribe while we iterate
        for scope, callback in list(self._subscribers.values()):
            if scope.matches(event):
                await dispatch(callback, event)

    async def subscribe(
        self,
        scope: SubscriptionScope,
        callback: ChangeCallback,
    ) -> Subscription:
        key = next(self._keys)
        self._subscribers[key] = (scope, callback)
        logger.debug(f"Local subscription {key} for {scope}")
        return LocalSubscription(self, key)

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self._subscribers.clear()
