"""
Change Feed Abstract Base Class

The order store publishes a ``ChangeEvent`` after every committed
write; the feed fans it out to subscribers whose scope matches.

Design Pattern: Strategy Pattern
    - LocalChangeFeed: in-process, single worker (development, tests)
    - RedisChangeFeed: Redis pub/sub, shared by every API worker

Version: 1.0.0
"""

import inspect
import logging
from abc import ABC, abstractmethod

from tablebill.services.store.base import (
    ChangeCallback,
    ChangeEvent,
    Subscription,
    SubscriptionScope,
)

logger = logging.getLogger(__name__)


class BaseChangeFeed(ABC):
    """Publish/subscribe contract for order change notifications."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        """
        Announce a committed change.

        Publishing happens after the write is durable; a failure to
        publish only delays observers, it never undoes the write.
        """
        pass

    @abstractmethod
    async def subscribe(
        self,
        scope: SubscriptionScope,
        callback: ChangeCallback,
    ) -> Subscription:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    async def close(self) -> None:
        """Release connections held by the feed."""
        return None


async def dispatch(callback: ChangeCallback, event: ChangeEvent) -> None:
    """Run a subscriber callback, sync or async, isolating its failures."""
    try:
        result = callback(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception(f"Change subscriber failed for {event.restaurant_id}")
