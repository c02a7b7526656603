"""
Change Feed Factory

Usage:
    from tablebill.services.change_feed import get_change_feed

    feed = get_change_feed()
    await feed.publish(event)

Environment Switching:
    - ENV_MODE=development → LocalChangeFeed (single process)
    - ENV_MODE=staging|production → RedisChangeFeed (shared)
"""

import logging
from functools import lru_cache

from tablebill.core.config import get_settings
from tablebill.services.change_feed.base import BaseChangeFeed
from tablebill.services.change_feed.local import LocalChangeFeed
from tablebill.services.change_feed.redis_feed import RedisChangeFeed

logger = logging.getLogger(__name__)


@lru_cache()
def get_change_feed() -> BaseChangeFeed:
    """
    Get the configured change feed instance.

    Cached so every store and synchronizer in the process shares the
    same subscribers.
    """
    settings = get_settings()

    if settings.use_real_services:
        logger.info(f"Change Feed: Using RedisChangeFeed ({settings.env_mode.value} mode)")
        return RedisChangeFeed.from_url(
            settings.redis_url,
            channel_prefix=settings.change_feed_channel_prefix,
        )

    logger.info("Change Feed: Using LocalChangeFeed (development mode)")
    return LocalChangeFeed()


def reset_change_feed() -> None:
    """Clear the cached change feed instance."""
    get_change_feed.cache_clear()
    logger.debug("Change feed cache cleared")


__all__ = [
    "get_change_feed",
    "reset_change_feed",
    "BaseChangeFeed",
    "LocalChangeFeed",
    "RedisChangeFeed",
]
