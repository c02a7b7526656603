"""
Session Resolver Factory

Environment Switching:
    - ENV_MODE=development → MemorySessionStorage
    - ENV_MODE=staging|production → RedisSessionStorage
"""

import logging
from functools import lru_cache

from tablebill.core.config import get_settings
from tablebill.services.sessions.base import BaseSessionStorage
from tablebill.services.sessions.memory import MemorySessionStorage
from tablebill.services.sessions.redis_storage import RedisSessionStorage
from tablebill.services.sessions.resolver import (
    SessionIdentityResolver,
    generate_session_token,
)

logger = logging.getLogger(__name__)


@lru_cache()
def get_session_resolver() -> SessionIdentityResolver:
    settings = get_settings()

    if settings.use_real_services:
        logger.info("Session Storage: Using RedisSessionStorage")
        storage = RedisSessionStorage.from_url(
            settings.redis_url,
            key_prefix=settings.session_key_prefix,
            ttl_seconds=settings.session_key_ttl_hours * 3600,
        )
    else:
        logger.info("Session Storage: Using MemorySessionStorage (development mode)")
        storage = MemorySessionStorage()

    return SessionIdentityResolver(storage, takeaway_label=settings.takeaway_label)


def reset_session_resolver() -> None:
    get_session_resolver.cache_clear()


__all__ = [
    "get_session_resolver",
    "reset_session_resolver",
    "BaseSessionStorage",
    "MemorySessionStorage",
    "RedisSessionStorage",
    "SessionIdentityResolver",
    "generate_session_token",
]
