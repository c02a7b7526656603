"""
Session Identity Resolver

Hands every customer device a session token per table that survives
page reloads and reconnects:

    resolver = SessionIdentityResolver(MemorySessionStorage())
    token = await resolver.resolve("device-abc", "5")
    # same device, same table → same token until cleared

Tokens are ``{epoch_millis}-{9 base36 chars}``. Collisions are
negligible, not impossible; two customers sharing one device share a
session, which is accepted.
"""

import logging
import secrets
import string
import time
from typing import Optional

from tablebill.services.sessions.base import BaseSessionStorage

logger = logging.getLogger(__name__)

BASE36 = string.digits + string.ascii_lowercase
SUFFIX_LENGTH = 9


def generate_session_token(now_ms: Optional[int] = None) -> str:
    """Time-based prefix plus random base36 suffix."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(BASE36) for _ in range(SUFFIX_LENGTH))
    return f"{now_ms}-{suffix}"


class SessionIdentityResolver:
    """
    Resolves ``(device, table)`` to a stable session token.

    Attributes:
        storage: Keyed per-device storage backend
        takeaway_label: Table identifier used when no table was scanned
    """

    def __init__(self, storage: BaseSessionStorage, takeaway_label: str = "Takeaway"):
        self.storage = storage
        self.takeaway_label = takeaway_label

    def table_key(self, table_id: Optional[str]) -> str:
        return f"session_table_{self.normalize_table(table_id)}"

    def normalize_table(self, table_id: Optional[str]) -> str:
        table_id = (table_id or "").strip()
        return table_id or self.takeaway_label

    def is_takeaway(self, table_id: Optional[str]) -> bool:
        return self.normalize_table(table_id) == self.takeaway_label

    async def resolve(self, device_id: str, table_id: Optional[str] = None) -> str:
        """
        Return the device's token for ``table_id``, creating it if absent.

        Args:
            device_id: Identifier of the customer's device/browser
            table_id: Table number, or None/blank for takeaway
        """
        key = self.table_key(table_id)
        existing = await self.storage.read(device_id, key)
        if existing:
            return existing

        token = generate_session_token()
        await self.storage.write(device_id, key, token)
        logger.info(f"New session {token} for table {self.normalize_table(table_id)}")
        return token

    async def peek(self, device_id: str, table_id: Optional[str] = None) -> Optional[str]:
        """Stored token without creating one."""
        return await self.storage.read(device_id, self.table_key(table_id))

    async def clear(self, device_id: str, table_id: Optional[str] = None) -> bool:
        return await self.storage.clear(device_id, self.table_key(table_id))

    async def clear_device(self, device_id: str) -> int:
        return await self.storage.clear_device(device_id)

    async def reset_table(self, table_id: str) -> int:
        """Forget the table's session on every device, next visit starts fresh."""
        removed = await self.storage.clear_key_everywhere(self.table_key(table_id))
        logger.info(f"Table {table_id} reset, {removed} stored session(s) cleared")
        return removed
