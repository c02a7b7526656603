"""In-memory session storage for development and tests."""

import logging
from typing import Optional

from tablebill.services.sessions.base import BaseSessionStorage

logger = logging.getLogger(__name__)


class MemorySessionStorage(BaseSessionStorage):
    """Process-local dictionary of ``{device_id: {key: token}}``."""

    def __init__(self):
        self._devices: dict[str, dict[str, str]] = {}

    @property
    def provider_name(self) -> str:
        return "memory"

    async def read(self, device_id: str, key: str) -> Optional[str]:
        return self._devices.get(device_id, {}).get(key)

    async def write(self, device_id: str, key: str, value: str) -> None:
        self._devices.setdefault(device_id, {})[key] = value

    async def clear(self, device_id: str, key: str) -> bool:
        return self._devices.get(device_id, {}).pop(key, None) is not None

    async def clear_device(self, device_id: str) -> int:
        return len(self._devices.pop(device_id, {}))

    async def clear_key_everywhere(self, key: str) -> int:
        removed = 0
        for keys in self._devices.values():
            if keys.pop(key, None) is not None:
                removed += 1
        return removed
