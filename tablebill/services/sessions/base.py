"""
Session Storage Abstract Base Class

Small keyed persistent store owned by the session resolver. Every
customer device gets its own namespace; keys inside it are derived from
the table identifier and values are session tokens.

Version: 1.0.0
"""

from abc import ABC, abstractmethod
from typing import Optional


class BaseSessionStorage(ABC):
    """Read / write / clear contract for per-device session tokens."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def read(self, device_id: str, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def write(self, device_id: str, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def clear(self, device_id: str, key: str) -> bool:
        """Remove one key. Returns whether it existed."""
        pass

    @abstractmethod
    async def clear_device(self, device_id: str) -> int:
        """Remove every key of a device. Returns how many were removed."""
        pass

    @abstractmethod
    async def clear_key_everywhere(self, key: str) -> int:
        """Remove ``key`` from every device (staff table reset)."""
        pass
