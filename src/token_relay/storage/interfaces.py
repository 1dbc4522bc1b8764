# src/token_relay/storage/interfaces.py

from abc import ABC, abstractmethod
from typing import List, Mapping, Optional


class KeyValueStorage(ABC):
    """
    Platform-independent async key-value persistence.

    Implementations raise on I/O failure (any exception); the credential store
    converts those into StorageError. Values are always strings.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete a key. Removing a missing key is not an error."""

    @abstractmethod
    async def keys(self) -> List[str]:
        """Return every stored key."""

    @abstractmethod
    async def clear(self) -> None:
        """Delete everything this storage holds."""

    async def set_many(self, items: Mapping[str, Optional[str]]) -> None:
        """
        Write several keys; a None value removes the key.

        The default writes one key at a time. Backends that can commit a batch
        in a single operation should override this.
        """
        for key, value in items.items():
            if value is None:
                await self.remove(key)
            else:
                await self.set(key, value)
