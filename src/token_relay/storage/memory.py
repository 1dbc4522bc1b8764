# src/token_relay/storage/memory.py

from typing import Dict, List, Mapping, Optional

from .interfaces import KeyValueStorage


class MemoryStorage(KeyValueStorage):
    """Process-local storage for tests and short-lived scripts. Lost on exit."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> List[str]:
        return list(self._data.keys())

    async def clear(self) -> None:
        self._data.clear()

    async def set_many(self, items: Mapping[str, Optional[str]]) -> None:
        staged = dict(self._data)
        for key, value in items.items():
            if value is None:
                staged.pop(key, None)
            else:
                staged[key] = value
        self._data = staged

    def snapshot(self) -> Dict[str, str]:
        """Copy of the raw contents (for inspection/debugging)."""
        return dict(self._data)
