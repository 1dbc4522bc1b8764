# src/token_relay/storage/json_file.py

import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from ..utils.paths import get_data_file
from ..utils.resilient_io import safe_read_json, safe_write_json
from .interfaces import KeyValueStorage

lib_logger = logging.getLogger("token_relay")

DEFAULT_CREDENTIALS_FILE = "credentials.json"


class JsonFileStorage(KeyValueStorage):
    """
    Stores all keys in one JSON file.

    Every mutation rewrites the whole file through an atomic temp-file move,
    so a batch written with set_many() lands on disk all-or-nothing. The file
    is created with 0600 permissions because it holds credentials.

    The file is read once, on first access; afterwards the in-memory copy is
    authoritative and is only replaced after a successful write.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else get_data_file(DEFAULT_CREDENTIALS_FILE)
        self._data: Optional[Dict[str, str]] = None

    def _load(self) -> Dict[str, str]:
        if self._data is None:
            raw = safe_read_json(self.path, lib_logger) or {}
            self._data = {str(k): str(v) for k, v in raw.items() if v is not None}
            lib_logger.debug(
                f"Loaded {len(self._data)} key(s) from '{self.path.name}'."
            )
        return self._data

    def _commit(self, staged: Dict[str, str]) -> None:
        # Write to disk FIRST; the in-memory copy only follows a successful write
        if not safe_write_json(
            self.path, staged, lib_logger, secure_permissions=True
        ):
            raise IOError(f"Failed to write credentials to '{self.path.name}'")
        self._data = staged

    async def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    async def set(self, key: str, value: str) -> None:
        staged = dict(self._load())
        staged[key] = value
        self._commit(staged)

    async def remove(self, key: str) -> None:
        current = self._load()
        if key not in current:
            return
        staged = dict(current)
        del staged[key]
        self._commit(staged)

    async def keys(self) -> List[str]:
        return list(self._load().keys())

    async def clear(self) -> None:
        self._commit({})

    async def set_many(self, items: Mapping[str, Optional[str]]) -> None:
        staged = dict(self._load())
        for key, value in items.items():
            if value is None:
                staged.pop(key, None)
            else:
                staged[key] = value
        self._commit(staged)
