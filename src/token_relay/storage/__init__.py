# src/token_relay/storage/__init__.py

from .interfaces import KeyValueStorage
from .memory import MemoryStorage
from .json_file import JsonFileStorage

__all__ = ["KeyValueStorage", "MemoryStorage", "JsonFileStorage"]
