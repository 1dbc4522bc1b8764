# src/token_relay/utils/__init__.py

from .paths import get_default_root, get_logs_dir, get_data_file
from .resilient_io import safe_write_json, safe_read_json

__all__ = [
    "get_default_root",
    "get_logs_dir",
    "get_data_file",
    "safe_write_json",
    "safe_read_json",
]
