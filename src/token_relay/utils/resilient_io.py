# src/token_relay/utils/resilient_io.py
"""
File I/O helpers for credential persistence.

Provides two patterns:
1. safe_write_json - atomic (tempfile + move) JSON write with optional 0600
   permissions. Never raises; returns False on failure.
2. safe_read_json - JSON read that distinguishes "missing" from "broken".

Credential writes are never buffered for a later retry: a refresh token that
was rotated by the server is stale by the time a retry would run, so the
caller must learn about the failure immediately.
"""

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union


def safe_write_json(
    path: Union[str, Path],
    data: Dict[str, Any],
    logger: logging.Logger,
    secure_permissions: bool = False,
) -> bool:
    """
    Atomically replace `path` with `data` as indented JSON.

    The content goes to a temp file in the same directory, which is then
    moved over the target, so readers see either the old or the new file.

    Returns:
        True on success, False on failure (never raises)
    """
    path = Path(path)
    tmp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(data, indent=2)

        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=path.parent, prefix=".tmp_", suffix=".json", text=True
        )
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            f.write(content)

        # Before the move, so the final file is never world-readable
        if secure_permissions:
            os.chmod(tmp_path, 0o600)

        shutil.move(tmp_path, path)
        tmp_path = None
        return True

    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"Failed to write JSON to {path.name}: {e}")
        return False
    finally:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                pass


def safe_read_json(
    path: Union[str, Path], logger: logging.Logger
) -> Optional[Dict[str, Any]]:
    """
    Read a JSON object from file.

    Returns:
        The decoded dict, or None when the file does not exist.

    Raises:
        IOError: when the file exists but cannot be read or is not a JSON object
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read JSON from {path.name}: {e}")
        raise IOError(f"Failed to read '{path.name}': {e}") from e
    if not isinstance(data, dict):
        raise IOError(f"'{path.name}' does not contain a JSON object")
    return data
