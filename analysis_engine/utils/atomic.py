"""Crash-safe JSON record writes for the file-backed store.

A record is serialized in memory, written to a sibling temp file, flushed
to disk and renamed over the target. Readers see the old record or the new
one, never a truncated file.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from analysis_engine.utils.logging import get_logger

logger = get_logger("utils.atomic")


class AtomicWriteError(Exception):
    """Raised when a record could not be replaced atomically."""

    pass


def atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """
    Replace path with the JSON encoding of data.

    Args:
        path: Record file to replace
        data: JSON-serializable value
        indent: JSON indentation level

    Raises:
        AtomicWriteError: If data cannot be encoded or the file cannot be
            replaced; the previous record is left untouched
    """
    path = Path(path)

    try:
        payload = json.dumps(data, indent=indent)
    except (TypeError, ValueError) as e:
        raise AtomicWriteError(f"Record for {path.name} is not JSON-serializable: {e}") from e

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    temp_path = Path(temp_name)

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        temp_path.replace(path)
    except OSError as e:
        logger.error("atomic_write_failed", path=str(path), error=str(e))
        temp_path.unlink(missing_ok=True)
        raise AtomicWriteError(f"Failed to replace {path}: {e}") from e
