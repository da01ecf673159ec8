"""Durable key-value stores.

The engine persists three kinds of records here: the single job record,
rate-limit counters and circuit states. Values must be JSON-serializable.
Only atomic single-key reads and writes are assumed, plus an atomic
increment for counters.
"""

from __future__ import annotations

import copy
import json
import threading
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import quote, unquote

from analysis_engine.resilience.errors import StoreError
from analysis_engine.scheduling.clock import Clock, SystemClock
from analysis_engine.utils.atomic import AtomicWriteError, atomic_write_json
from analysis_engine.utils.logging import get_logger

logger = get_logger("storage")


class KeyValueStore(Protocol):
    def load(self, key: str, default: Any = None) -> Any:
        ...

    def save(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        ...

    def keys(self, prefix: str = "") -> list[str]:
        ...


class MemoryStore:
    """
    In-process store with TTL expiry.

    Values are deep-copied on the way in and out so callers can never
    mutate persisted state by accident, matching the behavior of a real
    backend.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._data: dict[str, tuple[Any, Optional[float]]] = {}
        self._lock = threading.RLock()

    def load(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return default
            return copy.deepcopy(entry[0])

    def save(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Add to an integer counter; the TTL is only set when the key is created."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                value, expires_at = 0, self._expiry(ttl)
            else:
                value, expires_at = int(entry[0]), entry[1]
            value += amount
            self._data[key] = (value, expires_at)
            return value

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(
                key for key in list(self._data)
                if key.startswith(prefix) and self._live_entry(key) is not None
            )

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return self.clock.now() + ttl if ttl is not None else None

    def _live_entry(self, key: str) -> Optional[tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] is not None and entry[1] <= self.clock.now():
            del self._data[key]
            return None
        return entry


class FileStore:
    """
    File-backed store, one JSON document per key.

    Writes go through atomic_write_json so a crash never leaves a torn
    record. Counter increments are serialized with a process-local lock;
    processes sharing a directory need an external lock.
    """

    SUFFIX = ".json"

    def __init__(self, state_dir: str | Path, clock: Optional[Clock] = None) -> None:
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock or SystemClock()
        self._lock = threading.RLock()

    def _get_path(self, key: str) -> Path:
        return self.state_dir / f"{quote(key, safe='')}{self.SUFFIX}"

    def load(self, key: str, default: Any = None) -> Any:
        with self._lock:
            document = self._read(key)
            if document is None:
                return default
            return document["value"]

    def save(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._write(key, value, self.clock.now() + ttl if ttl is not None else None)

    def delete(self, key: str) -> bool:
        path = self._get_path(key)
        with self._lock:
            if not path.exists():
                return False
            try:
                path.unlink()
            except OSError as e:
                raise StoreError(f"Failed to delete storage key '{key}': {e}") from e
            logger.debug("store_delete", key=key)
            return True

    def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        with self._lock:
            document = self._read(key)
            if document is None:
                value = amount
                expires_at = self.clock.now() + ttl if ttl is not None else None
            else:
                value = int(document["value"]) + amount
                expires_at = document.get("expires_at")
            self._write(key, value, expires_at)
            return value

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            found = []
            for path in self.state_dir.glob(f"*{self.SUFFIX}"):
                key = unquote(path.name[: -len(self.SUFFIX)])
                if key.startswith(prefix) and self._read(key) is not None:
                    found.append(key)
            return sorted(found)

    def _read(self, key: str) -> Optional[dict[str, Any]]:
        path = self._get_path(key)
        if not path.exists():
            return None

        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt storage record '{key}': {e}") from e
        except OSError as e:
            raise StoreError(f"Failed to read storage key '{key}': {e}") from e

        expires_at = document.get("expires_at")
        if expires_at is not None and expires_at <= self.clock.now():
            try:
                path.unlink()
            except OSError:
                logger.warning("store_expire_failed", key=key)
            return None

        return document

    def _write(self, key: str, value: Any, expires_at: Optional[float]) -> None:
        try:
            atomic_write_json(
                self._get_path(key),
                {"key": key, "value": value, "expires_at": expires_at},
            )
        except AtomicWriteError as e:
            raise StoreError(f"Failed to write storage key '{key}': {e}") from e
        logger.debug("store_write", key=key)


def build_store(backend: str, state_dir: Optional[Path] = None, clock: Optional[Clock] = None):
    """
    Create the store named in configuration.

    Raises:
        ValueError: For an unknown backend or a file backend without a directory
    """
    if backend == "memory":
        return MemoryStore(clock=clock)
    if backend == "file":
        if state_dir is None:
            raise ValueError("The file storage backend requires a state directory")
        return FileStore(state_dir, clock=clock)
    raise ValueError(f"Unknown storage backend: {backend}")
