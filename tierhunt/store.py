"""
KeyValueStore - persistence for circuit-breaker records and schedule patterns.

The store holds small JSON documents under string keys:
- zone_failures     (circuit breaker records)
- attempt_patterns  (adaptive scheduler history)

Concurrent attempt processes mutate the same keys, so every read-modify-write
goes through update(), a compare-and-swap loop, instead of get() + put().

Storage backends:
- In-memory (for testing)
- File-based (one JSON file per key, guarded by a FileLock)
"""

import copy
import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional

from tierhunt.errors import TransientError
from tierhunt.locking import DEFAULT_LOCK_TIMEOUT, DEFAULT_STALE_SECONDS, FileLock
from tierhunt.utils import atomic_write_json, read_json

logger = logging.getLogger(__name__)

DEFAULT_MAX_CAS_ATTEMPTS = 10

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStore(ABC):
    """
    Abstract base class for key-value persistence.

    Implementations must provide get, put and compare_and_swap; update() is
    built on top of them.
    """

    max_cas_attempts: int = DEFAULT_MAX_CAS_ATTEMPTS

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """
        Retrieve the value stored under key.

        Args:
            key: Store key

        Returns:
            The stored value, or None if absent
        """
        pass

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        """
        Unconditionally store value under key.

        Args:
            key: Store key
            value: JSON-serialisable value
        """
        pass

    @abstractmethod
    def compare_and_swap(self, key: str, expected: Optional[Any], new: Any) -> bool:
        """
        Store new under key only if the current value equals expected.

        Args:
            key: Store key
            expected: Value previously read (None meaning absent)
            new: Replacement value (None deletes the key)

        Returns:
            True if the swap happened, False if the value changed meanwhile
        """
        pass

    def update(self, key: str, fn: Callable[[Optional[Any]], Any]) -> Any:
        """
        Atomically apply fn to the current value and store the result.

        fn receives a private copy of the current value (None if absent) and
        returns the new value. It may be called more than once when writers
        race, so it must not have side effects.

        Returns:
            The value that was stored

        Raises:
            TransientError: If the swap kept losing races
        """
        for _ in range(self.max_cas_attempts):
            current = self.get(key)
            new = fn(copy.deepcopy(current))
            if self.compare_and_swap(key, current, new):
                return new
            logger.debug(f"Compare-and-swap on '{key}' lost a race, retrying")

        raise TransientError(
            f"Could not update '{key}' after {self.max_cas_attempts} attempts"
        )


class InMemoryStore(KeyValueStore):
    """
    In-memory implementation of KeyValueStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = copy.deepcopy(value)

    def compare_and_swap(self, key: str, expected: Optional[Any], new: Any) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            if new is None:
                self._data.pop(key, None)
            else:
                self._data[key] = copy.deepcopy(new)
            return True

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._data.clear()


class FileStore(KeyValueStore):
    """
    File-based implementation of KeyValueStore.

    Stores each key as a JSON file in a directory:
        store_dir/
            zone_failures.json
            zone_failures.json.lock   (only while a writer holds it)
            attempt_patterns.json

    A corrupt document reads as absent, so the next writer replaces it.
    """

    def __init__(
        self,
        store_dir: Path | str,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        stale_lock_seconds: float = DEFAULT_STALE_SECONDS,
    ):
        self._store_dir = Path(store_dir)
        self._store_dir.mkdir(parents=True, exist_ok=True)
        self._lock_timeout = lock_timeout
        self._stale_lock_seconds = stale_lock_seconds

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid store key: {key!r}")
        return self._store_dir / f"{key}.json"

    def _lock(self, key: str) -> FileLock:
        path = self._path(key)
        return FileLock(
            path.with_name(path.name + ".lock"),
            timeout=self._lock_timeout,
            stale_seconds=self._stale_lock_seconds,
        )

    def _read(self, key: str) -> Optional[Any]:
        path = self._path(key)
        try:
            return read_json(path)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(
                f"Discarding unreadable store document {path}: {e}",
                extra={"event": "store_document_corrupt", "metadata": {"key": key}},
            )
            return None

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        if value is None:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            return
        atomic_write_json(path, value)

    def get(self, key: str) -> Optional[Any]:
        return self._read(key)

    def put(self, key: str, value: Any) -> None:
        with self._lock(key):
            self._write(key, value)

    def compare_and_swap(self, key: str, expected: Optional[Any], new: Any) -> bool:
        with self._lock(key):
            if self._read(key) != expected:
                return False
            self._write(key, new)
            return True
