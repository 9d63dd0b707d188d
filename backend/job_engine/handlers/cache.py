"""Explicitly owned caches injected into task handlers."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
V = TypeVar("V")


class RefreshingCache(Generic[T]):
    """A single value produced by ``loader`` and reloaded after ``ttl_seconds``.

    Concurrent readers share one load; a failed reload keeps serving the
    previous value if there is one.
    """

    def __init__(
        self,
        loader: Callable[[], T],
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._value: T | None = None
        self._loaded_at: float | None = None

    def get(self) -> T:
        with self._lock:
            if self._loaded_at is None or self._clock() - self._loaded_at >= self._ttl:
                self._reload()
            return self._value  # type: ignore[return-value]

    def refresh(self) -> T:
        with self._lock:
            self._reload()
            return self._value  # type: ignore[return-value]

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None

    def _reload(self) -> None:
        try:
            self._value = self._loader()
        except Exception:
            if self._loaded_at is None:
                raise
            logger.warning("Cache reload failed, serving previous value", exc_info=True)
        self._loaded_at = self._clock()


class TTLCache(Generic[V]):
    """Per-key cache with expiry, e.g. verification results per address."""

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, V]] = {}

    def get(self, key: str) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self._ttl:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: V) -> None:
        with self._lock:
            if len(self._entries) >= self._max_entries:
                self._evict_expired()
            if len(self._entries) >= self._max_entries:
                # Drop the oldest insertion
                self._entries.pop(next(iter(self._entries)))
            self._entries[key] = (self._clock(), value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [k for k, (at, _) in self._entries.items() if now - at >= self._ttl]
        for key in expired:
            del self._entries[key]
