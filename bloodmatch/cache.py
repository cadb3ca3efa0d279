"""
TTL-bounded read-through cache in front of a RecordStore.

Keys are ``<collection>:all`` for collection reads and
``<collection>:<id>`` for single records. A write invalidates the entries it
makes stale before returning, so the next read goes back to the store:

- create: the collection entry
- update / mutate: the record entry and the collection entry
- delete: the record entry and the collection entry
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from bloodmatch.database import RecordStore
from bloodmatch.errors import RecordNotFound

logger = logging.getLogger(__name__)

ClockFn = Callable[[], float]


@dataclass
class _Entry:
    value: Any
    stored_at: float
    ttl: float


class ReadThroughCache:
    def __init__(
        self,
        store: RecordStore,
        *,
        record_ttl: float = 300,
        collection_ttl: float = 120,
        cached_collections: Iterable[str] | None = None,
        clock: ClockFn = time.monotonic,
    ) -> None:
        self._store = store
        self._record_ttl = record_ttl
        self._collection_ttl = collection_ttl
        # None caches every collection
        self._cached_collections = (
            frozenset(cached_collections) if cached_collections is not None else None
        )
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        # bumped on invalidation so a read that raced a write is not stored
        self._generations: dict[str, int] = {}
        self._lock = threading.RLock()

    @property
    def store(self) -> RecordStore:
        return self._store

    def _caches(self, collection: str) -> bool:
        return self._cached_collections is None or collection in self._cached_collections

    def _lookup(self, key: str) -> _Entry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at >= entry.ttl:
                del self._entries[key]
                return None
            return entry

    def _generation(self, key: str) -> int:
        with self._lock:
            return self._generations.get(key, 0)

    def _remember(self, key: str, value: Any, ttl: float, generation: int) -> None:
        if ttl <= 0:
            return
        with self._lock:
            if self._generations.get(key, 0) != generation:
                return
            self._entries[key] = _Entry(value, self._clock(), ttl)

    def invalidate(self, collection: str, record_id: str | None = None) -> None:
        keys = [f"{collection}:all"]
        if record_id is not None:
            keys.append(f"{collection}:{record_id}")
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)
                self._generations[key] = self._generations.get(key, 0) + 1
        logger.debug("invalidated %s %s", collection, record_id or "(collection)")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_all(self, collection: str) -> list[BaseModel]:
        key = f"{collection}:all"
        if self._caches(collection):
            entry = self._lookup(key)
            if entry is not None:
                return [r.model_copy(deep=True) for r in entry.value]

        generation = self._generation(key)
        records = self._store.get_all(collection)
        if self._caches(collection):
            self._remember(
                key,
                [r.model_copy(deep=True) for r in records],
                self._collection_ttl,
                generation,
            )
        return records

    def get(self, collection: str, record_id: str) -> BaseModel | None:
        key = f"{collection}:{record_id}"
        entry = self._lookup(key)
        if entry is not None:
            return entry.value.model_copy(deep=True)

        generation = self._generation(key)
        record = self._store.get(collection, record_id)
        # absent records are not cached, a later create must be visible
        if record is not None:
            self._remember(
                key, record.model_copy(deep=True), self._record_ttl, generation
            )
        return record

    def require(self, collection: str, record_id: str) -> BaseModel:
        record = self.get(collection, record_id)
        if record is None:
            raise RecordNotFound(collection, record_id)
        return record

    def create(self, collection: str, record: BaseModel) -> None:
        self._store.create(collection, record)
        self.invalidate(collection)

    def update(self, collection: str, record: BaseModel) -> None:
        try:
            self._store.update(collection, record)
        finally:
            self.invalidate(collection, record.id)

    def delete(self, collection: str, record_id: str) -> None:
        try:
            self._store.delete(collection, record_id)
        finally:
            self.invalidate(collection, record_id)

    def mutate(self, collection: str, record_id: str, fn: Callable[[Any], Any]) -> Any:
        try:
            return self._store.mutate(collection, record_id, fn)
        finally:
            self.invalidate(collection, record_id)
