import threading
from collections.abc import Callable, MutableMapping
from typing import Generic, Protocol, TypeVar

from pydantic import BaseModel

from bloodmatch.errors import RecordNotFound

R = TypeVar("R", bound=BaseModel)

DONORS = "donors"
EMERGENCY_REQUESTS = "emergency_requests"
DONATION_RECORDS = "donation_records"
NOTIFICATIONS = "notifications"


class RecordStore(Protocol):
    """
    Boundary contract for the persistence backend (Firebase, PostgreSQL, ...).
    Records are keyed by their ``id`` within a named collection.
    """

    def get_all(self, collection: str) -> list[BaseModel]: ...

    def get(self, collection: str, record_id: str) -> BaseModel | None: ...

    def create(self, collection: str, record: BaseModel) -> None: ...

    def update(self, collection: str, record: BaseModel) -> None: ...

    def delete(self, collection: str, record_id: str) -> None: ...

    def mutate(
        self,
        collection: str,
        record_id: str,
        fn: Callable[[R], R],
    ) -> R: ...


class InMemoryRecordStore(Generic[R]):
    """
    Simple in-memory record store.

    Records are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self) -> None:
        self._collections: MutableMapping[str, MutableMapping[str, R]] = {}
        self._lock = threading.RLock()

    def _collection(self, collection: str) -> MutableMapping[str, R]:
        return self._collections.setdefault(collection, {})

    def get_all(self, collection: str) -> list[R]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._collection(collection).values()
            ]

    def get(self, collection: str, record_id: str) -> R | None:
        with self._lock:
            record = self._collection(collection).get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    def create(self, collection: str, record: R) -> None:
        with self._lock:
            records = self._collection(collection)
            if record.id in records:
                raise ValueError(f"{collection} record {record.id} already exists")
            records[record.id] = record.model_copy(deep=True)

    def update(self, collection: str, record: R) -> None:
        with self._lock:
            records = self._collection(collection)
            if record.id not in records:
                raise RecordNotFound(collection, record.id)
            records[record.id] = record.model_copy(deep=True)

    def delete(self, collection: str, record_id: str) -> None:
        with self._lock:
            self._collection(collection).pop(record_id, None)

    def mutate(self, collection: str, record_id: str, fn: Callable[[R], R]) -> R:
        """
        Atomically read-modify-write one record.

        ``fn`` gets a private copy and returns the new record. If it raises,
        nothing is written and the exception propagates, so a guard inside
        ``fn`` acts as a compare-and-swap on the record's current state.
        """
        with self._lock:
            current = self._collection(collection).get(record_id)
            if current is None:
                raise RecordNotFound(collection, record_id)
            updated = fn(current.model_copy(deep=True))
            self._collection(collection)[record_id] = updated.model_copy(deep=True)
            return updated.model_copy(deep=True)

    def clear(self) -> None:
        with self._lock:
            self._collections.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(records) for records in self._collections.values())
