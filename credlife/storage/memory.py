from __future__ import annotations

import copy
import fnmatch
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from credlife.logging import get_logger
from credlife.storage.common import (
    OTP_COLLECTION,
    SESSION_COLLECTION,
    Document,
    Filter,
    Patch,
    SortSpec,
    apply_patch,
    matches_filter,
    sort_documents,
)
from credlife.storage.errors import ConstraintViolation, StorageUnavailable
from credlife.storage.models import utcnow

# Unique key fields per collection, with an optional filter restricting which
# documents participate (a partial index in Postgres terms).
_UNIQUE_CONSTRAINTS: Dict[str, Tuple[Tuple[str, ...], Optional[Filter]]] = {
    OTP_COLLECTION: (("email", "purpose"), None),
    SESSION_COLLECTION: (("token_hash",), {"is_active": True}),
}


class MemoryCollection:
    """Dict-backed collection evaluating the same filters as the Postgres store."""

    def __init__(self, name: str, lock: threading.RLock) -> None:
        self.name = name
        self._lock = lock
        self._docs: Dict[str, Document] = {}
        self._unique = _UNIQUE_CONSTRAINTS.get(name)

    def _violates_unique(self, candidate: Document, *, ignore_id: Optional[str] = None) -> bool:
        if not self._unique:
            return False
        fields, partial = self._unique
        if partial and not matches_filter(candidate, partial):
            return False
        key = tuple(candidate.get(f) for f in fields)
        for doc_id, doc in self._docs.items():
            if doc_id == ignore_id:
                continue
            if partial and not matches_filter(doc, partial):
                continue
            if tuple(doc.get(f) for f in fields) == key:
                return True
        return False

    def create(self, doc: Document) -> Document:
        stored = apply_patch({}, {"$set": doc})
        doc_id = stored.get("id")
        if not doc_id:
            raise ValueError("documents require an id")
        with self._lock:
            if doc_id in self._docs or self._violates_unique(stored):
                raise ConstraintViolation(
                    f"duplicate key in {self.name}", {"collection": self.name}
                )
            self._docs[doc_id] = stored
        return copy.deepcopy(stored)

    def find_one(self, flt: Filter) -> Optional[Document]:
        with self._lock:
            for doc in self._docs.values():
                if matches_filter(doc, flt):
                    return copy.deepcopy(doc)
        return None

    def find(self, flt: Filter, sort: Optional[SortSpec] = None) -> List[Document]:
        with self._lock:
            found = [copy.deepcopy(d) for d in self._docs.values() if matches_filter(d, flt)]
        return sort_documents(found, sort)

    def update(self, flt: Filter, patch: Patch) -> int:
        with self._lock:
            targets = [doc_id for doc_id, doc in self._docs.items() if matches_filter(doc, flt)]
            staged: Dict[str, Document] = {}
            for doc_id in targets:
                updated = apply_patch(copy.deepcopy(self._docs[doc_id]), patch)
                if self._violates_unique(updated, ignore_id=doc_id):
                    raise ConstraintViolation(
                        f"duplicate key in {self.name}", {"collection": self.name}
                    )
                staged[doc_id] = updated
            self._docs.update(staged)
        return len(staged)

    def delete(self, flt: Filter) -> int:
        with self._lock:
            targets = [doc_id for doc_id, doc in self._docs.items() if matches_filter(doc, flt)]
            for doc_id in targets:
                del self._docs[doc_id]
        return len(targets)

    def __len__(self) -> int:
        with self._lock:
            return len(self._docs)


class MemoryDocumentStore:
    """In-process durable tier for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        # RLock for all data operations; collections share it so multi-collection
        # reads see a consistent view
        self._data_lock = threading.RLock()
        self._collections: Dict[str, MemoryCollection] = {}

    def collection(self, name: str) -> MemoryCollection:
        with self._data_lock:
            coll = self._collections.get(name)
            if coll is None:
                coll = MemoryCollection(name, self._data_lock)
                self._collections[name] = coll
            return coll

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None


class MemoryKeyValueStore:
    """In-process ephemeral tier with Redis-compatible TTL semantics.

    Expiry is evaluated against the injected clock, so tests can move time
    forward without sleeping. ``ttl`` follows Redis: -2 for a missing key and
    -1 for a key without expiry.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._lock = threading.RLock()
        self._values: Dict[str, object] = {}
        self._expiry: Dict[str, datetime] = {}

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    def _live(self, key: str) -> bool:
        self._purge(key)
        return key in self._values

    def _arm(self, key: str, ttl_seconds: int) -> None:
        self._expiry[key] = self._clock() + timedelta(seconds=max(1, int(ttl_seconds)))

    def _string(self, key: str) -> Optional[str]:
        if not self._live(key):
            return None
        value = self._values[key]
        if not isinstance(value, str):
            raise StorageUnavailable(
                "WRONGTYPE operation against a key holding the wrong kind of value",
                backend="memory",
                operation="get",
            )
        return value

    def _set_members(self, key: str, operation: str) -> Set[str]:
        if not self._live(key):
            return set()
        value = self._values[key]
        if not isinstance(value, set):
            raise StorageUnavailable(
                "WRONGTYPE operation against a key holding the wrong kind of value",
                backend="memory",
                operation=operation,
            )
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._string(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = str(value)
            self._arm(key, ttl_seconds)

    async def set_many(self, values: Mapping[str, str], ttl_seconds: int) -> None:
        with self._lock:
            for key, value in values.items():
                self._values[key] = str(value)
                self._arm(key, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key):
                    removed += 1
                self._values.pop(key, None)
                self._expiry.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        with self._lock:
            return sum(1 for key in keys if self._live(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            if not self._live(key):
                return False
            self._arm(key, ttl_seconds)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            if not self._live(key):
                return -2
            deadline = self._expiry.get(key)
            if deadline is None:
                return -1
            return max(0, int((deadline - self._clock()).total_seconds()))

    async def incr(self, key: str) -> int:
        with self._lock:
            raw = self._string(key)
            try:
                value = int(raw) if raw is not None else 0
            except ValueError as exc:
                raise StorageUnavailable(
                    "value is not an integer or out of range",
                    backend="memory",
                    operation="incr",
                ) from exc
            value += 1
            # INCR keeps any existing expiry
            self._values[key] = str(value)
            return value

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._set_members(key, "sadd")
            if key not in self._values:
                self._values[key] = current
            added = len(set(members) - current)
            current.update(members)
            return added

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._set_members(key, "smembers"))

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._set_members(key, "srem")
            removed = len(current & set(members))
            current.difference_update(members)
            if key in self._values and not current:
                # Redis drops empty sets
                self._values.pop(key, None)
                self._expiry.pop(key, None)
            return removed

    async def scan_keys(self, pattern: str) -> List[str]:
        with self._lock:
            keys: Sequence[str] = list(self._values.keys())
            return sorted(k for k in keys if self._live(k) and fnmatch.fnmatchcase(k, pattern))

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None
