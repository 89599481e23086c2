"""
In-memory document store.

Thread-safe: every read and write takes one store-wide lock, and each committed
write gets a fresh version number from a store-wide counter. Used by tests, local
demos, and as the base of the JSON file store.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from typing import Any

from campusmap.storage.base import Document, DocumentExists, VersionConflict

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """A dict-of-dicts store keyed by (collection, id)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._collections: dict[str, dict[str, tuple[int, dict[str, Any]]]] = {}
        self._clock = 0

    def _next_version(self) -> int:
        self._clock += 1
        return self._clock

    def _after_write(self) -> None:
        """Hook called with the lock held after every committed write."""

    def _snapshot(self, doc_id: str, entry: tuple[int, dict[str, Any]]) -> Document:
        version, data = entry
        return Document(id=doc_id, version=version, data=copy.deepcopy(data))

    def _commit(self, collection: str, doc_id: str, data: dict[str, Any]) -> Document:
        entry = (self._next_version(), copy.deepcopy(data))
        self._collections.setdefault(collection, {})[doc_id] = entry
        self._after_write()
        return self._snapshot(doc_id, entry)

    def get(self, collection: str, doc_id: str) -> Document | None:
        with self._lock:
            entry = self._collections.get(collection, {}).get(doc_id)
            return self._snapshot(doc_id, entry) if entry else None

    def add(self, collection: str, data: dict[str, Any]) -> Document:
        with self._lock:
            doc_id = uuid.uuid4().hex
            return self._commit(collection, doc_id, data)

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> Document:
        with self._lock:
            if doc_id in self._collections.get(collection, {}):
                raise DocumentExists(f"{collection}/{doc_id} already exists")
            return self._commit(collection, doc_id, data)

    def put(self, collection: str, doc_id: str, data: dict[str, Any]) -> Document:
        with self._lock:
            return self._commit(collection, doc_id, data)

    def put_if_version(
        self, collection: str, doc_id: str, data: dict[str, Any], *, expected_version: int
    ) -> Document:
        with self._lock:
            entry = self._collections.get(collection, {}).get(doc_id)
            if entry is None or entry[0] != expected_version:
                raise VersionConflict(
                    f"{collection}/{doc_id}: expected version {expected_version}, "
                    f"found {entry[0] if entry else 'missing'}"
                )
            return self._commit(collection, doc_id, data)

    def delete(self, collection: str, doc_id: str, *, expected_version: int | None = None) -> bool:
        with self._lock:
            docs = self._collections.get(collection, {})
            entry = docs.get(doc_id)
            if entry is None:
                return False
            if expected_version is not None and entry[0] != expected_version:
                raise VersionConflict(
                    f"{collection}/{doc_id}: expected version {expected_version}, found {entry[0]}"
                )
            del docs[doc_id]
            self._after_write()
            return True

    def scan(self, collection: str, *, limit: int | None = None) -> list[Document]:
        with self._lock:
            items = list(self._collections.get(collection, {}).items())
            if limit is not None:
                items = items[: max(0, int(limit))]
            return [self._snapshot(doc_id, entry) for doc_id, entry in items]

    def ping(self) -> None:
        return None
