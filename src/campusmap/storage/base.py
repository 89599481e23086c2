"""
Document store contract.

The services only assume what a document database gives you: get-by-id, put,
delete, a full collection scan, and one conditional-write primitive
(`put_if_version`). There are no cross-document transactions and no geo index.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


class StoreError(Exception):
    """Base class for store-level signals (translated by the services)."""


class VersionConflict(StoreError):
    """The document changed (or vanished) since it was read."""


class DocumentExists(StoreError):
    """`create` found a document already stored under that id."""


class StoreUnavailable(StoreError):
    """The backing store cannot be reached or failed to persist."""


@dataclass(frozen=True)
class Document:
    """A stored document snapshot.

    `version` changes on every committed write and is never reused within a store,
    so a version read earlier can safely guard a later conditional write.
    """

    id: str
    version: int
    data: dict[str, Any]


class DocumentStore(Protocol):
    def get(self, collection: str, doc_id: str) -> Document | None: ...

    def add(self, collection: str, data: dict[str, Any]) -> Document: ...

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> Document: ...

    def put(self, collection: str, doc_id: str, data: dict[str, Any]) -> Document: ...

    def put_if_version(
        self, collection: str, doc_id: str, data: dict[str, Any], *, expected_version: int
    ) -> Document: ...

    def delete(self, collection: str, doc_id: str, *, expected_version: int | None = None) -> bool: ...

    def scan(self, collection: str, *, limit: int | None = None) -> list[Document]: ...

    def ping(self) -> None: ...
