"""
Timeout-bounded views of the two external collaborators.

Services never call a store or provider directly; they call these wrappers, which
run each call under `call_with_timeout` and turn outages into
`UpstreamUnavailable`. Store conflict signals (`VersionConflict`,
`DocumentExists`) and identity signals other than unavailability pass through
unchanged for the service to interpret.
"""

from __future__ import annotations

from typing import Any

from campusmap.core.calls import call_with_timeout
from campusmap.identity.base import IdentityProvider, IdentityProviderUnavailable, VerifiedToken
from campusmap.storage.base import Document, DocumentStore, StoreUnavailable

STORE_SIDE = "document_store"
IDENTITY_SIDE = "identity_provider"


class GuardedStore:
    def __init__(self, store: DocumentStore, *, timeout_seconds: float | None):
        self._store = store
        self._timeout = timeout_seconds

    def _call(self, what: str, fn, *args: Any, **kwargs: Any) -> Any:
        return call_with_timeout(
            fn,
            *args,
            timeout_seconds=self._timeout,
            what=f"store {what}",
            side=STORE_SIDE,
            unavailable=(StoreUnavailable,),
            **kwargs,
        )

    def get(self, collection: str, doc_id: str) -> Document | None:
        return self._call(f"get {collection}/{doc_id}", self._store.get, collection, doc_id)

    def add(self, collection: str, data: dict[str, Any]) -> Document:
        return self._call(f"add {collection}", self._store.add, collection, data)

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> Document:
        return self._call(f"create {collection}/{doc_id}", self._store.create, collection, doc_id, data)

    def put(self, collection: str, doc_id: str, data: dict[str, Any]) -> Document:
        return self._call(f"put {collection}/{doc_id}", self._store.put, collection, doc_id, data)

    def put_if_version(
        self, collection: str, doc_id: str, data: dict[str, Any], *, expected_version: int
    ) -> Document:
        return self._call(
            f"conditional put {collection}/{doc_id}",
            self._store.put_if_version,
            collection,
            doc_id,
            data,
            expected_version=expected_version,
        )

    def delete(self, collection: str, doc_id: str, *, expected_version: int | None = None) -> bool:
        return self._call(
            f"delete {collection}/{doc_id}",
            self._store.delete,
            collection,
            doc_id,
            expected_version=expected_version,
        )

    def scan(self, collection: str, *, limit: int | None = None) -> list[Document]:
        return self._call(f"scan {collection}", self._store.scan, collection, limit=limit)

    def ping(self) -> None:
        self._call("ping", self._store.ping)


class GuardedIdentityProvider:
    def __init__(self, provider: IdentityProvider, *, timeout_seconds: float | None):
        self._provider = provider
        self._timeout = timeout_seconds

    def _call(self, what: str, fn, *args: Any, **kwargs: Any) -> Any:
        return call_with_timeout(
            fn,
            *args,
            timeout_seconds=self._timeout,
            what=f"identity provider {what}",
            side=IDENTITY_SIDE,
            unavailable=(IdentityProviderUnavailable,),
            **kwargs,
        )

    def create_identity(
        self, *, email: str, display_name: str, password: str | None = None, uid: str | None = None
    ) -> str:
        return self._call(
            "create_identity",
            self._provider.create_identity,
            email=email,
            display_name=display_name,
            password=password,
            uid=uid,
        )

    def has_identity(self, uid: str) -> bool:
        return self._call(f"has_identity {uid}", self._provider.has_identity, uid)

    def delete_identity(self, uid: str) -> None:
        self._call(f"delete_identity {uid}", self._provider.delete_identity, uid)

    def set_claims(self, uid: str, claims: dict[str, Any]) -> None:
        self._call(f"set_claims {uid}", self._provider.set_claims, uid, claims)

    def verify_token(self, token: str) -> VerifiedToken:
        return self._call("verify_token", self._provider.verify_token, token)
