"""
JSON-file-backed document store.

Same semantics as `InMemoryDocumentStore`; after every committed write the whole
store is rewritten to disk (temp file + atomic replace), so a crash leaves either
the old or the new snapshot, never a torn file. Meant for single-process demos.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from campusmap.storage.base import StoreUnavailable
from campusmap.storage.memory import InMemoryDocumentStore

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 1


class JsonFileDocumentStore(InMemoryDocumentStore):
    def __init__(self, path: Path):
        super().__init__()
        self._path = path
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(f"Cannot read store file {self._path}: {exc}") from exc

        self._clock = int(raw.get("clock", 0))
        for collection, docs in (raw.get("collections") or {}).items():
            bucket = self._collections.setdefault(collection, {})
            for doc_id, entry in docs.items():
                bucket[doc_id] = (int(entry["version"]), dict(entry["data"]))
        logger.info("Loaded document store from %s (%s collections)", self._path, len(self._collections))

    def _after_write(self) -> None:
        payload: dict[str, Any] = {
            "format": _FORMAT_VERSION,
            "clock": self._clock,
            "collections": {
                collection: {doc_id: {"version": v, "data": data} for doc_id, (v, data) in docs.items()}
                for collection, docs in self._collections.items()
            },
        }
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot persist store file {self._path}: {exc}") from exc

    def ping(self) -> None:
        if not os.access(self._path.parent if self._path.parent.exists() else Path.cwd(), os.W_OK):
            raise StoreUnavailable(f"Store directory for {self._path} is not writable")
