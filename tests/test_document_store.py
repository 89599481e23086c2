import json

import pytest

from campusmap.storage.base import DocumentExists, StoreUnavailable, VersionConflict
from campusmap.storage.file import JsonFileDocumentStore
from campusmap.storage.memory import InMemoryDocumentStore


def test_conditional_write_detects_interleaved_writer():
    store = InMemoryDocumentStore()
    doc = store.create("events", "e1", {"attendees": []})

    store.put("events", "e1", {"attendees": ["a"]})
    with pytest.raises(VersionConflict):
        store.put_if_version("events", "e1", {"attendees": ["b"]}, expected_version=doc.version)
    assert store.get("events", "e1").data == {"attendees": ["a"]}


def test_versions_never_repeat_after_delete_and_recreate():
    store = InMemoryDocumentStore()
    first = store.create("users", "u1", {"n": 1})
    store.delete("users", "u1")
    second = store.create("users", "u1", {"n": 2})
    assert second.version != first.version
    with pytest.raises(VersionConflict):
        store.put_if_version("users", "u1", {"n": 3}, expected_version=first.version)


def test_create_refuses_existing_ids_and_snapshots_are_copies():
    store = InMemoryDocumentStore()
    doc = store.create("locations", "l1", {"tags": ["a"]})
    doc.data["tags"].append("mutated")
    assert store.get("locations", "l1").data == {"tags": ["a"]}
    with pytest.raises(DocumentExists):
        store.create("locations", "l1", {})


def test_conditional_delete_and_scan_limit():
    store = InMemoryDocumentStore()
    docs = [store.add("events", {"i": i}) for i in range(3)]
    assert [d.data["i"] for d in store.scan("events", limit=2)] == [0, 1]

    with pytest.raises(VersionConflict):
        store.delete("events", docs[0].id, expected_version=docs[0].version + 100)
    assert store.delete("events", docs[0].id, expected_version=docs[0].version) is True
    assert store.delete("events", docs[0].id) is False


def test_file_store_persists_across_instances(tmp_path):
    path = tmp_path / "store" / "campusmap.json"
    store = JsonFileDocumentStore(path)
    doc = store.create("users", "u1", {"name": "Ann"})

    reopened = JsonFileDocumentStore(path)
    again = reopened.get("users", "u1")
    assert again == doc
    # The version clock survives too, so stale versions stay stale.
    newer = reopened.put("users", "u1", {"name": "Ann B"})
    assert newer.version > doc.version
    assert json.loads(path.read_text(encoding="utf-8"))["collections"]["users"]["u1"]["data"] == {"name": "Ann B"}


def test_file_store_rejects_corrupt_file(tmp_path):
    path = tmp_path / "campusmap.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreUnavailable):
        JsonFileDocumentStore(path)
