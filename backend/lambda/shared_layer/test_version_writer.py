"""test_version_writer.py — Tests for append-only version writes."""

from __future__ import annotations

import os
import sys
import unittest
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

from docflow_shared.errors import RecordNotFoundError, VersionConflictError, VersionWriteError
from docflow_shared.version_writer import VersionWriter
from docflow_shared.versioned_store import HeadMovedError, InMemoryDatabase, InMemoryVersionedStore


def _writer(db=None, **kwargs):
    db = db or InMemoryDatabase()
    writer = VersionWriter(
        store_factory=lambda kind: InMemoryVersionedStore(kind, f"t-{kind}", db),
        sleep=lambda _s: None,
        **kwargs,
    )
    return writer, db


class VersionWriterTests(unittest.TestCase):
    def test_create_generates_id_and_stamps_system_fields(self):
        writer, _ = _writer()
        rec = writer.create("Project", {"name": "Harbor", "active": False, "version": "bogus"}, updated_by="a@x.io")
        self.assertRegex(rec["id"], r"^\d{13}-[0-9a-z]{9}$")
        self.assertIs(rec["active"], True)
        self.assertEqual(rec["updatedAt"], rec["version"])
        self.assertEqual(rec["createdAt"], rec["version"])
        self.assertEqual(rec["updatedBy"], "a@x.io")
        self.assertEqual(writer.store("Project").get_head(rec["id"]), rec["version"])

    def test_update_merges_over_latest_and_keeps_created_at(self):
        writer, _ = _writer()
        v1 = writer.create("Project", {"name": "Harbor", "status": "draft"})
        v2 = writer.update("Project", v1["id"], {"status": "active"})
        self.assertEqual(v2["name"], "Harbor")
        self.assertEqual(v2["status"], "active")
        self.assertGreater(v2["version"], v1["version"])
        self.assertEqual(v2["createdAt"], v1["version"])

    def test_existing_rows_are_never_rewritten(self):
        writer, _ = _writer()
        v1 = writer.create("Document", {"formData": "{}"})
        writer.update("Document", v1["id"], {"formData": '{"a": 1}'})
        stored_v1 = writer.store("Document").get(v1["id"], v1["version"])
        self.assertEqual(stored_v1["formData"], "{}")
        self.assertIs(stored_v1["active"], True)

    def test_versions_strictly_increase_even_within_one_tick(self):
        writer, _ = _writer()
        rec = writer.create("Document", {"n": 0})
        versions = [rec["version"]]
        for n in range(1, 6):
            versions.append(writer.update("Document", rec["id"], {"n": n})["version"])
        self.assertEqual(versions, sorted(set(versions)))
        history = writer.history("Document", rec["id"])
        self.assertEqual([h["n"] for h in history], [5, 4, 3, 2, 1, 0])

    def test_update_missing_record_raises(self):
        writer, _ = _writer()
        with self.assertRaises(RecordNotFoundError):
            writer.update("Project", "nope", {"name": "x"})

    def test_tombstone_hides_record(self):
        writer, _ = _writer()
        rec = writer.create("Project", {"name": "Harbor"})
        tomb = writer.tombstone("Project", rec["id"])
        self.assertTrue(tomb["deleted"])
        self.assertIsNone(writer.latest("Project", rec["id"]))
        with self.assertRaises(RecordNotFoundError):
            writer.update("Project", rec["id"], {"name": "again"})

    def test_write_emits_one_insert_change(self):
        writer, db = _writer()
        writer.create("Document", {"formData": "{}"})
        self.assertEqual([c["eventName"] for c in db.drain_changes()], ["INSERT"])

    def test_latest_falls_back_to_active_rows_without_head(self):
        writer, _ = _writer()
        store = writer.store("Document")
        store.insert({"id": "legacy", "version": "2024-01-01T00:00:00.000Z", "active": True, "a": 1})
        store.insert({"id": "legacy", "version": "2024-02-01T00:00:00.000Z", "active": True, "a": 2})
        self.assertEqual(writer.latest("Document", "legacy")["a"], 2)
        rec = writer.update("Document", "legacy", {"b": 3})
        self.assertEqual((rec["a"], rec["b"]), (2, 3))
        self.assertGreater(rec["version"], "2024-02-01T00:00:00.000Z")


class ContentionTests(unittest.TestCase):
    def test_head_moved_is_retried(self):
        store = MagicMock()
        store.get_head.return_value = None
        store.latest.return_value = None
        store.insert_with_head.side_effect = [HeadMovedError("moved"), None]
        sleeps = []
        writer = VersionWriter(store_factory=lambda kind: store, sleep=sleeps.append, max_attempts=3)

        rec = writer.write("Document", "d1", {"a": 1})

        self.assertEqual(rec["id"], "d1")
        self.assertEqual(store.insert_with_head.call_count, 2)
        self.assertEqual(len(sleeps), 1)

    def test_persistent_contention_raises_conflict(self):
        store = MagicMock()
        store.get_head.return_value = None
        store.latest.return_value = None
        store.insert_with_head.side_effect = HeadMovedError("moved")
        writer = VersionWriter(store_factory=lambda kind: store, sleep=lambda _s: None, max_attempts=4)

        with self.assertRaises(VersionConflictError) as ctx:
            writer.write("Document", "d1", {"a": 1})
        self.assertEqual(ctx.exception.attempts, 4)
        self.assertEqual(store.insert_with_head.call_count, 4)
        self.assertIsInstance(ctx.exception, VersionWriteError)


def test_concurrent_writers_both_land_with_distinct_versions():
    db = InMemoryDatabase()
    first, _ = _writer(db)
    second, _ = _writer(db)
    rec = first.create("Document", {"n": 0})

    a = first.update("Document", rec["id"], {"n": 1})
    b = second.update("Document", rec["id"], {"n": 2})

    assert b["version"] > a["version"]
    assert first.latest("Document", rec["id"])["n"] == 2
    assert len(first.history("Document", rec["id"])) == 3


def test_store_errors_surface_as_version_write_error():
    store = MagicMock()
    store.get_head.return_value = None
    store.latest.return_value = None
    store.insert_with_head.side_effect = VersionWriteError("throttled")
    writer = VersionWriter(store_factory=lambda kind: store, sleep=lambda _s: None)
    with pytest.raises(VersionWriteError, match="throttled"):
        writer.create("Document", {})


def test_read_failures_surface_as_version_write_error():
    store = MagicMock()
    store.get_head.side_effect = ClientError(
        {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow"}}, "GetItem"
    )
    writer = VersionWriter(store_factory=lambda kind: store, sleep=lambda _s: None)
    with pytest.raises(VersionWriteError, match="ProvisionedThroughputExceededException"):
        writer.write("Document", "d1", {"formData": "{}"})
    store.insert_with_head.assert_not_called()


def test_update_over_millisecond_head_sorts_after_it():
    writer, _ = _writer()
    store = writer.store("Document")
    store.insert_with_head({"id": "d1", "version": "2025-01-31T09:15:02.123Z", "active": True, "n": 1}, None)

    rec = writer.update("Document", "d1", {"n": 2})

    assert rec["version"] > "2025-01-31T09:15:02.123Z"
    assert store.latest("d1")["n"] == 2
    assert writer.latest("Document", "d1")["n"] == 2
