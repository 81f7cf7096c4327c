import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from kbchat.events import (
    AllStoresCleared,
    KnowledgeBaseEventBus,
    StoreAdded,
    StoresModified,
    event_from_detail,
    resolve_selection,
)
from kbchat.knowledge_base import KnowledgeBaseRegistry
from kbchat.schemas import KnowledgeBaseEntry
from kbchat.storage_provider import InMemoryKeyValueStorage, SqliteKeyValueStorage

KEY = "openaiVectorizedFiles"


def _entry(file_id: str, store: str = "vs_1", name: str | None = None) -> KnowledgeBaseEntry:
    return KnowledgeBaseEntry(name=name or f"{file_id}.txt", file_id=file_id, vector_store_id=store)


class _Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)


def _remover(failing: set[str]):
    calls = []

    async def remove(entry):
        calls.append(entry.file_id)
        await asyncio.sleep(0)
        if entry.file_id in failing:
            raise RuntimeError(f"Failed to delete file {entry.file_id}.")

    return remove, calls


class TestKnowledgeBaseRegistry(unittest.TestCase):
    def setUp(self):
        self.storage = InMemoryKeyValueStorage()
        self.bus = KnowledgeBaseEventBus()
        self.events = _Recorder()
        self.bus.subscribe(self.events)
        self.registry = KnowledgeBaseRegistry(self.storage, self.bus, storage_key=KEY)

    def test_load_all_missing_key_is_empty(self):
        self.assertEqual(self.registry.load_all(), [])

    def test_persisted_layout_uses_wire_field_names(self):
        self.registry.add_entry(_entry("f1", "c1", name="a.txt"))
        stored = json.loads(self.storage.get_item(KEY))
        self.assertEqual(stored, [{"name": "a.txt", "fileId": "f1", "vectorStoreId": "c1"}])

    def test_add_entry_is_idempotent_by_file_id(self):
        self.registry.add_entry(_entry("f1", "c1", name="a.txt"))
        entries = self.registry.add_entry(_entry("f1", "c1", name="a.txt"))
        self.assertEqual(len(entries), 1)
        self.assertEqual(len(self.registry.load_all()), 1)
        self.assertEqual(len(self.events.events), 1)

    def test_add_entry_keeps_order_and_broadcasts_added(self):
        self.registry.add_entry(_entry("f1"))
        self.registry.add_entry(_entry("f2"))
        self.registry.add_entry(_entry("f1"))
        self.assertEqual([e.file_id for e in self.registry.load_all()], ["f1", "f2"])
        self.assertTrue(all(isinstance(e, StoreAdded) for e in self.events.events))
        self.assertEqual(self.events.events[-1].entry.file_id, "f2")

    def test_duplicate_names_are_allowed(self):
        self.registry.add_entry(_entry("f1", name="same.txt"))
        self.registry.add_entry(_entry("f2", name="same.txt"))
        self.assertEqual(len(self.registry.load_all()), 2)

    def test_corrupt_blob_is_discarded(self):
        self.storage.set_item(KEY, "{not json")
        self.assertEqual(self.registry.load_all(), [])
        self.assertIsNone(self.storage.get_item(KEY))

    def test_wrong_shape_blob_is_discarded(self):
        self.storage.set_item(KEY, json.dumps([{"name": "a.txt"}]))
        self.assertEqual(self.registry.load_all(), [])
        self.assertIsNone(self.storage.get_item(KEY))

    def test_clear_all_success_removes_key_and_broadcasts_cleared(self):
        for fid in ("f1", "f2", "f3"):
            self.registry.add_entry(_entry(fid))
        remove, calls = _remover(set())
        report = asyncio.run(self.registry.clear_all(self.registry.load_all(), remove))
        self.assertEqual(sorted(calls), ["f1", "f2", "f3"])
        self.assertEqual(len(report.removed), 3)
        self.assertEqual(report.failed, [])
        self.assertIsNone(self.storage.get_item(KEY))
        self.assertIsInstance(self.events.events[-1], AllStoresCleared)
        self.assertEqual(report.message, "All 3 files successfully cleared from Knowledge Base and local list.")

    def test_clear_all_partial_failure_keeps_failed_entries(self):
        for fid in ("f1", "f2", "f3"):
            self.registry.add_entry(_entry(fid))
        remove, _calls = _remover({"f2"})
        report = asyncio.run(self.registry.clear_all(self.registry.load_all(), remove))

        self.assertEqual([e.file_id for e in self.registry.load_all()], ["f2"])
        self.assertEqual(
            [(o.file_id, o.success) for o in report.outcomes],
            [("f1", True), ("f2", False), ("f3", True)],
        )
        self.assertIn("Failed to delete file f2.", report.failed[0].error)
        self.assertIsInstance(self.events.events[-1], StoresModified)
        self.assertTrue(report.message.startswith("1 file(s) could not be cleared: f2.txt ("))
        self.assertTrue(report.message.endswith(". Local list updated."))

    def test_clear_all_counts_for_mixed_batches(self):
        ids = [f"f{i}" for i in range(7)]
        for fid in ids:
            self.registry.add_entry(_entry(fid))
        failing = {"f1", "f4", "f6"}
        remove, _calls = _remover(failing)
        report = asyncio.run(self.registry.clear_all(self.registry.load_all(), remove))
        self.assertEqual(len(report.outcomes), 7)
        self.assertEqual({o.file_id for o in report.failed}, failing)
        self.assertEqual({e.file_id for e in self.registry.load_all()}, failing)

    def test_clear_all_with_nothing_to_clear_is_a_no_op(self):
        remove, calls = _remover(set())
        report = asyncio.run(self.registry.clear_all([], remove))
        self.assertEqual(calls, [])
        self.assertEqual(self.events.events, [])
        self.assertEqual(report.message, "No files to clear from Knowledge Base.")


class TestKnowledgeBaseEvents(unittest.TestCase):
    def test_detail_shapes_have_exactly_one_field(self):
        entry = _entry("f1", "c1", name="a.txt")
        self.assertEqual(
            StoreAdded(entry).to_detail(),
            {"newStore": {"name": "a.txt", "fileId": "f1", "vectorStoreId": "c1"}},
        )
        self.assertEqual(AllStoresCleared().to_detail(), {"allStoresCleared": True})
        self.assertEqual(StoresModified().to_detail(), {"storesModified": True})

    def test_event_from_detail(self):
        parsed = event_from_detail({"newStore": {"name": "a.txt", "fileId": "f1", "vectorStoreId": "c1"}})
        self.assertIsInstance(parsed, StoreAdded)
        self.assertEqual(parsed.entry.vector_store_id, "c1")
        self.assertIsInstance(event_from_detail({"storesModified": True}), StoresModified)
        with self.assertRaises(ValueError):
            event_from_detail({"storesModified": True, "allStoresCleared": True})
        with self.assertRaises(ValueError):
            event_from_detail({})

    def test_failing_listener_does_not_block_others(self):
        bus = KnowledgeBaseEventBus()
        seen = _Recorder()

        def broken(_event):
            raise RuntimeError("listener exploded")

        bus.subscribe(broken)
        bus.subscribe(seen)
        bus.publish(AllStoresCleared())
        self.assertEqual(len(seen.events), 1)

    def test_registry_mutation_survives_failing_listener(self):
        bus = KnowledgeBaseEventBus()
        seen = _Recorder()

        def broken(_event):
            raise RuntimeError("listener exploded")

        bus.subscribe(broken)
        bus.subscribe(seen)
        registry = KnowledgeBaseRegistry(InMemoryKeyValueStorage(), bus, storage_key=KEY)
        entries = registry.add_entry(_entry("f1"))
        self.assertEqual([e.file_id for e in entries], ["f1"])
        self.assertEqual([e.file_id for e in registry.load_all()], ["f1"])
        self.assertIsInstance(seen.events[0], StoreAdded)

    def test_unsubscribe_is_idempotent(self):
        bus = KnowledgeBaseEventBus()
        seen = _Recorder()
        unsubscribe = bus.subscribe(seen)
        unsubscribe()
        unsubscribe()
        bus.publish(StoresModified())
        self.assertEqual(seen.events, [])
        self.assertEqual(bus.listener_count, 0)

    def test_resolve_selection_rules(self):
        entries = [_entry("f1", "c1"), _entry("f2", "c2")]
        self.assertEqual(resolve_selection(StoreAdded(_entry("f3", "c3")), entries, "c1"), "c3")
        self.assertIsNone(resolve_selection(AllStoresCleared(), [], "c1"))
        self.assertEqual(resolve_selection(StoresModified(), entries, "c2"), "c2")
        self.assertIsNone(resolve_selection(StoresModified(), entries, "c9"))
        self.assertIsNone(resolve_selection(StoresModified(), entries, None))


class TestSqliteKeyValueStorage(unittest.TestCase):
    def test_items_survive_reopen(self):
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "local.sqlite"
            storage = SqliteKeyValueStorage(db_path)
            try:
                storage.set_item(KEY, "[]")
                storage.set_item(KEY, '[{"name": "a"}]')
            finally:
                storage.close()

            reopened = SqliteKeyValueStorage(db_path)
            try:
                self.assertEqual(reopened.get_item(KEY), '[{"name": "a"}]')
                self.assertEqual(reopened.schema_version, 2)
                reopened.remove_item(KEY)
                self.assertIsNone(reopened.get_item(KEY))
            finally:
                reopened.close()

    def test_close_is_idempotent_and_blocks_use(self):
        with tempfile.TemporaryDirectory() as td:
            storage = SqliteKeyValueStorage(Path(td) / "local.sqlite")
            storage.close()
            storage.close()
            with self.assertRaises(RuntimeError):
                storage.get_item(KEY)

    def test_registry_over_sqlite_storage(self):
        with tempfile.TemporaryDirectory() as td:
            storage = SqliteKeyValueStorage(Path(td) / "local.sqlite")
            try:
                registry = KnowledgeBaseRegistry(storage, KnowledgeBaseEventBus(), storage_key=KEY)
                registry.add_entry(_entry("f1", "c1", name="a.txt"))
                registry.add_entry(_entry("f1", "c1", name="a.txt"))
                self.assertEqual(
                    registry.load_all(),
                    [KnowledgeBaseEntry(name="a.txt", file_id="f1", vector_store_id="c1")],
                )
            finally:
                storage.close()


if __name__ == "__main__":
    unittest.main()
