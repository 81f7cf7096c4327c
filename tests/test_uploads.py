import asyncio
import tempfile
import unittest
from pathlib import Path

from kbchat.events import KnowledgeBaseEventBus, StoreAdded
from kbchat.knowledge_base import KnowledgeBaseRegistry
from kbchat.schemas import KnowledgeBaseEntry
from kbchat.storage_provider import InMemoryKeyValueStorage
from kbchat.uploads import (
    InvalidUploadTransition,
    UploadBatch,
    UploadStatus,
    UploadTask,
    format_bytes,
    status_label,
)


class _FakeUploadClient:
    """Answers uploads with file ids from `file_ids`; names in `failing` raise."""

    def __init__(self, file_ids=None, failing=(), gate: asyncio.Event | None = None):
        self.file_ids = dict(file_ids or {})
        self.failing = set(failing)
        self.gate = gate
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def upload_file(self, file_name, data):
        self.calls.append((file_name, data))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if file_name in self.failing:
                raise RuntimeError(f"Upload failed for {file_name}. Status: 500")
            return KnowledgeBaseEntry(
                name=file_name,
                file_id=self.file_ids.get(file_name, f"file-{file_name}"),
                vector_store_id="c1",
            )
        finally:
            self.in_flight -= 1


class _DiskFullStorage(InMemoryKeyValueStorage):
    def set_item(self, key, value):
        raise OSError("disk full")


class TestUploadTask(unittest.TestCase):
    def test_happy_path_transitions(self):
        task = UploadTask(task_id="t1", path=Path("a.txt"), size=3)
        task.advance(UploadStatus.UPLOADING_TO_SERVER)
        task.advance(UploadStatus.PENDING_OPENAI)
        task.advance(UploadStatus.COMPLETED_OPENAI)
        self.assertTrue(task.completed)
        self.assertTrue(task.status.is_terminal)

    def test_terminal_states_are_final(self):
        task = UploadTask(task_id="t1", path=Path("a.txt"), size=3)
        task.advance(UploadStatus.UPLOADING_TO_SERVER)
        task.advance(UploadStatus.FAILED, "boom")
        self.assertEqual(task.error, "boom")
        for status in UploadStatus:
            with self.assertRaises(InvalidUploadTransition):
                task.advance(status)

    def test_steps_cannot_be_skipped(self):
        task = UploadTask(task_id="t1", path=Path("a.txt"), size=3)
        with self.assertRaises(InvalidUploadTransition):
            task.advance(UploadStatus.COMPLETED_OPENAI)
        with self.assertRaises(InvalidUploadTransition):
            task.advance(UploadStatus.PENDING_OPENAI)

    def test_status_labels(self):
        task = UploadTask(task_id="t1", path=Path("a.txt"), size=3)
        self.assertEqual(status_label(task), "Queued for processing...")
        task.advance(UploadStatus.UPLOADING_TO_SERVER)
        task.advance(UploadStatus.FAILED)
        self.assertEqual(status_label(task), "Failed: Unknown error")

    def test_format_bytes(self):
        self.assertEqual(format_bytes(0), "0 Bytes")
        self.assertEqual(format_bytes(512), "512 Bytes")
        self.assertEqual(format_bytes(1536), "1.5 KB")
        self.assertEqual(format_bytes(5 * 1024 * 1024), "5 MB")


class TestUploadBatch(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.bus = KnowledgeBaseEventBus()
        self.added = []
        self.bus.subscribe(lambda event: self.added.append(event) if isinstance(event, StoreAdded) else None)
        self.registry = KnowledgeBaseRegistry(InMemoryKeyValueStorage(), self.bus, storage_key="kb")

    def tearDown(self):
        self.tmp.cleanup()

    def _file(self, name: str, content: bytes = b"data") -> Path:
        path = self.root / name
        path.write_bytes(content)
        return path

    def test_stage_rejects_missing_oversized_and_excess_files(self):
        client = _FakeUploadClient()
        batch = UploadBatch(client, self.registry, max_files=2, max_size=10)
        errors = batch.stage([
            self._file("a.txt"),
            self.root / "missing.txt",
            self._file("big.txt", b"x" * 11),
            self._file("b.txt"),
            self._file("c.txt"),
        ])
        self.assertEqual([t.file_name for t in batch.tasks], ["a.txt", "b.txt"])
        self.assertEqual(len(errors), 3)
        self.assertIn("missing.txt", errors[0])
        self.assertIn("big.txt", errors[1])
        self.assertIn("maximum of 2 files", errors[2])

    async def test_upload_adds_entry_to_registry(self):
        client = _FakeUploadClient(file_ids={"a.txt": "f1"})
        batch = UploadBatch(client, self.registry)
        batch.stage([self._file("a.txt", b"hello")])
        summary = await batch.run()

        self.assertEqual((summary.completed, summary.failed), (1, 0))
        self.assertEqual(client.calls, [("a.txt", b"hello")])
        self.assertEqual(
            self.registry.load_all(),
            [KnowledgeBaseEntry(name="a.txt", file_id="f1", vector_store_id="c1")],
        )
        self.assertEqual(batch.tasks[0].status, UploadStatus.COMPLETED_OPENAI)
        self.assertEqual(len(self.added), 1)

    async def test_reupload_with_same_file_id_keeps_one_entry(self):
        client = _FakeUploadClient(file_ids={"a.txt": "f1"})
        for _ in range(2):
            batch = UploadBatch(client, self.registry)
            batch.stage([self._file("a.txt")])
            await batch.run()
        self.assertEqual(len(self.registry.load_all()), 1)

    async def test_failures_are_isolated_per_task(self):
        client = _FakeUploadClient(failing={"b.txt"})
        batch = UploadBatch(client, self.registry)
        batch.stage([self._file("a.txt"), self._file("b.txt"), self._file("c.txt")])
        summary = await batch.run()

        self.assertEqual((summary.completed, summary.failed), (2, 1))
        self.assertIn("1 failure", summary.message)
        statuses = {t.file_name: t for t in batch.tasks}
        self.assertEqual(statuses["b.txt"].status, UploadStatus.FAILED)
        self.assertEqual(statuses["b.txt"].error, "Upload failed for b.txt. Status: 500")
        self.assertEqual(statuses["a.txt"].status, UploadStatus.COMPLETED_OPENAI)
        self.assertEqual({e.name for e in self.registry.load_all()}, {"a.txt", "c.txt"})

    async def test_registry_write_failure_fails_only_that_task(self):
        storage = _DiskFullStorage()
        registry = KnowledgeBaseRegistry(storage, self.bus, storage_key="kb")
        batch = UploadBatch(_FakeUploadClient(), registry)
        batch.stage([self._file("a.txt")])
        summary = await batch.run()

        self.assertEqual((summary.completed, summary.failed), (0, 1))
        task = batch.tasks[0]
        self.assertEqual(task.status, UploadStatus.FAILED)
        self.assertEqual(task.error, "disk full")
        self.assertEqual(registry.load_all(), [])

    async def test_uploads_overlap_in_flight(self):
        gate = asyncio.Event()
        client = _FakeUploadClient(gate=gate)
        batch = UploadBatch(client, self.registry)
        batch.stage([self._file("a.txt"), self._file("b.txt"), self._file("c.txt")])

        running = asyncio.create_task(batch.run())
        for _ in range(50):
            if client.in_flight == 3:
                break
            await asyncio.sleep(0.01)
        self.assertTrue(all(t.status is UploadStatus.PENDING_OPENAI for t in batch.tasks))
        gate.set()
        summary = await running
        self.assertEqual(client.max_in_flight, 3)
        self.assertEqual(summary.completed, 3)

    async def test_late_completion_for_removed_task_is_ignored(self):
        gate = asyncio.Event()
        client = _FakeUploadClient(gate=gate)
        batch = UploadBatch(client, self.registry)
        batch.stage([self._file("a.txt"), self._file("b.txt")])
        removed_id = batch.tasks[0].task_id

        running = asyncio.create_task(batch.run())
        for _ in range(50):
            if client.in_flight == 2:
                break
            await asyncio.sleep(0.01)
        batch.remove(removed_id)
        gate.set()
        summary = await running

        self.assertIsNone(batch.get(removed_id))
        self.assertEqual([t.file_name for t in batch.tasks], ["b.txt"])
        self.assertEqual(summary.completed, 1)
        # The remote file exists either way, so the registry still records it.
        self.assertEqual(len(self.registry.load_all()), 2)

    async def test_run_only_dispatches_queued_tasks(self):
        client = _FakeUploadClient()
        batch = UploadBatch(client, self.registry)
        batch.stage([self._file("a.txt")])
        await batch.run()
        batch.stage([self._file("b.txt")])
        await batch.run()
        self.assertEqual([name for name, _ in client.calls], ["a.txt", "b.txt"])
        batch.clear()
        self.assertEqual(batch.tasks, [])


if __name__ == "__main__":
    unittest.main()
