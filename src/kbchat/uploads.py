"""
Upload batches: staged files, their per-file status, and concurrent dispatch.

A task moves queued -> uploading_to_server -> pending_openai and ends in
completed_openai or failed. Terminal states are final.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Protocol

from .config import MAX_UPLOAD_FILES, MAX_UPLOAD_SIZE_BYTES
from .knowledge_base import KnowledgeBaseRegistry
from .observability import get_logger
from .schemas import KnowledgeBaseEntry

logger = get_logger(__name__)


class UploadStatus(str, Enum):
    QUEUED = "queued"
    UPLOADING_TO_SERVER = "uploading_to_server"
    PENDING_OPENAI = "pending_openai"
    COMPLETED_OPENAI = "completed_openai"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED_OPENAI, UploadStatus.FAILED)


_TRANSITIONS: dict[UploadStatus, frozenset[UploadStatus]] = {
    UploadStatus.QUEUED: frozenset({UploadStatus.UPLOADING_TO_SERVER, UploadStatus.FAILED}),
    UploadStatus.UPLOADING_TO_SERVER: frozenset({UploadStatus.PENDING_OPENAI, UploadStatus.FAILED}),
    UploadStatus.PENDING_OPENAI: frozenset({UploadStatus.COMPLETED_OPENAI, UploadStatus.FAILED}),
    UploadStatus.COMPLETED_OPENAI: frozenset(),
    UploadStatus.FAILED: frozenset(),
}


class InvalidUploadTransition(ValueError):
    pass


class UploadClient(Protocol):
    async def upload_file(self, file_name: str, data: bytes) -> KnowledgeBaseEntry:
        ...


@dataclass
class UploadTask:
    task_id: str
    path: Path
    size: int
    status: UploadStatus = UploadStatus.QUEUED
    error: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.path.name

    @property
    def completed(self) -> bool:
        return self.status is UploadStatus.COMPLETED_OPENAI

    def advance(self, status: UploadStatus, error: Optional[str] = None) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidUploadTransition(
                f"upload task {self.task_id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.error = error if status is UploadStatus.FAILED else None


def status_label(task: UploadTask) -> str:
    if task.status is UploadStatus.QUEUED:
        return "Queued for processing..."
    if task.status is UploadStatus.UPLOADING_TO_SERVER:
        return "Uploading data..."
    if task.status is UploadStatus.PENDING_OPENAI:
        return "Adding to Knowledge Base..."
    if task.status is UploadStatus.COMPLETED_OPENAI:
        return "Added to Knowledge Base."
    return f"Failed: {task.error or 'Unknown error'}"


def format_bytes(size: int, decimals: int = 2) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB", "TB")
    index = 0
    value = float(size)
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, decimals):g} {units[index]}"


@dataclass(frozen=True)
class UploadSummary:
    completed: int
    failed: int

    @property
    def message(self) -> str:
        if self.failed:
            return f"Upload completed with {self.failed} failure(s); {self.completed} file(s) added."
        return f"Upload completed: {self.completed} file(s) added to Knowledge Base."


class UploadBatch:
    """Files staged for one upload round, keyed by task id."""

    def __init__(
        self,
        client: UploadClient,
        registry: KnowledgeBaseRegistry,
        max_files: int = MAX_UPLOAD_FILES,
        max_size: int = MAX_UPLOAD_SIZE_BYTES,
    ):
        self.client = client
        self.registry = registry
        self.max_files = max_files
        self.max_size = max_size
        self._tasks: dict[str, UploadTask] = {}

    @property
    def tasks(self) -> list[UploadTask]:
        return list(self._tasks.values())

    def get(self, task_id: str) -> Optional[UploadTask]:
        return self._tasks.get(task_id)

    def stage(self, paths: Iterable[str | Path]) -> list[str]:
        """Queues files for upload and returns one error string per rejected file."""
        errors: list[str] = []
        for raw in paths:
            path = Path(raw).expanduser()
            if not path.is_file():
                errors.append(f'File "{path}" was not found.')
                continue
            if len(self._tasks) >= self.max_files:
                errors.append(f"You can only upload a maximum of {self.max_files} files.")
                break
            size = path.stat().st_size
            if size > self.max_size:
                errors.append(
                    f'File "{path.name}" exceeds the maximum size of {format_bytes(self.max_size)}.'
                )
                continue
            task_id = f"{path.name}-{uuid.uuid4().hex[:8]}"
            self._tasks[task_id] = UploadTask(task_id=task_id, path=path, size=size)
        return errors

    def remove(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)

    def clear(self) -> None:
        self._tasks.clear()

    def _advance(self, task_id: str, status: UploadStatus, error: Optional[str] = None) -> bool:
        # A task dropped while in flight is ignored when its result arrives.
        task = self._tasks.get(task_id)
        if task is None:
            return False
        task.advance(status, error)
        return True

    async def run(self) -> UploadSummary:
        """Uploads every queued task concurrently and waits for all of them."""
        queued = [task.task_id for task in self._tasks.values() if task.status is UploadStatus.QUEUED]
        results = await asyncio.gather(*(self._upload_one(task_id) for task_id in queued))
        summary = UploadSummary(
            completed=sum(1 for ok in results if ok is True),
            failed=sum(1 for ok in results if ok is False),
        )
        logger.info("upload_batch_finished", completed=summary.completed, failed=summary.failed)
        return summary

    async def _upload_one(self, task_id: str) -> Optional[bool]:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        if not self._advance(task_id, UploadStatus.UPLOADING_TO_SERVER):
            return None
        try:
            data = await asyncio.to_thread(task.path.read_bytes)
            if not self._advance(task_id, UploadStatus.PENDING_OPENAI):
                return None
            entry = await self.client.upload_file(task.file_name, data)
            self.registry.add_entry(entry)
        except Exception as exc:
            message = str(exc) or "Unknown error during OpenAI processing."
            logger.warning("upload_task_failed", task_id=task_id, file_name=task.file_name, error=message)
            return False if self._advance(task_id, UploadStatus.FAILED, message) else None

        if not self._advance(task_id, UploadStatus.COMPLETED_OPENAI):
            return None
        return True
