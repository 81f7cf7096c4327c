# /kbchat/knowledge_base.py
"""
Local knowledge-base registry.

Keeps the ordered list of indexed files in client-local storage under one key,
broadcasts every mutation, and drives bulk deletion against the remote
document index with per-entry failure accounting.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from pydantic import TypeAdapter, ValidationError

from .config import KNOWLEDGE_BASE_STORAGE_KEY
from .events import AllStoresCleared, KnowledgeBaseEventBus, StoreAdded, StoresModified
from .observability import get_logger
from .schemas import KnowledgeBaseEntry
from .storage_provider import KeyValueStorage

logger = get_logger(__name__)

_ENTRY_LIST = TypeAdapter(list[KnowledgeBaseEntry])

RemoveEntry = Callable[[KnowledgeBaseEntry], Awaitable[None]]


@dataclass(frozen=True)
class ClearOutcome:
    file_id: str
    file_name: str
    success: bool
    error: str | None = None


@dataclass
class ClearReport:
    outcomes: list[ClearOutcome] = field(default_factory=list)

    @property
    def removed(self) -> list[ClearOutcome]:
        return [outcome for outcome in self.outcomes if outcome.success]

    @property
    def failed(self) -> list[ClearOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    @property
    def message(self) -> str:
        if not self.outcomes:
            return "No files to clear from Knowledge Base."
        failed = self.failed
        if not failed:
            return f"All {len(self.outcomes)} files successfully cleared from Knowledge Base and local list."
        details = ", ".join(f"{outcome.file_name} ({outcome.error})" for outcome in failed)
        return f"{len(failed)} file(s) could not be cleared: {details}. Local list updated."


class KnowledgeBaseRegistry:
    """Single source of truth for which remote files and vector stores exist."""

    def __init__(
        self,
        storage: KeyValueStorage,
        bus: KnowledgeBaseEventBus,
        storage_key: str = KNOWLEDGE_BASE_STORAGE_KEY,
    ):
        self.storage = storage
        self.bus = bus
        self.storage_key = storage_key

    def load_all(self) -> list[KnowledgeBaseEntry]:
        raw = self.storage.get_item(self.storage_key)
        if raw is None:
            return []
        try:
            return _ENTRY_LIST.validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "knowledge_base_blob_discarded",
                storage_key=self.storage_key,
                error_count=exc.error_count(),
            )
            self.storage.remove_item(self.storage_key)
            return []

    def _save(self, entries: Sequence[KnowledgeBaseEntry]) -> None:
        self.storage.set_item(
            self.storage_key,
            _ENTRY_LIST.dump_json(list(entries), by_alias=True).decode("utf-8"),
        )

    def add_entry(self, entry: KnowledgeBaseEntry) -> list[KnowledgeBaseEntry]:
        """Appends `entry` unless its file id is already registered."""
        entries = self.load_all()
        if any(existing.file_id == entry.file_id for existing in entries):
            return entries
        entries.append(entry)
        self._save(entries)
        logger.info(
            "knowledge_base_entry_added",
            file_id=entry.file_id,
            vector_store_id=entry.vector_store_id,
            total=len(entries),
        )
        self.bus.publish(StoreAdded(entry))
        return entries

    async def clear_all(self, entries: Sequence[KnowledgeBaseEntry], remove: RemoveEntry) -> ClearReport:
        """
        Removes every entry from the remote index concurrently, then rewrites
        the local list to hold only the entries that could not be removed.
        """
        snapshot = list(entries)
        if not snapshot:
            return ClearReport()

        outcomes = await asyncio.gather(*(self._clear_one(entry, remove) for entry in snapshot))
        report = ClearReport(outcomes=list(outcomes))

        removed_ids = {outcome.file_id for outcome in report.removed}
        if not report.failed:
            self.storage.remove_item(self.storage_key)
            self.bus.publish(AllStoresCleared())
        else:
            self._save([entry for entry in snapshot if entry.file_id not in removed_ids])
            self.bus.publish(StoresModified())

        logger.info(
            "knowledge_base_cleared",
            requested=len(snapshot),
            removed=len(report.removed),
            failed=len(report.failed),
        )
        return report

    @staticmethod
    async def _clear_one(entry: KnowledgeBaseEntry, remove: RemoveEntry) -> ClearOutcome:
        try:
            await remove(entry)
        except Exception as exc:
            logger.warning("knowledge_base_entry_removal_failed", file_id=entry.file_id, error=str(exc))
            return ClearOutcome(entry.file_id, entry.name, success=False, error=str(exc) or type(exc).__name__)
        return ClearOutcome(entry.file_id, entry.name, success=True)
