"""Knowledge-base panel: an independently cached view of the registry."""
from __future__ import annotations

from typing import Callable, Optional

from rich import box
from rich.table import Table

from .config import SHOW_DEBUG_IDS
from .events import KnowledgeBaseEvent, KnowledgeBaseEventBus, resolve_selection
from .knowledge_base import KnowledgeBaseRegistry
from .schemas import KnowledgeBaseEntry


class KnowledgeBasePanel:
    """
    Lists the stores available for chat and edits the owner's selection.
    The selection itself lives with the owner; the panel only reads it through
    `get_selected` and changes it through `on_selection_change`.
    """

    def __init__(
        self,
        registry: KnowledgeBaseRegistry,
        bus: KnowledgeBaseEventBus,
        get_selected: Callable[[], Optional[str]],
        on_selection_change: Callable[[Optional[str]], None],
    ):
        self.registry = registry
        self.get_selected = get_selected
        self.on_selection_change = on_selection_change
        self.stores: list[KnowledgeBaseEntry] = registry.load_all()
        self._unsubscribe = bus.subscribe(self._on_registry_event)

    def close(self) -> None:
        self._unsubscribe()

    def _on_registry_event(self, event: KnowledgeBaseEvent) -> None:
        self.stores = self.registry.load_all()
        current = self.get_selected()
        resolved = resolve_selection(event, self.stores, current)
        if resolved != current:
            self.on_selection_change(resolved)

    def refresh(self) -> None:
        self.stores = self.registry.load_all()

    def select(self, store_id: str) -> None:
        if self.get_selected() == store_id:
            self.on_selection_change(None)
        else:
            self.on_selection_change(store_id)

    def select_index(self, index: int) -> KnowledgeBaseEntry:
        """Toggles the store at a 1-based position in the listing."""
        if not 1 <= index <= len(self.stores):
            raise IndexError(f"no knowledge base at position {index}")
        entry = self.stores[index - 1]
        self.select(entry.vector_store_id)
        return entry

    def clear_selection(self) -> None:
        self.on_selection_change(None)

    def render(self) -> Table:
        table = Table(title=f"Knowledge Base ({len(self.stores)})", box=box.ROUNDED)
        table.add_column("#", style="dim", justify="right")
        table.add_column("File", style="cyan")
        table.add_column("Active", justify="center")
        if SHOW_DEBUG_IDS:
            table.add_column("File ID", style="dim")
            table.add_column("Store ID", style="dim")

        selected = self.get_selected()
        for position, entry in enumerate(self.stores, start=1):
            row = [str(position), entry.name, "[green]*[/green]" if entry.vector_store_id == selected else ""]
            if SHOW_DEBUG_IDS:
                row.extend([entry.file_id, entry.vector_store_id])
            table.add_row(*row)
        return table
