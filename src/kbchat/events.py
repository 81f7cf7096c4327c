"""
In-process broadcast channel for knowledge-base registry changes.

Messages are hints, not state: every listener reloads the registry on receipt
and only uses the message to decide what to do with its own selection.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Union

from .observability import get_logger
from .schemas import KnowledgeBaseEntry

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoreAdded:
    entry: KnowledgeBaseEntry

    def to_detail(self) -> dict[str, Any]:
        return {"newStore": self.entry.model_dump(by_alias=True)}


@dataclass(frozen=True)
class AllStoresCleared:
    def to_detail(self) -> dict[str, Any]:
        return {"allStoresCleared": True}


@dataclass(frozen=True)
class StoresModified:
    def to_detail(self) -> dict[str, Any]:
        return {"storesModified": True}


KnowledgeBaseEvent = Union[StoreAdded, AllStoresCleared, StoresModified]
Listener = Callable[[KnowledgeBaseEvent], None]


def event_from_detail(detail: dict[str, Any]) -> KnowledgeBaseEvent:
    """Parses the wire shape back into a message; exactly one field must be set."""
    present = [key for key in ("newStore", "allStoresCleared", "storesModified") if detail.get(key)]
    if len(present) != 1:
        raise ValueError(f"expected exactly one knowledge-base event field, got {present or 'none'}")
    if present[0] == "newStore":
        return StoreAdded(KnowledgeBaseEntry.model_validate(detail["newStore"]))
    if present[0] == "allStoresCleared":
        return AllStoresCleared()
    return StoresModified()


class KnowledgeBaseEventBus:
    """Process-wide publish/subscribe channel with best-effort delivery."""

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: KnowledgeBaseEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.warning(
                    "knowledge_base_listener_failed",
                    event_type=type(event).__name__,
                    error=str(exc),
                    exc_info=True,
                )


def resolve_selection(
    event: KnowledgeBaseEvent,
    entries: Iterable[KnowledgeBaseEntry],
    selected: Optional[str],
) -> Optional[str]:
    """
    Returns the selection a listener should hold after processing `event`,
    given the freshly reloaded registry `entries`.
    """
    if isinstance(event, StoreAdded):
        return event.entry.vector_store_id or selected
    if isinstance(event, AllStoresCleared):
        return None
    if isinstance(event, StoresModified):
        if selected and not any(entry.vector_store_id == selected for entry in entries):
            return None
    return selected
