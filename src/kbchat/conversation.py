"""
Chat session state for the terminal client.

Owns the transcript, the continuation token returned by the service, and the
selected vector store that scopes file search for the next turn.
"""
from __future__ import annotations

import uuid
from typing import Optional, Protocol, Sequence

from .api_client import ApiClientError
from .events import KnowledgeBaseEvent, KnowledgeBaseEventBus, resolve_selection
from .knowledge_base import KnowledgeBaseRegistry
from .observability import get_logger
from .schemas import ChatMessage, ChatResponse, KnowledgeBaseEntry, StoreDetail

logger = get_logger(__name__)

DEFAULT_TURN_ERROR = "Sorry, I couldn't process your request. Please try again."


class TurnClient(Protocol):
    async def send_turn(
        self,
        messages: Sequence[ChatMessage],
        vector_store_id: Optional[str] = None,
        previous_response_id: Optional[str] = None,
    ) -> ChatResponse:
        ...


def _new_id() -> str:
    return str(uuid.uuid4())


class ChatSession:
    def __init__(self, client: TurnClient, registry: KnowledgeBaseRegistry, bus: KnowledgeBaseEventBus):
        self.client = client
        self.registry = registry
        self.messages: list[ChatMessage] = []
        self.previous_response_id: Optional[str] = None
        self.selected_store_id: Optional[str] = None
        self.stores: list[KnowledgeBaseEntry] = registry.load_all()
        self.loading = False
        self._unsubscribe = bus.subscribe(self._on_registry_event)

    def close(self) -> None:
        self._unsubscribe()

    def _on_registry_event(self, event: KnowledgeBaseEvent) -> None:
        self.stores = self.registry.load_all()
        self.selected_store_id = resolve_selection(event, self.stores, self.selected_store_id)

    def set_selected(self, store_id: Optional[str]) -> None:
        self.selected_store_id = store_id

    def toggle_store(self, store_id: str) -> None:
        self.selected_store_id = None if self.selected_store_id == store_id else store_id

    def available_stores(self) -> list[StoreDetail]:
        return [
            StoreDetail(
                id=entry.vector_store_id,
                name=entry.name,
                is_active=entry.vector_store_id == self.selected_store_id,
            )
            for entry in self.stores
        ]

    def reset(self) -> None:
        """Forgets the transcript and starts the next turn as a new conversation."""
        self.messages = []
        self.previous_response_id = None

    async def send(self, text: str) -> ChatMessage:
        """Runs one turn and returns the assistant message (a reply or the error text)."""
        user_message = ChatMessage(role="user", content=text, id=_new_id())
        self.messages.append(user_message)
        self.loading = True
        try:
            result = await self.client.send_turn(
                self.messages,
                vector_store_id=self.selected_store_id,
                previous_response_id=self.previous_response_id,
            )
        except ApiClientError as exc:
            # A broken turn must not be continued from; the next one starts fresh.
            self.previous_response_id = None
            logger.warning("chat_turn_failed", status=exc.status_code, error=exc.message)
            reply = ChatMessage(role="assistant", content=exc.message or DEFAULT_TURN_ERROR, id=_new_id())
        else:
            self.previous_response_id = result.response_id or None
            reply = ChatMessage(role="assistant", content=result.response, id=result.response_id or _new_id())
        finally:
            self.loading = False

        self.messages.append(reply)
        return reply
