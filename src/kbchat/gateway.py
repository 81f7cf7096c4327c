"""
OpenAI-backed assistant gateway and document index.

Conversation state lives upstream: each turn sends only the latest user
message plus the previous response id. Documents are indexed into a single
named vector store that scopes file search when a turn asks for it.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Sequence

import openai
from openai import AsyncOpenAI

from .config import ASSISTANT_INSTRUCTIONS, ASSISTANT_TEMPERATURE, OPENAI_MODEL, VECTOR_STORE_NAME
from .observability import get_logger
from .schemas import ChatMessage

logger = get_logger(__name__)

CONTINUE_PROMPT = "Proceed."


class GatewayInputError(ValueError):
    """Raised when a request lacks what the upstream call needs."""


@dataclass(frozen=True)
class TurnResult:
    text: str
    response_id: str | None
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class IndexedFile:
    file_name: str
    file_id: str
    vector_store_id: str


def build_input_items(messages: Sequence[ChatMessage]) -> list[dict[str, Any]]:
    """Only the newest message goes upstream; earlier turns are referenced by id."""
    if not messages:
        raise GatewayInputError("No input message provided.")
    last = messages[-1]
    if last.role == "user":
        return [{"type": "message", "role": "user", "content": last.content}]
    return [{"type": "message", "role": "user", "content": CONTINUE_PROMPT}]


def extract_response_text(response: Any) -> str:
    text = getattr(response, "output_text", None) or ""
    if not text:
        for item in getattr(response, "output", None) or []:
            if getattr(item, "type", None) != "message" or getattr(item, "role", None) != "assistant":
                continue
            for part in getattr(item, "content", None) or []:
                if getattr(part, "type", None) == "output_text":
                    text = getattr(part, "text", "") or ""
                    break
            break

    if text:
        return text

    status = getattr(response, "status", None)
    error = getattr(response, "error", None)
    if status == "failed" and error is not None:
        return f"Error from Responses API: {getattr(error, 'message', error)}"
    if status != "completed":
        return f"Response status: {status}. No text content extracted."
    return "Received a response, but could not extract text content."


def _usage_tokens(response: Any) -> tuple[int, int]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return 0, 0
    return int(getattr(usage, "input_tokens", 0) or 0), int(getattr(usage, "output_tokens", 0) or 0)


class OpenAIGateway:
    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        model: str = OPENAI_MODEL,
        instructions: str = ASSISTANT_INSTRUCTIONS,
        temperature: float = ASSISTANT_TEMPERATURE,
        vector_store_name: str = VECTOR_STORE_NAME,
    ):
        self._client = client if client is not None else AsyncOpenAI()
        self.model = model
        self.instructions = instructions
        self.temperature = temperature
        self.vector_store_name = vector_store_name
        self._store_lock = asyncio.Lock()

    async def create_turn(
        self,
        input_items: list[dict[str, Any]],
        vector_store_id: str | None = None,
        previous_response_id: str | None = None,
    ) -> TurnResult:
        params: dict[str, Any] = {
            "model": self.model,
            "input": input_items,
            "instructions": self.instructions,
            "temperature": self.temperature,
        }
        if previous_response_id:
            params["previous_response_id"] = previous_response_id
        if vector_store_id:
            params["tools"] = [{"type": "file_search", "vector_store_ids": [vector_store_id]}]

        response = await self._client.responses.create(**params)
        input_tokens, output_tokens = _usage_tokens(response)
        logger.info(
            "chat_turn_completed",
            response_id=getattr(response, "id", None),
            status=getattr(response, "status", None),
            grounded=bool(vector_store_id),
            continued=bool(previous_response_id),
        )
        return TurnResult(
            text=extract_response_text(response),
            response_id=getattr(response, "id", None),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def resolve_vector_store_id(self) -> str:
        """Finds the named vector store, creating it when absent."""
        async with self._store_lock:
            async for store in self._client.vector_stores.list():
                if store.name == self.vector_store_name:
                    return store.id
            created = await self._client.vector_stores.create(name=self.vector_store_name)
            logger.info("vector_store_created", vector_store_id=created.id, name=self.vector_store_name)
            return created.id

    async def upload_and_index(self, file_name: str, data: bytes) -> IndexedFile:
        vector_store_id = await self.resolve_vector_store_id()
        uploaded = await self._client.files.create(file=(file_name, data), purpose="assistants")
        await self._client.vector_stores.files.create(vector_store_id=vector_store_id, file_id=uploaded.id)
        logger.info(
            "file_indexed",
            file_id=uploaded.id,
            vector_store_id=vector_store_id,
            file_name=file_name,
            size=len(data),
        )
        return IndexedFile(file_name=file_name, file_id=uploaded.id, vector_store_id=vector_store_id)

    async def remove_from_collection(self, vector_store_id: str, file_id: str) -> None:
        try:
            await self._client.vector_stores.files.delete(file_id, vector_store_id=vector_store_id)
        except openai.NotFoundError:
            logger.info("vector_store_file_already_absent", file_id=file_id, vector_store_id=vector_store_id)

    async def remove_file(self, file_id: str) -> None:
        try:
            await self._client.files.delete(file_id)
        except openai.NotFoundError:
            logger.info("file_already_absent", file_id=file_id)

    async def aclose(self) -> None:
        await self._client.close()
