"""
HTTP client for the /api/chat service, used by the terminal client.

Every non-success answer is turned into an ApiClientError carrying the
service's own error text when the body has one.
"""
from __future__ import annotations

from typing import Any, Optional, Sequence

import httpx
from pydantic import ValidationError

from .config import API_BASE_URL, CLIENT_TIMEOUT_S
from .observability import get_logger
from .schemas import ChatMessage, ChatRequest, ChatResponse, KnowledgeBaseEntry, UploadResponse

logger = get_logger(__name__)

CHAT_PATH = "/api/chat"


class ApiClientError(Exception):
    """A failed call to the chat service, with a human-readable message."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _json_or_none(response: httpx.Response) -> Optional[dict[str, Any]]:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class ChatApiClient:
    def __init__(
        self,
        base_url: str = API_BASE_URL,
        timeout: float = CLIENT_TIMEOUT_S,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout > 0 else None,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def _request(self, method: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, CHAT_PATH, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("chat_api_transport_error", method=method, error=str(exc))
            raise ApiClientError(str(exc) or type(exc).__name__) from exc

    async def send_turn(
        self,
        messages: Sequence[ChatMessage],
        vector_store_id: Optional[str] = None,
        previous_response_id: Optional[str] = None,
    ) -> ChatResponse:
        request = ChatRequest(
            messages=list(messages),
            vector_store_id=vector_store_id,
            previous_response_id=previous_response_id,
        )
        response = await self._request(
            "POST",
            json=request.model_dump(by_alias=True, exclude_none=True),
        )
        data = _json_or_none(response)
        if not response.is_success:
            if data is None:
                message = f"Network error: {response.status_code} {response.reason_phrase}".rstrip()
            else:
                message = data.get("error") or f"Network error: {response.status_code}"
            raise ApiClientError(message, response.status_code)
        if data is None:
            raise ApiClientError("Received an unreadable response from the chat service.", response.status_code)
        try:
            return ChatResponse.model_validate(data)
        except ValidationError as exc:
            raise ApiClientError("Received an unreadable response from the chat service.", response.status_code) from exc

    async def upload_file(self, file_name: str, data: bytes) -> KnowledgeBaseEntry:
        response = await self._request("PUT", files={"file": (file_name, data)})
        payload = _json_or_none(response) or {}
        if not response.is_success:
            raise ApiClientError(
                payload.get("error") or f"Upload failed for {file_name}. Status: {response.status_code}",
                response.status_code,
            )
        try:
            return UploadResponse.model_validate(payload).to_entry()
        except ValidationError as exc:
            raise ApiClientError(f"Upload of {file_name} returned an unreadable response.", response.status_code) from exc

    async def delete_file(self, entry: KnowledgeBaseEntry) -> None:
        """Removes one registry entry remotely; raises unless the service confirms."""
        response = await self._request(
            "DELETE",
            json={"fileId": entry.file_id, "vectorStoreId": entry.vector_store_id},
        )
        payload = _json_or_none(response) or {}
        if not (response.is_success and payload.get("success")):
            raise ApiClientError(
                payload.get("error") or f"HTTP error {response.status_code}",
                response.status_code,
            )
