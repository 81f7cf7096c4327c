"""Wire and domain models shared by the chat service and the terminal client."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class KnowledgeBaseEntry(_CamelModel):
    """One file indexed into a remote vector store."""
    name: str
    file_id: str = Field(alias="fileId")
    vector_store_id: str = Field(alias="vectorStoreId")


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    id: str


class ChatRequest(_CamelModel):
    messages: List[ChatMessage] = Field(default_factory=list)
    vector_store_id: Optional[str] = Field(default=None, alias="vectorStoreId")
    previous_response_id: Optional[str] = Field(default=None, alias="previousResponseId")


class ChatResponse(_CamelModel):
    response: str
    response_id: Optional[str] = Field(default=None, alias="responseId")


class UploadResponse(_CamelModel):
    success: bool = True
    file_name: str = Field(alias="fileName")
    file_id: str = Field(alias="fileId")
    vector_store_id: str = Field(alias="vectorStoreId")
    message: str = ""

    def to_entry(self) -> KnowledgeBaseEntry:
        return KnowledgeBaseEntry(
            name=self.file_name,
            file_id=self.file_id,
            vector_store_id=self.vector_store_id,
        )


class DeleteRequest(_CamelModel):
    file_id: Optional[str] = Field(default=None, alias="fileId")
    vector_store_id: Optional[str] = Field(default=None, alias="vectorStoreId")


class DeleteResponse(BaseModel):
    success: bool = True
    message: str = ""


class StoreDetail(BaseModel):
    """A selectable knowledge base as shown to the user."""
    id: str
    name: str
    is_active: bool = False
