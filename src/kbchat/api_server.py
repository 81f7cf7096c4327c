"""
FastAPI service layer for the knowledge-base chat demo.

One resource, /api/chat, mirrors the browser app's routes:
    PUT     upload a file and index it into the shared vector store
    POST    run one conversation turn
    DELETE  remove a file from the vector store and from file storage
plus GET /metrics and GET /health.

Run with:
    uvicorn kbchat.api_server:app --host 127.0.0.1 --port 8000
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import openai
from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse

from .config import API_HOST, API_PORT, OPENAI_MODEL
from .gateway import GatewayInputError, OpenAIGateway, build_input_items
from .metrics import metrics_collector
from .observability import get_logger
from .schemas import ChatRequest, ChatResponse, DeleteRequest, DeleteResponse, UploadResponse

logger = get_logger(__name__)

_UPLOAD_FALLBACK_ERROR = "An error occurred while processing your file with OpenAI."
_TURN_FALLBACK_ERROR = "An error occurred while processing your request with the Responses API."


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ChatApiError(Exception):
    """Rendered as {"error": message, **extra} with the given status code."""

    def __init__(self, message: str, status_code: int = 500, **extra: Any):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.extra = extra


def describe_upstream_error(exc: Exception, fallback: str, *, use_generic_message: bool = False) -> tuple[str, int]:
    """Extracts (message, status) from an OpenAI SDK error, else the fallback."""
    if isinstance(exc, openai.APIStatusError):
        return exc.message or fallback, exc.status_code or 500
    if isinstance(exc, openai.APIError):
        return exc.message or fallback, 500
    if use_generic_message:
        return fallback, 500
    return str(exc) or fallback, 500


# ---------------------------------------------------------------------------
# Application state populated at startup
# ---------------------------------------------------------------------------

_state: dict[str, Any] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the OpenAI gateway once at startup; close it on shutdown."""
    try:
        gateway: Optional[OpenAIGateway] = OpenAIGateway()
    except openai.OpenAIError as exc:
        logger.warning("gateway_not_configured", error=str(exc))
        gateway = None
    _state["gateway"] = gateway

    yield  # Application is running.

    if gateway is not None:
        await gateway.aclose()
    _state.clear()


app = FastAPI(
    title="Knowledge-Base Chat API",
    description="Chat with an assistant grounded in uploaded documents",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(ChatApiError)
async def _chat_api_error_handler(_request: Request, exc: ChatApiError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, **exc.extra})


def get_gateway() -> OpenAIGateway:
    gateway = _state.get("gateway")
    if gateway is None:
        raise ChatApiError(
            "OpenAI gateway is not initialized. Set OPENAI_API_KEY and restart the service.",
            status_code=503,
        )
    return gateway


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.put("/api/chat", response_model=UploadResponse)
async def upload_endpoint(
    file: Optional[UploadFile] = File(default=None),
    gateway: OpenAIGateway = Depends(get_gateway),
):
    """Upload one file and attach it to the shared vector store."""
    if file is None:
        raise ChatApiError("No file provided.", status_code=400)

    start = time.perf_counter()
    file_name = file.filename or "upload"
    try:
        data = await file.read()
        indexed = await gateway.upload_and_index(file_name, data)
    except Exception as exc:
        message, status = describe_upstream_error(exc, _UPLOAD_FALLBACK_ERROR)
        metrics_collector.record_request("upload", _elapsed_ms(start), success=False)
        logger.error("upload_failed", file_name=file_name, status=status, error=message)
        raise ChatApiError(message, status_code=status) from exc

    metrics_collector.record_request("upload", _elapsed_ms(start), success=True)
    return UploadResponse(
        success=True,
        file_name=indexed.file_name,
        file_id=indexed.file_id,
        vector_store_id=indexed.vector_store_id,
        message=f'File "{indexed.file_name}" uploaded and added to vector store "{gateway.vector_store_name}".',
    )


@app.post("/api/chat", response_model=ChatResponse)
async def turn_endpoint(request: ChatRequest, gateway: OpenAIGateway = Depends(get_gateway)):
    """Run one conversation turn, optionally grounded in a vector store."""
    try:
        input_items = build_input_items(request.messages)
    except GatewayInputError as exc:
        raise ChatApiError(str(exc), status_code=400) from exc

    start = time.perf_counter()
    try:
        result = await gateway.create_turn(
            input_items,
            vector_store_id=request.vector_store_id,
            previous_response_id=request.previous_response_id,
        )
    except Exception as exc:
        message, status = describe_upstream_error(exc, _TURN_FALLBACK_ERROR, use_generic_message=True)
        metrics_collector.record_request("turn", _elapsed_ms(start), success=False)
        logger.error(
            "chat_turn_failed",
            status=status,
            error=message,
            previous_response_id=request.previous_response_id,
        )
        raise ChatApiError(message, status_code=status) from exc

    metrics_collector.record_request(
        "turn",
        _elapsed_ms(start),
        success=True,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        model=getattr(gateway, "model", OPENAI_MODEL),
    )
    return ChatResponse(response=result.text, response_id=result.response_id)


@app.delete("/api/chat", response_model=DeleteResponse)
async def delete_endpoint(request: DeleteRequest, gateway: OpenAIGateway = Depends(get_gateway)):
    """Remove a file from the vector store, then from file storage. Missing is fine."""
    file_id, vector_store_id = request.file_id, request.vector_store_id
    if not (file_id and vector_store_id):
        raise ChatApiError("Missing fileId or vectorStoreId.", status_code=400)

    start = time.perf_counter()
    try:
        await gateway.remove_from_collection(vector_store_id, file_id)
        await gateway.remove_file(file_id)
    except Exception as exc:
        prefix = f"Failed to delete file {file_id}."
        if isinstance(exc, openai.APIError):
            message, status = describe_upstream_error(exc, "")
            message = f"{prefix} OpenAI Error: {message}" if message else prefix
        else:
            status = 500
            message = f"{prefix} Error: {exc}" if str(exc) else f"{prefix} Unknown error."
        metrics_collector.record_request("delete", _elapsed_ms(start), success=False)
        logger.error("file_delete_failed", file_id=file_id, status=status, error=message)
        raise ChatApiError(message, status_code=status, fileId=file_id) from exc

    metrics_collector.record_request("delete", _elapsed_ms(start), success=True)
    return DeleteResponse(
        success=True,
        message=f"File {file_id} successfully processed for deletion from vector store and OpenAI storage.",
    )


@app.get("/metrics")
async def metrics_endpoint():
    """Return aggregated service metrics."""
    return metrics_collector.get_summary()


@app.get("/health")
async def health_endpoint():
    return {"status": "ok", "gateway_ready": _state.get("gateway") is not None}


def run():
    import uvicorn

    uvicorn.run("kbchat.api_server:app", host=API_HOST, port=API_PORT)
