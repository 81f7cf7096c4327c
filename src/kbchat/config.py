# /kbchat/config.py
"""
Centralized configuration for the knowledge-base chat service and client.
Includes model settings, upload limits, storage paths and logging setup.
"""
import os
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console

from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Assistant ---
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1-nano")
ASSISTANT_INSTRUCTIONS = os.getenv(
    "ASSISTANT_INSTRUCTIONS",
    "You are a friendly and helpful assistant. If relevant, use the information "
    "from the provided files to answer the user's query.",
)
ASSISTANT_TEMPERATURE = _env_float("ASSISTANT_TEMPERATURE", 0.7, minimum=0.0)

# --- Document index ---
VECTOR_STORE_NAME = os.getenv("VECTOR_STORE_NAME", "scraped_chat_files_store")

# --- Service / client wiring ---
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = _env_int("API_PORT", 8000, minimum=1)
API_BASE_URL = os.getenv("API_BASE_URL", f"http://{API_HOST}:{API_PORT}")
# 0 disables the client-side timeout.
CLIENT_TIMEOUT_S = _env_float("CLIENT_TIMEOUT_S", 120.0, minimum=0.0)

# --- Upload staging limits ---
MAX_UPLOAD_FILES = _env_int("MAX_UPLOAD_FILES", 6, minimum=1)
MAX_UPLOAD_SIZE_MB = _env_int("MAX_UPLOAD_SIZE_MB", 5, minimum=1)
MAX_UPLOAD_SIZE_BYTES = MAX_UPLOAD_SIZE_MB * 1024 * 1024

# --- Local knowledge-base registry ---
KNOWLEDGE_BASE_STORAGE_KEY = os.getenv("KNOWLEDGE_BASE_STORAGE_KEY", "openaiVectorizedFiles")
SHOW_DEBUG_IDS = _env_bool("SHOW_DEBUG_IDS", False)

# --- Logging ---
LOG_TO_CONSOLE = _env_bool("LOG_TO_CONSOLE", False)

# --- Path Configuration ---
DATA_DIR = Path(os.getenv("DATA_DIR", str(Path.home() / ".kbchat")))
LOCAL_STORE_PATH = Path(os.getenv("LOCAL_STORE_PATH", str(DATA_DIR / "local_storage.sqlite")))
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(DATA_DIR / "logs")))
LOG_PATH = Path(os.getenv("LOG_PATH", str(DATA_DIR / "logs" / "app.log")))

# --- Create necessary directories ---
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOCAL_STORE_PATH.parent.mkdir(parents=True, exist_ok=True)
METRICS_DIR.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH, console=LOG_TO_CONSOLE)
