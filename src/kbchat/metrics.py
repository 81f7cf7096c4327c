"""
Request metrics collector for the chat service.

Tracks per-operation latency, error counts, token usage and estimated cost,
plus process memory. Each request is appended to metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import psutil

from .config import METRICS_DIR
from .observability import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# OpenAI pricing per million tokens (USD).  Update as needed.
# ---------------------------------------------------------------------------
_OPENAI_PRICING: dict[str, dict[str, float]] = {
    "gpt-4.1-nano":  {"input": 0.10, "output": 0.40},
    "gpt-4.1-mini":  {"input": 0.40, "output": 1.60},
    "gpt-4.1":       {"input": 2.00, "output": 8.00},
    "gpt-4o-mini":   {"input": 0.15, "output": 0.60},
    "gpt-4o":        {"input": 2.50, "output": 10.00},
    "_default":      {"input": 0.10, "output": 0.40},
}


def _get_pricing(model: str) -> dict[str, float]:
    return _OPENAI_PRICING.get(model, _OPENAI_PRICING["_default"])


@dataclass
class _OperationStats:
    requests: int = 0
    errors: int = 0
    total_latency_ms: float = 0.0
    min_latency_ms: float = float("inf")
    max_latency_ms: float = 0.0

    def add(self, latency_ms: float, success: bool):
        self.requests += 1
        self.total_latency_ms += latency_ms
        self.min_latency_ms = min(self.min_latency_ms, latency_ms)
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)
        if not success:
            self.errors += 1

    def summary(self) -> dict:
        total = self.requests
        return {
            "requests": total,
            "errors": self.errors,
            "avg_ms": round(self.total_latency_ms / total, 2) if total else 0.0,
            "min_ms": round(self.min_latency_ms, 2) if total else 0.0,
            "max_ms": round(self.max_latency_ms, 2) if total else 0.0,
        }


class MetricsCollector:
    """Thread-safe request metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()
        self._operations: dict[str, _OperationStats] = {}

        self._total_input_tokens: int = 0
        self._total_output_tokens: int = 0
        self._total_cost_usd: float = 0.0

        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record_request(
        self,
        operation: str,
        latency_ms: float,
        success: bool,
        input_tokens: int = 0,
        output_tokens: int = 0,
        model: str = "",
    ) -> None:
        """Records a single request's outcome and appends to JSONL log."""
        pricing = _get_pricing(model)
        cost_usd = (
            (input_tokens / 1_000_000) * pricing["input"]
            + (output_tokens / 1_000_000) * pricing["output"]
        )

        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "operation": operation,
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cost_usd": round(cost_usd, 8),
        }

        with self._lock:
            self._operations.setdefault(operation, _OperationStats()).add(latency_ms, success)
            self._total_input_tokens += input_tokens
            self._total_output_tokens += output_tokens
            self._total_cost_usd += cost_usd

        # Append to JSONL file outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_write_failed", path=str(self._log_path), error=str(exc))

    def get_summary(self) -> dict:
        """Returns comprehensive metrics snapshot."""
        with self._lock:
            operations = {name: stats.summary() for name, stats in self._operations.items()}
            in_tok = self._total_input_tokens
            out_tok = self._total_output_tokens
            cost = self._total_cost_usd

        total = sum(op["requests"] for op in operations.values())
        errors = sum(op["errors"] for op in operations.values())
        uptime_s = time.time() - self._start_time
        mem_info = self._process.memory_info()
        turns = operations.get("turn", {}).get("requests", 0)

        return {
            "operations": operations,
            "throughput": {
                "total_requests": total,
                "requests_per_second": round((total / uptime_s) if uptime_s > 0 else 0.0, 4),
                "uptime_seconds": round(uptime_s, 1),
            },
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
            "cost": {
                "total_usd": round(cost, 6),
                "avg_per_turn_usd": round((cost / turns) if turns else 0.0, 6),
                "total_input_tokens": in_tok,
                "total_output_tokens": out_tok,
            },
            "errors": {
                "count": errors,
                "rate_percent": round((errors / total * 100) if total > 0 else 0.0, 2),
            },
        }


# Module-level singleton used by the API server.
metrics_collector = MetricsCollector()
