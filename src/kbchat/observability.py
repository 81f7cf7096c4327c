"""
Structured logging utilities.
All modules log snake_case event names with keyword fields through structlog.
Records always go to the JSON log file; the terminal client can additionally
mirror them to the console while it runs.
"""
from __future__ import annotations

import logging
from pathlib import Path

import structlog
from rich.console import Console
from rich.logging import RichHandler

_CONFIGURED = False
_CONSOLE_HANDLER: RichHandler | None = None

# Per-request chatter from the HTTP stacks only goes to the file.
_QUIET_LOGGERS = ("httpx", "httpcore", "openai")


def configure_logging(log_path: str | Path, level: int = logging.INFO, console: bool = False):
    """Configures process-wide structured logging to a file."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)

    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True
    set_console_logging(console)


def set_console_logging(enabled: bool, level: int = logging.WARNING, console: Console | None = None) -> bool:
    """
    Mirrors log records at `level` and above to the terminal, or stops doing so.
    Returns whether console logging is active afterwards.
    """
    global _CONSOLE_HANDLER
    root = logging.getLogger()
    if _CONSOLE_HANDLER is not None:
        root.removeHandler(_CONSOLE_HANDLER)
        _CONSOLE_HANDLER = None
    if enabled:
        handler = RichHandler(
            console=console or Console(stderr=True),
            level=level,
            show_path=False,
            markup=False,
        )
        root.addHandler(handler)
        _CONSOLE_HANDLER = handler
    return _CONSOLE_HANDLER is not None


def console_logging_enabled() -> bool:
    return _CONSOLE_HANDLER is not None


def get_logger(name: str):
    return structlog.get_logger(name)
