"""
Logging configuration for P2P Call.

Centralizes handler setup for the ``p2p_call`` logger tree, keeps the chatty
WebRTC/Firestore libraries at a sane level, and provides a session adapter
that tags every record with the call id and role.
"""

import logging
import sys
from pathlib import Path
from typing import Any, MutableMapping, Optional
from logging.handlers import RotatingFileHandler


LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# aioice logs every connectivity check at INFO
NOISY_LOGGERS = {
    "aioice": logging.WARNING,
    "aiortc": logging.WARNING,
    "google.cloud.firestore_v1.watch": logging.WARNING,
    "httpx": logging.WARNING,
}


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    console: bool = True,
    verbose_libraries: bool = False,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (optional, creates rotating log)
        console: Whether to log to console (default: True)
        verbose_libraries: Leave aiortc/aioice/Firestore loggers at ``level``
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    app_logger = logging.getLogger("p2p_call")
    app_logger.setLevel(numeric_level)
    app_logger.handlers.clear()
    app_logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    handlers: list[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if log_file:
        if isinstance(log_file, str):
            log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"  # 10MB
            )
        )

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        app_logger.addHandler(handler)

    # Library records go through the root logger so they land in the same sinks
    root_logger = logging.getLogger()
    root_logger.handlers = list(handlers)
    root_logger.setLevel(numeric_level)

    for name, quiet_level in NOISY_LOGGERS.items():
        lib_logger = logging.getLogger(name)
        lib_logger.setLevel(numeric_level if verbose_libraries else max(quiet_level, numeric_level))


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific component.

    Args:
        name: Component name (e.g., 'p2p_call.coordinator' or just 'coordinator')

    Returns:
        Logger instance
    """
    if not name.startswith("p2p_call."):
        name = f"p2p_call.{name}"
    return logging.getLogger(name)


class SessionLogAdapter(logging.LoggerAdapter):
    """Prefixes records with ``[<role> <call id>]`` once the call id is known."""

    def __init__(self, logger: logging.Logger, role: str = "", call_id: str = "") -> None:
        super().__init__(logger, {"role": role, "call_id": call_id})

    def bind(self, role: Optional[str] = None, call_id: Optional[str] = None) -> None:
        if role is not None:
            self.extra["role"] = role
        if call_id is not None:
            self.extra["call_id"] = call_id

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        role = self.extra.get("role") or "-"
        call_id = self.extra.get("call_id")
        tag = f"{role} {call_id[:8]}" if call_id else role
        return f"[{tag}] {msg}", kwargs


def get_log_directory() -> Path:
    """Get the default log directory."""
    return Path.home() / ".p2p_call" / "logs"


def get_default_log_file() -> Path:
    """Get the default log file path."""
    return get_log_directory() / "p2p_call.log"
