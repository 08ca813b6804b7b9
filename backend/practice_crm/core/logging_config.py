"""
Centralized Logging Configuration

Features:
- Unified log format across all modules
- Supports LOG_LEVEL environment variable (DEBUG/INFO/WARNING/ERROR)
- Integrates Trace ID for request tracing
- Docker-friendly: outputs to stdout
- Optional file persistence with daily rotation (30 days retention) when LOG_DIR is set

Usage:
    from practice_crm.core.logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("Something happened")
"""

import logging
import sys
from contextvars import ContextVar
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional, Union

# Context variable for request trace ID (one value per request, also under asyncio)
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

LOG_FORMAT = (
    "[%(asctime)s] [%(levelname)s] [%(trace_id)s] "
    "[%(name)s:%(lineno)d] - %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class TraceIDFilter(logging.Filter):
    """
    Logging filter that injects trace_id into log records.

    Records emitted outside a request (startup, recount jobs) get "-".
    """
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = trace_id_var.get() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_dir: Union[str, Path, None] = None) -> None:
    """
    Initialize logging for the entire application.
    Should be called once at startup before the app modules start logging.

    Args:
        log_level: One of DEBUG, INFO, WARNING, ERROR, CRITICAL
        log_dir: Directory for backend.log; when None only the console handler is installed
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    # === Console Handler ===
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(TraceIDFilter())

    handlers: list[logging.Handler] = [console_handler]

    # === File Handler with Daily Rotation ===
    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = TimedRotatingFileHandler(
            filename=log_path / "backend.log",
            when="midnight",           # Rotate at midnight
            interval=1,                # Every 1 day
            backupCount=30,            # Keep 30 days of logs
            encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(TraceIDFilter())
        file_handler.suffix = "%Y-%m-%d"  # backend.log.2026-10-19
        handlers.append(file_handler)

    # === Configure Root Logger ===
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove any existing handlers to avoid duplicates on reload
    root_logger.handlers.clear()
    for handler in handlers:
        root_logger.addHandler(handler)

    # === Suppress Noisy Third-Party Loggers ===
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized: level={log_level}, log_dir={log_dir or '-'}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the given module.

    Args:
        name: Usually __name__ to get module-specific logger

    Returns:
        Logger instance that inherits the root configuration
    """
    return logging.getLogger(name)
