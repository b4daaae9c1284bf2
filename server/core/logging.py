"""Structured logging for the coordination layer.

Every record carries the active store backend, so degraded-mode warnings
from a memory-backed dev process are never mistaken for Redis outages.
"""

import sys
import structlog
import logging
from pathlib import Path
from core.config import Settings


def _store_backend_stamper(backend: str):
    def add_store_backend(logger, method_name, event_dict):
        event_dict.setdefault("store_backend", backend)
        return event_dict
    return add_store_backend


def configure_logging(settings: Settings) -> None:
    """Configure structlog over stdlib logging (JSON or console output)."""
    level = getattr(logging, settings.log_level.upper())
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    handlers = [console_handler]

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, format="%(message)s", force=True)

    # The redis client logs every reconnect attempt at DEBUG
    logging.getLogger("redis").setLevel(max(level, logging.INFO))

    backend = "redis" if settings.redis_enabled else "memory"
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        _store_backend_stamper(backend),
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))
        processors.insert(0, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                       key: str, hit: bool = None, **kwargs) -> None:
    """Log cache operations."""
    log_data = {
        "operation": operation,
        "cache_key": key,
        **kwargs
    }

    if hit is not None:
        log_data["cache_hit"] = hit

    logger.debug("Cache operation", **log_data)


def log_store_failure(logger: structlog.BoundLogger, operation: str,
                      error: BaseException, **kwargs) -> None:
    """Log a store failure that was resolved to a fail-open default."""
    logger.warning(
        "Store operation failed, continuing without it",
        operation=operation,
        error_type=type(error).__name__,
        error=str(error),
        **kwargs
    )
