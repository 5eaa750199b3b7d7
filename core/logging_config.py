"""Structured logging configuration with JSON output and batch context."""

import logging

import structlog


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure structlog for JSON output.

    Batch and job identifiers bound with bind_batch_context() are merged
    into every event emitted on the same thread or task.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=[logging.StreamHandler()],
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_batch_context(batch_name: str, **extra) -> None:
    """Attach batch identifiers to all subsequent log events."""
    structlog.contextvars.bind_contextvars(batch=batch_name, **extra)


def clear_batch_context() -> None:
    structlog.contextvars.clear_contextvars()
