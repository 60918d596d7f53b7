"""Logging setup for Herald.

structlog renders both its own events and stdlib `logging` records, as
JSON lines in production or colored console output in development.
Delivery attempts run as concurrent asyncio tasks, so per-attempt fields
(delivery_id, subscription_id, attempt) are carried in contextvars by
`delivery_context` rather than passed to every log call.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from structlog.typing import Processor

# httpx logs one INFO line per request; the sender already logs each attempt
QUIET_LOGGERS = ("httpx", "httpcore")

_configured = False


def _renderer(format: str) -> list[Processor]:
    if format.lower() == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def configure_logging(level: str = "INFO", format: str = "json") -> None:
    """Configure logging for the delivery engine.

    Args:
        level: Log level name. Unknown names fall back to INFO.
        format: "json" for production, "text" for development.
    """
    global _configured

    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            *_renderer(format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Structured logger, configuring defaults on first use."""
    if not _configured:
        configure_logging()
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def delivery_context(delivery_id: str, subscription_id: str, attempt: int) -> Iterator[None]:
    """Tag every log line emitted inside the block with one attempt's identity.

    Previous values are restored on exit, so a nested block (or another
    task sharing the context) is unaffected.

    Example:
        ```python
        with delivery_context("dlv_1", "whk_1", attempt=2):
            logger.warning("Webhook attempt failed")  # carries all three fields
        ```
    """
    with structlog.contextvars.bound_contextvars(
        delivery_id=delivery_id,
        subscription_id=subscription_id,
        attempt=attempt,
    ):
        yield
