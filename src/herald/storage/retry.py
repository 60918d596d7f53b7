"""Retry utilities for storage operations.

Provides exponential backoff retry logic for transient network errors
when communicating with Qdrant. This is storage-level resilience and is
unrelated to webhook delivery retries.
"""

from __future__ import annotations

import logging

import httpx
from qdrant_client.http.exceptions import UnexpectedResponse
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts with context.

    Args:
        retry_state: Current retry state from tenacity.
    """
    logger.warning(
        "Retrying Qdrant operation",
        extra={
            "attempt": retry_state.attempt_number,
            "fn_name": retry_state.fn.__name__ if retry_state.fn else "unknown",
            "exception": str(retry_state.outcome.exception()) if retry_state.outcome else None,
        },
    )


# Connection failures, timeouts and unexpected HTTP responses from Qdrant
qdrant_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(
        (
            httpx.ConnectError,
            httpx.TimeoutException,
            UnexpectedResponse,
        )
    ),
    before_sleep=_log_retry,
    reraise=True,
)
