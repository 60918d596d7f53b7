"""Single delivery attempts and the retry decision.

One call to `WebhookSender.attempt` makes exactly one signed HTTP POST,
records the outcome in the ledger together with the subscription's
health counters, and on a retryable failure asks the scheduler to run
the next attempt after an exponential backoff:

    backoff(k) = 2^k * unit     (unit = 60s by default, so 2, 4, 8... minutes)

Attempts for one delivery are strictly sequential: the next attempt is
only scheduled after the previous outcome has been written.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import TYPE_CHECKING

import httpx

from herald.exceptions import ConflictError
from herald.logging import delivery_context, get_logger
from herald.models import utc_now
from herald.signing import compute_signature

if TYPE_CHECKING:
    from herald.config import Settings
    from herald.ledger import DeliveryLedger
    from herald.models import Delivery, Subscription
    from herald.storage import WebhookStore

    from .scheduler import RetryScheduler

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"
TEST_HEADER = "X-Webhook-Test"

# Static subscription headers can never replace these (compared case-insensitively)
RESERVED_HEADERS = frozenset(
    h.lower() for h in ("Content-Type", SIGNATURE_HEADER, EVENT_HEADER, DELIVERY_HEADER, TEST_HEADER)
)

# 4xx statuses that still deserve another attempt
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def backoff(attempt: int, unit_seconds: float = 60.0) -> timedelta:
    """Delay between attempt `attempt` and the next one (2^attempt units, no jitter)."""
    return timedelta(seconds=unit_seconds * (2**attempt))


def build_headers(
    subscription: Subscription,
    delivery: Delivery,
    signature: str,
    test: bool = False,
    user_agent: str | None = None,
) -> dict[str, str]:
    """Compose request headers: static headers first, reserved headers on top."""
    headers = {
        name: value
        for name, value in subscription.headers.items()
        if name.lower() not in RESERVED_HEADERS
    }
    if user_agent and not any(name.lower() == "user-agent" for name in headers):
        headers["User-Agent"] = user_agent
    headers.update(
        {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
            EVENT_HEADER: delivery.event_type,
            DELIVERY_HEADER: delivery.id,
        }
    )
    if test:
        headers[TEST_HEADER] = "true"
    return headers


@dataclass
class AttemptResult:
    """Outcome of one HTTP attempt.

    Attributes:
        success: Receiver answered 2xx.
        response_time_ms: Wall time of the attempt.
        status_code: HTTP status, None on transport failure or timeout.
        response_body: Truncated response body.
        error: Failure description, None on success.
        retryable: Whether another attempt could succeed.
    """

    success: bool
    response_time_ms: int
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    retryable: bool = False


class WebhookSender:
    """Performs delivery attempts against receiver endpoints.

    The HTTP client is injected so tests can pass an httpx.AsyncClient
    built on httpx.MockTransport.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: WebhookStore,
        ledger: DeliveryLedger,
        scheduler: RetryScheduler,
        settings: Settings,
    ) -> None:
        self._client = client
        self._store = store
        self._ledger = ledger
        self._scheduler = scheduler
        self._settings = settings
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_deliveries)
        self._in_flight: set[str] = set()

    def backoff(self, attempt: int) -> timedelta:
        return backoff(attempt, self._settings.retry_backoff_unit_seconds)

    def is_in_flight(self, delivery_id: str) -> bool:
        return delivery_id in self._in_flight

    async def attempt(self, subscription: Subscription, delivery: Delivery) -> AttemptResult:
        """Make the next attempt of a delivery and record the outcome.

        Signs with the subscription's current secret. On a retryable
        failure with budget left, schedules the following attempt.

        Raises:
            ConflictError: If an attempt of this delivery is already running.
        """
        if delivery.id in self._in_flight:
            raise ConflictError(f"delivery {delivery.id} already has an attempt in flight")

        attempt = delivery.attempt + 1
        self._in_flight.add(delivery.id)
        try:
            with delivery_context(delivery.id, subscription.id, attempt):
                result = await self._send(subscription, delivery)
                if result.success:
                    await self._ledger.record_success(
                        delivery,
                        attempt=attempt,
                        status_code=result.status_code or 200,
                        response_body=result.response_body,
                        response_time_ms=result.response_time_ms,
                    )
                    logger.info(
                        "Webhook delivered",
                        event_type=delivery.event_type,
                        status_code=result.status_code,
                        response_time_ms=result.response_time_ms,
                    )
                else:
                    await self._handle_failure(subscription, delivery, attempt, result)
                return result
        finally:
            self._in_flight.discard(delivery.id)

    async def _handle_failure(
        self,
        subscription: Subscription,
        delivery: Delivery,
        attempt: int,
        result: AttemptResult,
    ) -> None:
        error = result.error or "Unknown error"
        max_attempts = subscription.retry_policy.max_attempts

        if result.retryable and attempt < max_attempts:
            next_retry_at = utc_now() + self.backoff(attempt)
            stored = await self._ledger.record_retry(
                delivery,
                attempt=attempt,
                next_retry_at=next_retry_at,
                error=error,
                status_code=result.status_code,
                response_body=result.response_body,
                response_time_ms=result.response_time_ms,
            )
            if stored is None:
                logger.info("Subscription deleted during attempt; retry dropped")
                return
            self._scheduler.schedule(
                delivery.id,
                subscription.id,
                next_retry_at,
                partial(self.run_scheduled, delivery.tenant_id, subscription.id, delivery.id),
            )
            logger.warning(
                "Webhook attempt failed, retry scheduled",
                error=error,
                next_retry_at=next_retry_at.isoformat(),
                max_attempts=max_attempts,
            )
            return

        await self._ledger.record_failure(
            delivery,
            attempt=attempt,
            error=error,
            status_code=result.status_code,
            response_body=result.response_body,
            response_time_ms=result.response_time_ms,
        )
        logger.warning(
            "Webhook delivery failed permanently",
            error=error,
            retryable=result.retryable,
            max_attempts=max_attempts,
        )

    async def run_scheduled(self, tenant_id: str, subscription_id: str, delivery_id: str) -> None:
        """Scheduler callback: re-read state and make the next attempt.

        Skips without touching the delivery when the subscription was
        disabled or deleted, or the delivery left `retrying` (e.g. a
        manual retry took over).
        """
        subscription = await self._store.get_subscription(tenant_id, subscription_id)
        if subscription is None or not subscription.enabled:
            logger.info(
                "Skipping scheduled retry: subscription disabled or deleted",
                delivery_id=delivery_id,
                subscription_id=subscription_id,
            )
            return

        delivery = await self._store.get_delivery(tenant_id, delivery_id)
        if delivery is None or delivery.status != "retrying":
            logger.debug("Skipping scheduled retry: delivery no longer retrying", delivery_id=delivery_id)
            return

        await self.attempt(subscription, delivery)

    async def send_test(self, subscription: Subscription, delivery: Delivery) -> AttemptResult:
        """One synchronous test attempt.

        Marked with X-Webhook-Test, never retried, and never counted in
        the subscription's health counters.
        """
        result = await self._send(subscription, delivery, test=True)
        if result.success:
            await self._ledger.record_success(
                delivery,
                attempt=1,
                status_code=result.status_code or 200,
                response_body=result.response_body,
                response_time_ms=result.response_time_ms,
                count_health=False,
            )
        else:
            await self._ledger.record_failure(
                delivery,
                attempt=1,
                error=result.error or "Unknown error",
                status_code=result.status_code,
                response_body=result.response_body,
                response_time_ms=result.response_time_ms,
                count_health=False,
            )
        logger.info(
            "Test webhook sent",
            delivery_id=delivery.id,
            subscription_id=subscription.id,
            success=result.success,
            status_code=result.status_code,
        )
        return result

    def _is_retryable_status(self, status_code: int) -> bool:
        if 400 <= status_code < 500:
            return status_code in RETRYABLE_CLIENT_STATUSES or self._settings.retry_client_errors
        return True

    async def _send(
        self,
        subscription: Subscription,
        delivery: Delivery,
        test: bool = False,
    ) -> AttemptResult:
        """POST the stored payload once, bounded by the subscription timeout."""
        body = delivery.payload.encode("utf-8")
        headers = build_headers(
            subscription,
            delivery,
            compute_signature(subscription.secret, body),
            test=test,
            user_agent=self._settings.user_agent,
        )
        timeout = subscription.retry_policy.timeout_seconds

        async with self._semaphore:
            start = time.perf_counter()
            try:
                async with asyncio.timeout(timeout):
                    response = await self._client.post(
                        str(subscription.url),
                        content=body,
                        headers=headers,
                        timeout=timeout,
                    )
            except (TimeoutError, httpx.TimeoutException):
                return AttemptResult(
                    success=False,
                    response_time_ms=_elapsed_ms(start),
                    error=f"Request timeout after {timeout}s",
                    retryable=True,
                )
            except httpx.TransportError as e:
                return AttemptResult(
                    success=False,
                    response_time_ms=_elapsed_ms(start),
                    error=str(e) or type(e).__name__,
                    retryable=True,
                )
            except httpx.InvalidURL as e:
                return AttemptResult(
                    success=False,
                    response_time_ms=_elapsed_ms(start),
                    error=f"Invalid URL: {e}",
                )
            except Exception as e:
                logger.exception("Unexpected webhook delivery error")
                return AttemptResult(
                    success=False,
                    response_time_ms=_elapsed_ms(start),
                    error=f"Unexpected error: {e}",
                )

        elapsed = _elapsed_ms(start)
        text = response.text or ""
        stored_body = text[: self._settings.response_body_max_chars] or None

        if 200 <= response.status_code < 300:
            return AttemptResult(
                success=True,
                response_time_ms=elapsed,
                status_code=response.status_code,
                response_body=stored_body,
            )

        snippet = text[: self._settings.error_body_max_chars]
        return AttemptResult(
            success=False,
            response_time_ms=elapsed,
            status_code=response.status_code,
            response_body=stored_body,
            error=f"HTTP {response.status_code}: {snippet}" if snippet else f"HTTP {response.status_code}",
            retryable=self._is_retryable_status(response.status_code),
        )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
