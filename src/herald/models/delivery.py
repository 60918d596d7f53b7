"""Delivery ledger records and the delivery state machine.

States:
    pending  -> success   (2xx response, terminal)
    pending  -> retrying  (failed, attempts remain)
    pending  -> failed    (failed, attempts exhausted or permanent error)
    retrying -> success | retrying | failed   (when the scheduled attempt resolves)

success and failed are left only through an explicit manual retry,
which resets the record to pending and restarts the attempt budget.
"""

from datetime import datetime
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utc_now

# Delivery status
DeliveryStatus = Literal["pending", "success", "failed", "retrying"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"success", "failed"})

T = TypeVar("T")


class Delivery(BaseModel):
    """Attempt history for one (event, subscription) pair.

    Attributes:
        id: Unique identifier, sent as X-Webhook-Delivery.
        subscription_id: Subscription being delivered to.
        tenant_id: Owning tenant (copied from the subscription).
        event_id: Shared by every delivery fanned out from one event.
        event_type: Event type, sent as X-Webhook-Event.
        payload: Serialized JSON body, replayed byte-for-byte on retries.
        status: pending, success, retrying or failed.
        attempt: Number of attempts made so far (0 before the first).
        next_retry_at: Scheduled time of the next attempt while retrying.
        status_code: HTTP status of the last response, if any.
        response_body: Truncated body of the last response.
        response_time_ms: Duration of the last attempt.
        error_message: Error of the last failed attempt.
        delivered_at: When the delivery succeeded.
        is_test: Created by a test delivery rather than an event.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    subscription_id: str = Field(description="ID of the subscription")
    tenant_id: str = Field(description="Owning tenant")
    event_id: str = Field(description="ID of the event being delivered")
    event_type: str = Field(description="Type of the event being delivered")
    payload: str = Field(description="Serialized request body")
    status: DeliveryStatus = Field(default="pending")
    attempt: int = Field(default=0, ge=0, description="Attempts made so far")
    next_retry_at: datetime | None = Field(default=None)
    status_code: int | None = Field(default=None)
    response_body: str | None = Field(default=None)
    response_time_ms: int | None = Field(default=None, ge=0)
    error_message: str | None = Field(default=None)
    delivered_at: datetime | None = Field(default=None)
    is_test: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_success(
        self,
        attempt: int,
        status_code: int,
        response_body: str | None,
        response_time_ms: int,
    ) -> "Delivery":
        """Mark delivery as successful."""
        if not 200 <= status_code < 300:
            raise ValueError(f"success requires a 2xx status, got {status_code}")
        now = utc_now()
        self.status = "success"
        self.attempt = attempt
        self.status_code = status_code
        self.response_body = response_body
        self.response_time_ms = response_time_ms
        self.error_message = None
        self.next_retry_at = None
        self.delivered_at = now
        self.updated_at = now
        return self

    def mark_retrying(
        self,
        attempt: int,
        next_retry_at: datetime,
        error: str,
        status_code: int | None = None,
        response_body: str | None = None,
        response_time_ms: int | None = None,
    ) -> "Delivery":
        """Mark delivery for retry."""
        self.status = "retrying"
        self.attempt = attempt
        self.next_retry_at = next_retry_at
        self.error_message = error
        self.status_code = status_code
        self.response_body = response_body
        self.response_time_ms = response_time_ms
        self.updated_at = utc_now()
        return self

    def mark_failed(
        self,
        attempt: int,
        error: str,
        status_code: int | None = None,
        response_body: str | None = None,
        response_time_ms: int | None = None,
    ) -> "Delivery":
        """Mark delivery as failed (no more retries)."""
        self.status = "failed"
        self.attempt = attempt
        self.next_retry_at = None
        self.error_message = error
        self.status_code = status_code
        self.response_body = response_body
        self.response_time_ms = response_time_ms
        self.updated_at = utc_now()
        return self

    def reset_for_retry(self) -> "Delivery":
        """Return to pending with a fresh attempt budget (manual retry)."""
        self.status = "pending"
        self.attempt = 0
        self.next_retry_at = None
        self.error_message = None
        self.status_code = None
        self.response_body = None
        self.response_time_ms = None
        self.delivered_at = None
        self.updated_at = utc_now()
        return self


class Page(BaseModel, Generic[T]):
    """One page of a listing plus the total number of matches."""

    items: list[T]
    total: int
    limit: int
    offset: int


class TriggerResult(BaseModel):
    """What trigger() started.

    Attributes:
        event_id: ID shared by every delivery of this event.
        subscriptions_matched: Number of subscriptions the event fanned out to.
        delivery_ids: The pending deliveries created.
    """

    event_id: str
    subscriptions_matched: int
    delivery_ids: list[str] = Field(default_factory=list)


class TestDeliveryResult(BaseModel):
    """Synchronous outcome of a test delivery."""

    __test__ = False  # not a pytest test class

    success: bool
    delivery_id: str
    status_code: int | None = None
    response_time_ms: int | None = None
    error: str | None = None


__all__ = [
    "TERMINAL_STATUSES",
    "Delivery",
    "DeliveryStatus",
    "Page",
    "TestDeliveryResult",
    "TriggerResult",
]
