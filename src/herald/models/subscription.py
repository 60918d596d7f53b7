"""Subscription (webhook) models.

A subscription is a tenant-configured receiver endpoint: where to POST,
which events to send, how to sign them, and how hard to retry.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from .base import generate_id, utc_now
from .event import ALL_EVENT_TYPES


def _validate_events(events: list[str]) -> list[str]:
    if not events:
        raise ValueError("at least one event type is required")
    unknown = sorted(set(events) - set(ALL_EVENT_TYPES))
    if unknown:
        raise ValueError(f"unknown event types: {', '.join(unknown)}")
    # Preserve caller order, drop duplicates
    return list(dict.fromkeys(events))


class RetryPolicy(BaseModel):
    """Delivery policy for a subscription.

    Attributes:
        max_attempts: Total HTTP attempts per delivery, first one included.
        timeout_seconds: Upper bound on a single attempt.
    """

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=20, description="Total delivery attempts")
    timeout_seconds: int = Field(default=30, gt=0, le=300, description="Per-attempt timeout")


class Subscription(BaseModel):
    """A registered webhook, including its secret and health counters.

    This is the internal record. Callers outside the engine see
    SubscriptionView, which never carries the secret.

    Attributes:
        id: Unique identifier.
        tenant_id: Owning tenant.
        name: Human-readable label.
        description: Optional description.
        url: Receiver endpoint.
        secret: Shared HMAC-SHA256 signing secret.
        events: Event types this subscription receives (non-empty).
        resource_type: Restrict to events on this resource type (None = any).
        resource_id: Restrict to events on this resource (None = any).
        headers: Static headers merged into every request.
        retry_policy: Attempts and timeout.
        enabled: Disabled subscriptions are skipped at dispatch and retry time.
        consecutive_failures: Failed attempts since the last success.
        last_delivered_at: Time of the last successful attempt.
        last_failed_at: Time of the last failed attempt.
        last_error: Error of the last failed attempt, cleared on success.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    tenant_id: str = Field(min_length=1, description="Owning tenant")
    name: str = Field(default="", max_length=200, description="Human-readable label")
    description: str | None = Field(default=None, description="Optional description")
    url: HttpUrl = Field(description="Endpoint receiving event POSTs")
    secret: str = Field(min_length=1, repr=False, description="HMAC-SHA256 signing secret")
    events: list[str] = Field(description="Subscribed event types")
    resource_type: str | None = Field(default=None, description="Resource type scope")
    resource_id: str | None = Field(default=None, description="Resource id scope")
    headers: dict[str, str] = Field(default_factory=dict, description="Static request headers")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    enabled: bool = Field(default=True, description="Whether the subscription is active")

    consecutive_failures: int = Field(default=0, ge=0)
    last_delivered_at: datetime | None = Field(default=None)
    last_failed_at: datetime | None = Field(default=None)
    last_error: str | None = Field(default=None)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("events")
    @classmethod
    def _check_events(cls, v: list[str]) -> list[str]:
        return _validate_events(v)

    def matches(
        self,
        event_type: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> bool:
        """Check whether an event should be delivered to this subscription.

        A scope field set to None on the subscription acts as a wildcard.
        A scope value the caller does not supply is not checked.
        """
        if not self.enabled or event_type not in self.events:
            return False
        if resource_type is not None and self.resource_type not in (None, resource_type):
            return False
        if resource_id is not None and self.resource_id not in (None, resource_id):
            return False
        return True

    def view(self) -> "SubscriptionView":
        """Secret-free projection of this subscription."""
        return SubscriptionView.model_validate(self.model_dump(exclude={"secret"}))


class SubscriptionView(BaseModel):
    """Subscription as returned by list/get: everything except the secret."""

    id: str
    tenant_id: str
    name: str
    description: str | None
    url: HttpUrl
    events: list[str]
    resource_type: str | None
    resource_id: str | None
    headers: dict[str, str]
    retry_policy: RetryPolicy
    enabled: bool
    consecutive_failures: int
    last_delivered_at: datetime | None
    last_failed_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


class SubscriptionCreate(BaseModel):
    """Input for registering a subscription.

    retry_policy defaults come from Settings when omitted.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", max_length=200)
    description: str | None = None
    url: HttpUrl
    events: list[str]
    resource_type: str | None = None
    resource_id: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    retry_policy: RetryPolicy | None = None
    enabled: bool = True

    @field_validator("events")
    @classmethod
    def _check_events(cls, v: list[str]) -> list[str]:
        return _validate_events(v)


class SubscriptionUpdate(BaseModel):
    """Partial update. Only fields explicitly set are applied.

    The id and secret are not part of this model; passing them fails
    validation. Passing resource_type=None clears that scope.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, max_length=200)
    description: str | None = None
    url: HttpUrl | None = None
    events: list[str] | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    headers: dict[str, str] | None = None
    retry_policy: RetryPolicy | None = None
    enabled: bool | None = None

    @field_validator("events")
    @classmethod
    def _check_events(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            raise ValueError("events cannot be null")
        return _validate_events(v)

    def changes(self) -> dict[str, object]:
        """Fields the caller set.

        retry_policy is reduced to the policy fields the caller set, so
        the store can merge them over the current policy.
        """
        changes: dict[str, object] = {name: getattr(self, name) for name in self.model_fields_set}
        if self.retry_policy is not None:
            changes["retry_policy"] = self.retry_policy.model_dump(exclude_unset=True)
        return changes


class CreatedSubscription(BaseModel):
    """Result of create: the only time the secret is returned besides rotation."""

    subscription: SubscriptionView
    secret: str


class SecretRotation(BaseModel):
    """Result of a secret rotation."""

    id: str
    secret: str
    rotated_at: datetime = Field(default_factory=utc_now)


class HealthUpdate(BaseModel):
    """Outcome of one attempt as applied to the subscription's counters.

    success=True resets consecutive_failures and clears last_error;
    success=False increments consecutive_failures atomically.
    """

    model_config = ConfigDict(extra="forbid")

    subscription_id: str
    success: bool
    at: datetime = Field(default_factory=utc_now)
    error: str | None = None


__all__ = [
    "CreatedSubscription",
    "HealthUpdate",
    "RetryPolicy",
    "SecretRotation",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionUpdate",
    "SubscriptionView",
]
