"""Storage protocol for subscriptions and the delivery ledger.

Every method that mutates more than one record (cascade delete, attempt
outcome plus health counters) must apply its writes as one unit.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from herald.models import Delivery, DeliveryStatus, HealthUpdate, Subscription


@runtime_checkable
class WebhookStore(Protocol):
    """Persistence for subscriptions and deliveries, scoped by tenant."""

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (connections, collections)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def insert_subscription(self, subscription: Subscription) -> str:
        """Persist a new subscription and return its id."""
        ...

    @abstractmethod
    async def get_subscription(self, tenant_id: str, subscription_id: str) -> Subscription | None:
        """Fetch one subscription, None when absent or owned by another tenant."""
        ...

    @abstractmethod
    async def list_subscriptions(
        self,
        tenant_id: str,
        enabled: bool | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Subscription], int]:
        """List a tenant's subscriptions, newest first, with the total count."""
        ...

    @abstractmethod
    async def find_matching_subscriptions(
        self,
        tenant_id: str,
        event_type: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> list[Subscription]:
        """Enabled subscriptions that should receive this event."""
        ...

    @abstractmethod
    async def update_subscription(
        self,
        tenant_id: str,
        subscription_id: str,
        changes: dict[str, Any],
    ) -> Subscription | None:
        """Apply field changes without touching the health counters.

        Returns the updated subscription, or None if not found.
        """
        ...

    @abstractmethod
    async def delete_subscription(self, tenant_id: str, subscription_id: str) -> bool:
        """Delete a subscription and all of its deliveries."""
        ...

    @abstractmethod
    async def insert_delivery(self, delivery: Delivery) -> str:
        """Persist a new delivery and return its id."""
        ...

    @abstractmethod
    async def get_delivery(self, tenant_id: str, delivery_id: str) -> Delivery | None:
        """Fetch one delivery."""
        ...

    @abstractmethod
    async def save_delivery(self, delivery: Delivery) -> None:
        """Overwrite an existing delivery."""
        ...

    @abstractmethod
    async def list_deliveries(
        self,
        tenant_id: str,
        subscription_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Delivery], int]:
        """List a subscription's deliveries, newest first, with the total count."""
        ...

    @abstractmethod
    async def list_deliveries_by_status(
        self,
        status: DeliveryStatus,
        limit: int = 100,
    ) -> list[Delivery]:
        """Deliveries in a status across all tenants, oldest retry time first."""
        ...

    @abstractmethod
    async def record_attempt(
        self,
        delivery: Delivery,
        health: HealthUpdate | None = None,
    ) -> Subscription | None:
        """Write an attempt outcome and its health-counter update together.

        A failed attempt increments consecutive_failures in place (never
        read-then-write from the caller). Nothing is written when the
        subscription no longer exists; None is returned in that case.
        """
        ...


def apply_health(subscription: Subscription, health: HealthUpdate) -> None:
    """Apply a health update to a subscription record in place."""
    if health.success:
        subscription.consecutive_failures = 0
        subscription.last_error = None
        subscription.last_delivered_at = health.at
    else:
        subscription.consecutive_failures += 1
        subscription.last_error = health.error
        subscription.last_failed_at = health.at


def apply_changes(subscription: Subscription, changes: dict[str, Any], at: datetime) -> Subscription:
    """Validate a partial update against the current record.

    A retry_policy change given as a dict holds only the policy fields to
    set and is merged over the current policy.
    """
    record = subscription.model_dump()
    if isinstance(changes.get("retry_policy"), dict):
        changes = {**changes, "retry_policy": {**record["retry_policy"], **changes["retry_policy"]}}
    return subscription.model_validate({**record, **changes, "updated_at": at})
