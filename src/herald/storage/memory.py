"""In-process storage backend.

Keeps subscriptions and deliveries in dictionaries guarded by one
asyncio.Lock. Records are copied on the way in and out so callers never
share mutable state with the store. Everything is lost on process exit.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from herald.models import utc_now

from .base import apply_changes, apply_health

if TYPE_CHECKING:
    from herald.models import Delivery, DeliveryStatus, HealthUpdate, Subscription

logger = logging.getLogger(__name__)


class MemoryWebhookStore:
    """WebhookStore backed by process memory."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._deliveries: dict[str, Delivery] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        logger.debug("Memory webhook store ready")

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> MemoryWebhookStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Subscriptions

    async def insert_subscription(self, subscription: Subscription) -> str:
        async with self._lock:
            if subscription.id in self._subscriptions:
                raise ValueError(f"subscription already exists: {subscription.id}")
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription.id

    def _owned_subscription(self, tenant_id: str, subscription_id: str) -> Subscription | None:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None or subscription.tenant_id != tenant_id:
            return None
        return subscription

    async def get_subscription(self, tenant_id: str, subscription_id: str) -> Subscription | None:
        subscription = self._owned_subscription(tenant_id, subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def list_subscriptions(
        self,
        tenant_id: str,
        enabled: bool | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Subscription], int]:
        matches = [
            s
            for s in self._subscriptions.values()
            if s.tenant_id == tenant_id and (enabled is None or s.enabled == enabled)
        ]
        matches.sort(key=lambda s: s.created_at, reverse=True)
        page = matches[offset : offset + limit]
        return [s.model_copy(deep=True) for s in page], len(matches)

    async def find_matching_subscriptions(
        self,
        tenant_id: str,
        event_type: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> list[Subscription]:
        return [
            s.model_copy(deep=True)
            for s in self._subscriptions.values()
            if s.tenant_id == tenant_id and s.matches(event_type, resource_type, resource_id)
        ]

    async def update_subscription(
        self,
        tenant_id: str,
        subscription_id: str,
        changes: dict[str, Any],
    ) -> Subscription | None:
        async with self._lock:
            current = self._owned_subscription(tenant_id, subscription_id)
            if current is None:
                return None
            updated = apply_changes(current, changes, utc_now())
            self._subscriptions[subscription_id] = updated
            return updated.model_copy(deep=True)

    async def delete_subscription(self, tenant_id: str, subscription_id: str) -> bool:
        async with self._lock:
            if self._owned_subscription(tenant_id, subscription_id) is None:
                return False
            del self._subscriptions[subscription_id]
            orphaned = [
                d.id for d in self._deliveries.values() if d.subscription_id == subscription_id
            ]
            for delivery_id in orphaned:
                del self._deliveries[delivery_id]
        logger.debug(
            "Deleted subscription %s and %d deliveries", subscription_id, len(orphaned)
        )
        return True

    # Deliveries

    async def insert_delivery(self, delivery: Delivery) -> str:
        async with self._lock:
            self._deliveries[delivery.id] = delivery.model_copy(deep=True)
        return delivery.id

    async def get_delivery(self, tenant_id: str, delivery_id: str) -> Delivery | None:
        delivery = self._deliveries.get(delivery_id)
        if delivery is None or delivery.tenant_id != tenant_id:
            return None
        return delivery.model_copy(deep=True)

    async def save_delivery(self, delivery: Delivery) -> None:
        async with self._lock:
            self._deliveries[delivery.id] = delivery.model_copy(deep=True)

    async def list_deliveries(
        self,
        tenant_id: str,
        subscription_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Delivery], int]:
        matches = [
            d
            for d in self._deliveries.values()
            if d.tenant_id == tenant_id
            and d.subscription_id == subscription_id
            and (status is None or d.status == status)
        ]
        matches.sort(key=lambda d: d.created_at, reverse=True)
        page = matches[offset : offset + limit]
        return [d.model_copy(deep=True) for d in page], len(matches)

    async def list_deliveries_by_status(
        self,
        status: DeliveryStatus,
        limit: int = 100,
    ) -> list[Delivery]:
        matches = [d for d in self._deliveries.values() if d.status == status]
        matches.sort(key=lambda d: d.next_retry_at or d.created_at)
        return [d.model_copy(deep=True) for d in matches[:limit]]

    async def record_attempt(
        self,
        delivery: Delivery,
        health: HealthUpdate | None = None,
    ) -> Subscription | None:
        async with self._lock:
            subscription = self._subscriptions.get(delivery.subscription_id)
            if subscription is None:
                return None
            self._deliveries[delivery.id] = delivery.model_copy(deep=True)
            if health is not None:
                apply_health(subscription, health)
            return subscription.model_copy(deep=True)
