"""Delivery ledger.

The ledger owns Delivery rows: it opens them in `pending`, records the
outcome of every attempt, and answers the query interface. Each outcome
write is paired with the subscription health-counter update in a single
store call so the two never disagree.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from herald.exceptions import NotFoundError
from herald.models import Delivery, HealthUpdate, Page

if TYPE_CHECKING:
    from herald.models import DeliveryStatus, Subscription, WebhookEvent
    from herald.storage import WebhookStore

logger = logging.getLogger(__name__)


class DeliveryLedger:
    """Durable record of delivery attempts."""

    def __init__(self, store: WebhookStore) -> None:
        self._store = store

    async def open(
        self,
        subscription: Subscription,
        event: WebhookEvent,
        is_test: bool = False,
    ) -> Delivery:
        """Create a pending delivery of an event to a subscription.

        The event is serialized once here; every attempt replays these bytes.
        """
        delivery = Delivery(
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            event_id=event.id,
            event_type=event.type,
            payload=event.serialize(),
            is_test=is_test,
        )
        await self._store.insert_delivery(delivery)
        return delivery

    async def get(self, tenant_id: str, subscription_id: str, delivery_id: str) -> Delivery:
        """Fetch a delivery belonging to the given subscription.

        Raises:
            NotFoundError: If absent or attached to a different subscription.
        """
        delivery = await self._store.get_delivery(tenant_id, delivery_id)
        if delivery is None or delivery.subscription_id != subscription_id:
            raise NotFoundError("delivery", delivery_id)
        return delivery

    async def list(
        self,
        tenant_id: str,
        subscription_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Page[Delivery]:
        """Deliveries of one subscription, newest first."""
        items, total = await self._store.list_deliveries(
            tenant_id, subscription_id, status=status, limit=limit, offset=offset
        )
        return Page[Delivery](items=items, total=total, limit=limit, offset=offset)

    async def retrying(self, limit: int = 100) -> list[Delivery]:
        """Deliveries waiting on a scheduled retry, across tenants."""
        return await self._store.list_deliveries_by_status("retrying", limit=limit)

    async def record_success(
        self,
        delivery: Delivery,
        attempt: int,
        status_code: int,
        response_body: str | None,
        response_time_ms: int,
        count_health: bool = True,
    ) -> Subscription | None:
        """Mark the delivery successful and reset the subscription's failure streak."""
        delivery.mark_success(
            attempt=attempt,
            status_code=status_code,
            response_body=response_body,
            response_time_ms=response_time_ms,
        )
        health = None
        if count_health:
            health = HealthUpdate(
                subscription_id=delivery.subscription_id,
                success=True,
                at=delivery.delivered_at,
            )
        return await self._store.record_attempt(delivery, health)

    async def record_retry(
        self,
        delivery: Delivery,
        attempt: int,
        next_retry_at: datetime,
        error: str,
        status_code: int | None = None,
        response_body: str | None = None,
        response_time_ms: int | None = None,
    ) -> Subscription | None:
        """Mark the delivery as retrying and count the failure."""
        delivery.mark_retrying(
            attempt=attempt,
            next_retry_at=next_retry_at,
            error=error,
            status_code=status_code,
            response_body=response_body,
            response_time_ms=response_time_ms,
        )
        health = HealthUpdate(
            subscription_id=delivery.subscription_id,
            success=False,
            at=delivery.updated_at,
            error=error,
        )
        return await self._store.record_attempt(delivery, health)

    async def record_failure(
        self,
        delivery: Delivery,
        attempt: int,
        error: str,
        status_code: int | None = None,
        response_body: str | None = None,
        response_time_ms: int | None = None,
        count_health: bool = True,
    ) -> Subscription | None:
        """Mark the delivery terminally failed and count the failure."""
        delivery.mark_failed(
            attempt=attempt,
            error=error,
            status_code=status_code,
            response_body=response_body,
            response_time_ms=response_time_ms,
        )
        health = None
        if count_health:
            health = HealthUpdate(
                subscription_id=delivery.subscription_id,
                success=False,
                at=delivery.updated_at,
                error=error,
            )
        return await self._store.record_attempt(delivery, health)

    async def reset_for_manual_retry(self, delivery: Delivery) -> Delivery:
        """Put a delivery back to pending with a fresh attempt budget."""
        delivery.reset_for_retry()
        await self._store.save_delivery(delivery)
        logger.info("Delivery %s reset for manual retry", delivery.id)
        return delivery
