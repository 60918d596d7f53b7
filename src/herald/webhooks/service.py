"""Webhook delivery engine facade.

Wires the registry, ledger, dispatcher, sender and scheduler around one
store and one HTTP client, and exposes the operational entry points
(manual retry, test delivery, retry recovery).

Example:
    ```python
    from herald import SubscriptionCreate, WebhookService

    async with WebhookService.create() as herald:
        created = await herald.registry.create(
            "org_1",
            SubscriptionCreate(url="https://example.com/hook", events=["agent.created"]),
        )
        await herald.trigger("org_1", "agent.created", {"agentId": "a1"})
    ```
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any

import httpx

from herald.config import Settings
from herald.exceptions import ConflictError
from herald.ledger import DeliveryLedger
from herald.logging import configure_logging, get_logger
from herald.models import TestDeliveryResult, WebhookEvent, utc_now
from herald.registry import SubscriptionRegistry
from herald.storage import WebhookStore, create_store

from .dispatcher import WebhookDispatcher
from .scheduler import RetryScheduler
from .sender import WebhookSender

if TYPE_CHECKING:
    from herald.models import Delivery, DeliveryStatus, Page, Subscription, TriggerResult

logger = get_logger(__name__)


@dataclass
class WebhookService:
    """High-level webhook engine.

    Uses dependency injection for the store and HTTP client, making it
    easy to test with MemoryWebhookStore and httpx.MockTransport.

    Attributes:
        store: Persistence for subscriptions and deliveries.
        settings: Configuration settings.
        http_client: Outbound client. Created (and closed) by the service if None.
    """

    store: WebhookStore
    settings: Settings
    http_client: httpx.AsyncClient | None = None

    registry: SubscriptionRegistry = field(init=False)
    ledger: DeliveryLedger = field(init=False)
    scheduler: RetryScheduler = field(init=False)
    sender: WebhookSender = field(init=False)
    dispatcher: WebhookDispatcher = field(init=False)
    _owns_client: bool = field(default=False, init=False, repr=False)
    _manual_retries: set[str] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(follow_redirects=False)
            self._owns_client = True

        self.scheduler = RetryScheduler()
        self.ledger = DeliveryLedger(self.store)
        self.registry = SubscriptionRegistry(self.store, self.settings, scheduler=self.scheduler)
        self.sender = WebhookSender(
            client=self.http_client,
            store=self.store,
            ledger=self.ledger,
            scheduler=self.scheduler,
            settings=self.settings,
        )
        self.dispatcher = WebhookDispatcher(self.store, self.ledger, self.sender)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> WebhookService:
        """Create a WebhookService with the store selected by settings.

        Also configures structured logging from settings.

        Args:
            settings: Optional settings. Uses environment if None.
            http_client: Optional outbound client.
        """
        if settings is None:
            settings = Settings()
        configure_logging(level=settings.log_level, format=settings.log_format)
        return cls(store=create_store(settings), settings=settings, http_client=http_client)

    async def initialize(self) -> None:
        """Initialize the store."""
        await self.store.initialize()

    async def close(self) -> None:
        """Let running attempts finish, abandon scheduled retries, release resources."""
        await self.dispatcher.drain()
        await self.scheduler.shutdown()
        if self._owns_client and self.http_client is not None:
            await self.http_client.aclose()
        await self.store.close()

    async def __aenter__(self) -> WebhookService:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def trigger(
        self,
        tenant_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> TriggerResult:
        """Fan an event out to matching subscriptions. Returns once attempts are started."""
        return await self.dispatcher.trigger(
            tenant_id,
            event_type,
            data,
            resource_type=resource_type,
            resource_id=resource_id,
        )

    async def retry_delivery(
        self,
        tenant_id: str,
        subscription_id: str,
        delivery_id: str,
    ) -> Delivery:
        """Manually re-deliver a delivery with a fresh attempt budget.

        Cancels any scheduled automatic retry, resets the delivery to
        pending and starts an attempt immediately (without waiting for it).

        Returns:
            The delivery as reset, before the new attempt resolves.

        Raises:
            NotFoundError: If the subscription or delivery does not exist.
            ConflictError: If an attempt of this delivery is running.
        """
        subscription = await self.registry.get_internal(tenant_id, subscription_id)
        delivery = await self.ledger.get(tenant_id, subscription_id, delivery_id)
        if self.sender.is_in_flight(delivery.id) or delivery.id in self._manual_retries:
            raise ConflictError(f"delivery {delivery.id} already has an attempt in flight")

        # Held from here until the attempt finishes
        self._manual_retries.add(delivery.id)
        try:
            self.scheduler.cancel(delivery.id)
            await self.ledger.reset_for_manual_retry(delivery)
        except BaseException:
            self._manual_retries.discard(delivery.id)
            raise
        snapshot = delivery.model_copy(deep=True)

        self.dispatcher.spawn(
            self._manual_attempt(subscription, delivery),
            name=f"herald-manual-retry-{delivery.id}",
        )
        logger.info("Manual retry started", delivery_id=delivery.id, subscription_id=subscription.id)
        return snapshot

    async def _manual_attempt(self, subscription: Subscription, delivery: Delivery) -> None:
        try:
            await self.sender.attempt(subscription, delivery)
        except ConflictError:
            logger.info("Manual retry skipped: attempt already running", delivery_id=delivery.id)
        except Exception:
            logger.exception("Manual retry crashed", delivery_id=delivery.id)
        finally:
            self._manual_retries.discard(delivery.id)

    async def test_webhook(self, tenant_id: str, subscription_id: str) -> TestDeliveryResult:
        """Send one synthetic event and wait for the result.

        The test delivery is recorded in the ledger (is_test=True) but
        never retried and never counted in the health counters.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        subscription = await self.registry.get_internal(tenant_id, subscription_id)
        delivery = await self.ledger.open(subscription, WebhookEvent.for_test(), is_test=True)
        result = await self.sender.send_test(subscription, delivery)
        return TestDeliveryResult(
            success=result.success,
            delivery_id=delivery.id,
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
            error=result.error,
        )

    async def list_deliveries(
        self,
        tenant_id: str,
        subscription_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Page[Delivery]:
        """Ledger query for one of the tenant's subscriptions.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        await self.registry.get(tenant_id, subscription_id)
        return await self.ledger.list(
            tenant_id, subscription_id, status=status, limit=limit, offset=offset
        )

    async def get_delivery(
        self, tenant_id: str, subscription_id: str, delivery_id: str
    ) -> Delivery:
        """Fetch one delivery of one of the tenant's subscriptions."""
        await self.registry.get(tenant_id, subscription_id)
        return await self.ledger.get(tenant_id, subscription_id, delivery_id)

    async def recover_retries(self, limit: int = 1000) -> int:
        """Re-arm timers for deliveries left `retrying` by a previous process.

        Deliveries whose next_retry_at has passed fire right away. Returns
        the number of retries scheduled.
        """
        scheduled = 0
        for delivery in await self.ledger.retrying(limit=limit):
            if delivery.is_test:
                continue
            if self.scheduler.is_scheduled(delivery.id) or self.sender.is_in_flight(delivery.id):
                continue
            self.scheduler.schedule(
                delivery.id,
                delivery.subscription_id,
                delivery.next_retry_at or utc_now(),
                partial(
                    self.sender.run_scheduled,
                    delivery.tenant_id,
                    delivery.subscription_id,
                    delivery.id,
                ),
            )
            scheduled += 1
        if scheduled:
            logger.info("Recovered scheduled retries", count=scheduled)
        return scheduled

    def pending_retries(self) -> int:
        """Number of retries waiting on a timer."""
        return self.scheduler.pending()

    async def drain(self, wait_for_retries: bool = False) -> None:
        """Wait for running attempts, and optionally for scheduled retries too.

        With wait_for_retries=True this returns only when every delivery
        has reached success or failed (or was skipped).
        """
        while True:
            tasks = self.dispatcher.tasks()
            if wait_for_retries:
                tasks += self.scheduler.tasks()
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["WebhookService"]
