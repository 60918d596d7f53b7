"""Event fan-out.

`trigger` matches an event against the tenant's enabled subscriptions,
opens one pending delivery per match, launches one asyncio task per
delivery and returns. It never waits for a receiver: slow or unreachable
endpoints cannot block the business operation that raised the event.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import TYPE_CHECKING, Any

from herald.models import TriggerResult, WebhookEvent

if TYPE_CHECKING:
    from herald.ledger import DeliveryLedger
    from herald.models import Delivery, Subscription
    from herald.storage import WebhookStore

    from .sender import WebhookSender

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    """Dispatches webhook events to registered endpoints.

    Handles:
    - Finding subscriptions that match an event type and resource scope
    - Creating one ledger entry per match, all sharing one event id
    - Starting every delivery attempt concurrently without awaiting it

    Example:
        ```python
        dispatcher = WebhookDispatcher(store, ledger, sender)
        result = await dispatcher.trigger(
            "org_1", "deployment.failed", {"deploymentId": "d1"},
            resource_type="deployment", resource_id="d1",
        )
        print(result.event_id, result.subscriptions_matched)
        ```
    """

    def __init__(
        self,
        store: WebhookStore,
        ledger: DeliveryLedger,
        sender: WebhookSender,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._sender = sender
        self._tasks: set[asyncio.Task[Any]] = set()

    async def trigger(
        self,
        tenant_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> TriggerResult:
        """Fan an event out to every matching subscription.

        Args:
            tenant_id: Tenant whose subscriptions are considered.
            event_type: Event type, matched as an opaque string.
            data: Event-specific payload.
            resource_type: Resource type the event concerns, if any.
            resource_id: Resource id the event concerns, if any.

        Returns:
            The shared event id and the deliveries that were started.
        """
        subscriptions = await self._store.find_matching_subscriptions(
            tenant_id,
            event_type,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        event = WebhookEvent(type=event_type, data=data or {})

        if not subscriptions:
            logger.debug("No subscriptions for event %s in tenant %s", event_type, tenant_id)
            return TriggerResult(event_id=event.id, subscriptions_matched=0)

        outcomes = await asyncio.gather(
            *(self._ledger.open(subscription, event) for subscription in subscriptions),
            return_exceptions=True,
        )
        deliveries: list[Delivery] = []
        errors: list[BaseException] = []
        for subscription, outcome in zip(subscriptions, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Could not record delivery of event %s to subscription %s: %s",
                    event.id,
                    subscription.id,
                    outcome,
                )
                errors.append(outcome)
                continue
            deliveries.append(outcome)
            self.spawn(
                self._deliver(subscription, outcome),
                name=f"herald-delivery-{outcome.id}",
            )

        # Every open failed: surface the store error
        if not deliveries:
            raise errors[0]

        logger.info(
            "Event %s (%s) dispatched to %d of %d subscriptions",
            event.id,
            event_type,
            len(deliveries),
            len(subscriptions),
        )
        return TriggerResult(
            event_id=event.id,
            subscriptions_matched=len(subscriptions),
            delivery_ids=[d.id for d in deliveries],
        )

    async def _deliver(self, subscription: Subscription, delivery: Delivery) -> None:
        try:
            await self._sender.attempt(subscription, delivery)
        except Exception:
            logger.exception("Webhook delivery %s crashed", delivery.id)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        """Start a background task and keep a reference until it finishes."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def in_flight(self) -> int:
        """Number of spawned tasks still running."""
        return len(self._tasks)

    def tasks(self) -> list[asyncio.Task[Any]]:
        return list(self._tasks)

    async def drain(self) -> None:
        """Wait for every spawned task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def dispatch_webhook_event(
    dispatcher: WebhookDispatcher,
    tenant_id: str,
    event_type: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    **data: object,
) -> TriggerResult:
    """Convenience wrapper taking the event payload as keyword arguments.

    Example:
        ```python
        await dispatch_webhook_event(
            dispatcher, "org_1", "agent.created", agentId="a1", agentName="Scout"
        )
        ```
    """
    return await dispatcher.trigger(
        tenant_id,
        event_type,
        dict(data),
        resource_type=resource_type,
        resource_id=resource_id,
    )
