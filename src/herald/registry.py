"""Subscription registry.

Tenant-scoped create/read/update/delete of webhook subscriptions plus
secret rotation. Configuration errors are rejected here, synchronously,
so they never reach the dispatcher.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from herald.exceptions import NotFoundError, ValidationError
from herald.models import (
    CreatedSubscription,
    Page,
    RetryPolicy,
    SecretRotation,
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
    SubscriptionView,
    event_catalog,
)
from herald.signing import generate_secret

if TYPE_CHECKING:
    from herald.config import Settings
    from herald.storage import WebhookStore
    from herald.webhooks.scheduler import RetryScheduler

logger = logging.getLogger(__name__)


def _validation_error(exc: PydanticValidationError) -> ValidationError:
    """Convert the first pydantic error into a Herald ValidationError."""
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or "subscription"
    return ValidationError(field, first["msg"])


class SubscriptionRegistry:
    """Create, query and mutate subscriptions for a tenant.

    Example:
        ```python
        registry = SubscriptionRegistry(store, settings)
        created = await registry.create(
            "org_1",
            SubscriptionCreate(url="https://example.com/hook", events=["agent.created"]),
        )
        print(created.secret)  # shown once
        ```
    """

    def __init__(
        self,
        store: WebhookStore,
        settings: Settings,
        scheduler: RetryScheduler | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._scheduler = scheduler

    def _default_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self._settings.default_max_attempts,
            timeout_seconds=self._settings.default_timeout_seconds,
        )

    async def _require(self, tenant_id: str, subscription_id: str) -> Subscription:
        subscription = await self._store.get_subscription(tenant_id, subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    async def create(
        self,
        tenant_id: str,
        data: SubscriptionCreate | dict[str, Any],
    ) -> CreatedSubscription:
        """Register a subscription with a freshly generated secret.

        Args:
            tenant_id: Owning tenant.
            data: Subscription fields (model or plain dict).

        Returns:
            The new subscription and its secret. The secret is not
            returned again except by rotate_secret().

        Raises:
            ValidationError: Empty or unknown events, bad URL, bad policy.
        """
        try:
            if not isinstance(data, SubscriptionCreate):
                data = SubscriptionCreate.model_validate(data)
            policy = self._default_policy()
            if data.retry_policy is not None:
                policy = policy.model_copy(update=data.retry_policy.model_dump(exclude_unset=True))
            subscription = Subscription(
                tenant_id=tenant_id,
                secret=generate_secret(self._settings.secret_bytes),
                retry_policy=policy,
                **data.model_dump(exclude={"retry_policy"}),
            )
        except PydanticValidationError as e:
            raise _validation_error(e) from e

        await self._store.insert_subscription(subscription)
        logger.info(
            "Subscription created: %s for tenant %s (%d events)",
            subscription.id,
            tenant_id,
            len(subscription.events),
        )
        return CreatedSubscription(subscription=subscription.view(), secret=subscription.secret)

    async def list(
        self,
        tenant_id: str,
        enabled: bool | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Page[SubscriptionView]:
        """List a tenant's subscriptions, newest first."""
        if limit < 1:
            raise ValidationError("limit", "must be at least 1")
        if offset < 0:
            raise ValidationError("offset", "must not be negative")
        items, total = await self._store.list_subscriptions(
            tenant_id, enabled=enabled, limit=limit, offset=offset
        )
        return Page[SubscriptionView](
            items=[s.view() for s in items], total=total, limit=limit, offset=offset
        )

    async def get(self, tenant_id: str, subscription_id: str) -> SubscriptionView:
        """Fetch one subscription (without its secret).

        Raises:
            NotFoundError: If the tenant has no such subscription.
        """
        return (await self._require(tenant_id, subscription_id)).view()

    async def get_internal(self, tenant_id: str, subscription_id: str) -> Subscription:
        """Fetch the full record, secret included, for the delivery engine."""
        return await self._require(tenant_id, subscription_id)

    async def update(
        self,
        tenant_id: str,
        subscription_id: str,
        data: SubscriptionUpdate | dict[str, Any],
    ) -> SubscriptionView:
        """Partially update a subscription.

        Only fields explicitly present in `data` change. The id, secret
        and health counters cannot be set through this method.

        Raises:
            ValidationError: Invalid values or attempt to set id/secret.
            NotFoundError: If the tenant has no such subscription.
        """
        try:
            if not isinstance(data, SubscriptionUpdate):
                data = SubscriptionUpdate.model_validate(data)
        except PydanticValidationError as e:
            raise _validation_error(e) from e

        changes = data.changes()
        if not changes:
            return await self.get(tenant_id, subscription_id)

        try:
            updated = await self._store.update_subscription(tenant_id, subscription_id, changes)
        except PydanticValidationError as e:
            raise _validation_error(e) from e
        if updated is None:
            raise NotFoundError("subscription", subscription_id)

        logger.info("Subscription updated: %s (%s)", subscription_id, ", ".join(sorted(changes)))
        return updated.view()

    async def set_enabled(
        self, tenant_id: str, subscription_id: str, enabled: bool
    ) -> SubscriptionView:
        """Enable or disable a subscription.

        Disabling stops new dispatch matches. Retries already scheduled
        are skipped when they fire.
        """
        return await self.update(tenant_id, subscription_id, SubscriptionUpdate(enabled=enabled))

    async def delete(self, tenant_id: str, subscription_id: str) -> None:
        """Delete a subscription and its whole delivery history.

        Raises:
            NotFoundError: If the tenant has no such subscription.
        """
        if not await self._store.delete_subscription(tenant_id, subscription_id):
            raise NotFoundError("subscription", subscription_id)
        if self._scheduler is not None:
            cancelled = self._scheduler.cancel_subscription(subscription_id)
            if cancelled:
                logger.debug("Cancelled %d scheduled retries for %s", cancelled, subscription_id)
        logger.info("Subscription deleted: %s", subscription_id)

    async def rotate_secret(self, tenant_id: str, subscription_id: str) -> SecretRotation:
        """Replace the signing secret.

        Deliveries already sent are not re-signed; any retry that fires
        after rotation is signed with the new secret.

        Raises:
            NotFoundError: If the tenant has no such subscription.
        """
        secret = generate_secret(self._settings.secret_bytes)
        updated = await self._store.update_subscription(
            tenant_id, subscription_id, {"secret": secret}
        )
        if updated is None:
            raise NotFoundError("subscription", subscription_id)
        logger.info("Secret rotated for subscription %s", subscription_id)
        return SecretRotation(id=subscription_id, secret=secret)

    @staticmethod
    def event_catalog() -> dict[str, Any]:
        """Event types a subscription may select, grouped by category."""
        return event_catalog()
