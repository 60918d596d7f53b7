"""Qdrant storage backend for subscriptions and deliveries.

Records live as payload-only points (a one-dimensional placeholder vector)
in two collections, `<prefix>_webhooks` and `<prefix>_webhook_deliveries`.
Point ids are derived from `tenant_id/record_id` keys so lookups never
cross tenants.

Qdrant has no multi-point transactions. Writes that must land together
(attempt outcome plus health counters) are serialized per subscription
with an asyncio.Lock and use partial `set_payload` updates, so the
counter increment is atomic within one process. Multi-process
deployments need a store with native transactions.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from qdrant_client import AsyncQdrantClient, models

from herald.exceptions import StorageError
from herald.models import Delivery, Subscription, utc_now

from .base import apply_changes, apply_health
from .retry import qdrant_retry

if TYPE_CHECKING:
    from herald.models import DeliveryStatus, HealthUpdate

logger = logging.getLogger(__name__)

SUBSCRIPTIONS = "webhooks"
DELIVERIES = "webhook_deliveries"

# Keyword indexes per collection
INDEXED_FIELDS: dict[str, dict[str, models.PayloadSchemaType]] = {
    SUBSCRIPTIONS: {
        "tenant_id": models.PayloadSchemaType.KEYWORD,
        "events": models.PayloadSchemaType.KEYWORD,
        "enabled": models.PayloadSchemaType.BOOL,
    },
    DELIVERIES: {
        "tenant_id": models.PayloadSchemaType.KEYWORD,
        "subscription_id": models.PayloadSchemaType.KEYWORD,
        "status": models.PayloadSchemaType.KEYWORD,
    },
}

_PLACEHOLDER_VECTOR = [0.0]


def _match(key: str, value: Any) -> models.FieldCondition:
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


class QdrantWebhookStore:
    """WebhookStore backed by Qdrant.

    Example:
        ```python
        async with QdrantWebhookStore(url="http://localhost:6333") as store:
            await store.insert_subscription(subscription)
        ```
    """

    def __init__(
        self,
        url: str = "http://localhost:6333",
        api_key: str | None = None,
        prefix: str = "herald",
        max_scroll: int = 10000,
        client: AsyncQdrantClient | None = None,
    ) -> None:
        """Initialize storage client.

        Args:
            url: Qdrant server URL.
            api_key: Qdrant API key.
            prefix: Collection name prefix.
            max_scroll: Maximum points read when listing.
            client: Pre-built client (tests inject a mock here).
        """
        self._url = url
        self._api_key = api_key
        self._prefix = prefix
        self._max_scroll = max_scroll
        self._client = client
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, raising if not initialized."""
        if self._client is None:
            raise StorageError("Storage not initialized. Call initialize() first.")
        return self._client

    async def initialize(self) -> None:
        """Connect and ensure both collections exist."""
        if self._client is None:
            self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
        await self._ensure_collections()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> QdrantWebhookStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Helpers

    def _collection_name(self, kind: str) -> str:
        return f"{self._prefix}_{kind}"

    @staticmethod
    def _key_to_point_id(tenant_id: str, record_id: str) -> str:
        """Deterministic UUID-format point id for a tenant-scoped record."""
        h = hashlib.sha256(f"{tenant_id}/{record_id}".encode()).hexdigest()[:32]
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"

    async def _ensure_collections(self) -> None:
        collections = await self.client.get_collections()
        existing = {c.name for c in collections.collections}

        for kind, fields in INDEXED_FIELDS.items():
            name = self._collection_name(kind)
            if name in existing:
                continue
            await self.client.create_collection(
                collection_name=name,
                vectors_config=models.VectorParams(size=1, distance=models.Distance.DOT),
            )
            for field_name, schema in fields.items():
                await self.client.create_payload_index(
                    collection_name=name,
                    field_name=field_name,
                    field_schema=schema,
                )
            logger.info("Created Qdrant collection %s", name)

    @qdrant_retry
    async def _upsert(self, kind: str, tenant_id: str, record_id: str, payload: dict) -> None:
        await self.client.upsert(
            collection_name=self._collection_name(kind),
            points=[
                models.PointStruct(
                    id=self._key_to_point_id(tenant_id, record_id),
                    vector=_PLACEHOLDER_VECTOR,
                    payload=payload,
                )
            ],
        )

    @qdrant_retry
    async def _retrieve(self, kind: str, tenant_id: str, record_id: str) -> dict | None:
        results = await self.client.retrieve(
            collection_name=self._collection_name(kind),
            ids=[self._key_to_point_id(tenant_id, record_id)],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None
        return dict(results[0].payload)

    @qdrant_retry
    async def _set_payload(
        self, kind: str, tenant_id: str, record_id: str, payload: dict
    ) -> None:
        await self.client.set_payload(
            collection_name=self._collection_name(kind),
            payload=payload,
            points=[self._key_to_point_id(tenant_id, record_id)],
        )

    @qdrant_retry
    async def _scroll_all(self, kind: str, scroll_filter: models.Filter) -> list[dict]:
        """Read every matching payload, up to the scroll limit."""
        payloads: list[dict] = []
        offset = None
        while len(payloads) < self._max_scroll:
            points, offset = await self.client.scroll(
                collection_name=self._collection_name(kind),
                scroll_filter=scroll_filter,
                limit=min(256, self._max_scroll - len(payloads)),
                offset=offset,
                with_payload=True,
            )
            payloads.extend(dict(p.payload) for p in points if p.payload is not None)
            if offset is None:
                break
        return payloads

    # Subscriptions

    async def insert_subscription(self, subscription: Subscription) -> str:
        await self._upsert(
            SUBSCRIPTIONS,
            subscription.tenant_id,
            subscription.id,
            subscription.model_dump(mode="json"),
        )
        return subscription.id

    async def get_subscription(self, tenant_id: str, subscription_id: str) -> Subscription | None:
        payload = await self._retrieve(SUBSCRIPTIONS, tenant_id, subscription_id)
        return Subscription.model_validate(payload) if payload else None

    async def list_subscriptions(
        self,
        tenant_id: str,
        enabled: bool | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Subscription], int]:
        filters = [_match("tenant_id", tenant_id)]
        if enabled is not None:
            filters.append(_match("enabled", enabled))

        payloads = await self._scroll_all(SUBSCRIPTIONS, models.Filter(must=filters))
        subscriptions = [Subscription.model_validate(p) for p in payloads]
        subscriptions.sort(key=lambda s: s.created_at, reverse=True)
        return subscriptions[offset : offset + limit], len(subscriptions)

    async def find_matching_subscriptions(
        self,
        tenant_id: str,
        event_type: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> list[Subscription]:
        scroll_filter = models.Filter(
            must=[
                _match("tenant_id", tenant_id),
                _match("enabled", True),
                _match("events", event_type),
            ]
        )
        payloads = await self._scroll_all(SUBSCRIPTIONS, scroll_filter)
        subscriptions = [Subscription.model_validate(p) for p in payloads]
        # Null-or-equal scope matching is done client side
        return [s for s in subscriptions if s.matches(event_type, resource_type, resource_id)]

    async def update_subscription(
        self,
        tenant_id: str,
        subscription_id: str,
        changes: dict[str, Any],
    ) -> Subscription | None:
        async with self._locks[subscription_id]:
            current = await self.get_subscription(tenant_id, subscription_id)
            if current is None:
                return None
            updated = apply_changes(current, changes, utc_now())
            # Partial write: health counters owned by the sender stay untouched
            await self._set_payload(
                SUBSCRIPTIONS,
                tenant_id,
                subscription_id,
                updated.model_dump(mode="json", include={*changes, "updated_at"}),
            )
            return updated

    async def delete_subscription(self, tenant_id: str, subscription_id: str) -> bool:
        async with self._locks[subscription_id]:
            if await self.get_subscription(tenant_id, subscription_id) is None:
                return False

            await self.client.delete(
                collection_name=self._collection_name(DELIVERIES),
                points_selector=models.FilterSelector(
                    filter=models.Filter(
                        must=[
                            _match("tenant_id", tenant_id),
                            _match("subscription_id", subscription_id),
                        ]
                    )
                ),
            )
            await self.client.delete(
                collection_name=self._collection_name(SUBSCRIPTIONS),
                points_selector=models.PointIdsList(
                    points=[self._key_to_point_id(tenant_id, subscription_id)],
                ),
            )
        self._locks.pop(subscription_id, None)
        return True

    # Deliveries

    async def insert_delivery(self, delivery: Delivery) -> str:
        await self._upsert(
            DELIVERIES, delivery.tenant_id, delivery.id, delivery.model_dump(mode="json")
        )
        return delivery.id

    async def get_delivery(self, tenant_id: str, delivery_id: str) -> Delivery | None:
        payload = await self._retrieve(DELIVERIES, tenant_id, delivery_id)
        return Delivery.model_validate(payload) if payload else None

    async def save_delivery(self, delivery: Delivery) -> None:
        await self.insert_delivery(delivery)

    async def list_deliveries(
        self,
        tenant_id: str,
        subscription_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Delivery], int]:
        filters = [_match("tenant_id", tenant_id), _match("subscription_id", subscription_id)]
        if status is not None:
            filters.append(_match("status", status))

        payloads = await self._scroll_all(DELIVERIES, models.Filter(must=filters))
        deliveries = [Delivery.model_validate(p) for p in payloads]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return deliveries[offset : offset + limit], len(deliveries)

    async def list_deliveries_by_status(
        self,
        status: DeliveryStatus,
        limit: int = 100,
    ) -> list[Delivery]:
        payloads = await self._scroll_all(
            DELIVERIES, models.Filter(must=[_match("status", status)])
        )
        deliveries = [Delivery.model_validate(p) for p in payloads]
        deliveries.sort(key=lambda d: d.next_retry_at or d.created_at)
        return deliveries[:limit]

    async def record_attempt(
        self,
        delivery: Delivery,
        health: HealthUpdate | None = None,
    ) -> Subscription | None:
        async with self._locks[delivery.subscription_id]:
            subscription = await self.get_subscription(
                delivery.tenant_id, delivery.subscription_id
            )
            if subscription is None:
                return None

            await self.insert_delivery(delivery)
            if health is not None:
                apply_health(subscription, health)
                await self._set_payload(
                    SUBSCRIPTIONS,
                    subscription.tenant_id,
                    subscription.id,
                    subscription.model_dump(
                        mode="json",
                        include={
                            "consecutive_failures",
                            "last_delivered_at",
                            "last_failed_at",
                            "last_error",
                        },
                    ),
                )
            return subscription
