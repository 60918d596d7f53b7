"""Tests for the Qdrant webhook store against a mocked client."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from qdrant_client import models

from herald.exceptions import StorageError
from herald.models import Delivery, HealthUpdate, Subscription
from herald.storage.qdrant import QdrantWebhookStore


def make_subscription(**overrides) -> Subscription:
    data = {
        "tenant_id": "org_1",
        "url": "https://example.com/hook",
        "secret": "secret",
        "events": ["deployment.failed"],
    }
    data.update(overrides)
    return Subscription(**data)


def make_delivery(subscription: Subscription) -> Delivery:
    return Delivery(
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        event_id="evt_1",
        event_type="deployment.failed",
        payload="{}",
    )


def point(payload: dict) -> SimpleNamespace:
    return SimpleNamespace(payload=payload)


@pytest.fixture
def client() -> AsyncMock:
    client = AsyncMock()
    client.get_collections = AsyncMock(return_value=SimpleNamespace(collections=[]))
    client.retrieve = AsyncMock(return_value=[])
    client.scroll = AsyncMock(return_value=([], None))
    return client


@pytest.fixture
def store(client: AsyncMock) -> QdrantWebhookStore:
    return QdrantWebhookStore(prefix="test", client=client)


class TestLifecycle:
    def test_client_required(self):
        with pytest.raises(StorageError):
            _ = QdrantWebhookStore().client

    @pytest.mark.asyncio
    async def test_initialize_creates_collections_and_indexes(self, store, client):
        await store.initialize()

        created = {c.kwargs["collection_name"] for c in client.create_collection.call_args_list}
        assert created == {"test_webhooks", "test_webhook_deliveries"}
        indexed = {
            (c.kwargs["collection_name"], c.kwargs["field_name"])
            for c in client.create_payload_index.call_args_list
        }
        assert ("test_webhooks", "events") in indexed
        assert ("test_webhook_deliveries", "status") in indexed

    @pytest.mark.asyncio
    async def test_initialize_skips_existing(self, store, client):
        client.get_collections.return_value = SimpleNamespace(
            collections=[
                SimpleNamespace(name="test_webhooks"),
                SimpleNamespace(name="test_webhook_deliveries"),
            ]
        )
        await store.initialize()
        client.create_collection.assert_not_called()

    @pytest.mark.asyncio
    async def test_close(self, store, client):
        await store.close()
        client.close.assert_awaited_once()
        with pytest.raises(StorageError):
            _ = store.client


class TestPointIds:
    def test_deterministic_and_tenant_scoped(self):
        a = QdrantWebhookStore._key_to_point_id("org_1", "whk_1")
        assert a == QdrantWebhookStore._key_to_point_id("org_1", "whk_1")
        assert a != QdrantWebhookStore._key_to_point_id("org_2", "whk_1")
        assert len(a) == 36


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_insert_upserts_json_payload(self, store, client):
        subscription = make_subscription()
        await store.insert_subscription(subscription)

        kwargs = client.upsert.call_args.kwargs
        assert kwargs["collection_name"] == "test_webhooks"
        stored = kwargs["points"][0]
        assert stored.payload["id"] == subscription.id
        assert stored.payload["url"] == "https://example.com/hook"
        assert stored.id == store._key_to_point_id("org_1", subscription.id)

    @pytest.mark.asyncio
    async def test_get_round_trips_payload(self, store, client):
        subscription = make_subscription()
        client.retrieve.return_value = [point(subscription.model_dump(mode="json"))]
        fetched = await store.get_subscription("org_1", subscription.id)
        assert fetched.model_dump() == subscription.model_dump()

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get_subscription("org_1", "whk_missing") is None

    @pytest.mark.asyncio
    async def test_find_matching_filters_scope_client_side(self, store, client):
        unscoped = make_subscription()
        scoped_other = make_subscription(resource_type="deployment", resource_id="d2")
        client.scroll.return_value = (
            [point(unscoped.model_dump(mode="json")), point(scoped_other.model_dump(mode="json"))],
            None,
        )

        found = await store.find_matching_subscriptions(
            "org_1", "deployment.failed", resource_type="deployment", resource_id="d1"
        )
        assert [s.id for s in found] == [unscoped.id]
        scroll_filter = client.scroll.call_args.kwargs["scroll_filter"]
        keys = {c.key for c in scroll_filter.must}
        assert keys == {"tenant_id", "enabled", "events"}

    @pytest.mark.asyncio
    async def test_list_pages_across_scroll_batches(self, store, client):
        subs = [make_subscription(name=f"s{i}") for i in range(3)]
        client.scroll.side_effect = [
            ([point(subs[0].model_dump(mode="json"))], "next"),
            ([point(s.model_dump(mode="json")) for s in subs[1:]], None),
        ]
        items, total = await store.list_subscriptions("org_1", limit=2)
        assert total == 3
        assert len(items) == 2
        assert client.scroll.await_count == 2

    @pytest.mark.asyncio
    async def test_update_writes_only_changed_fields(self, store, client):
        subscription = make_subscription(consecutive_failures=5)
        client.retrieve.return_value = [point(subscription.model_dump(mode="json"))]

        updated = await store.update_subscription("org_1", subscription.id, {"name": "renamed"})

        assert updated.name == "renamed"
        written = client.set_payload.call_args.kwargs["payload"]
        assert set(written) == {"name", "updated_at"}

    @pytest.mark.asyncio
    async def test_delete_cascades(self, store, client):
        subscription = make_subscription()
        client.retrieve.return_value = [point(subscription.model_dump(mode="json"))]

        assert await store.delete_subscription("org_1", subscription.id) is True

        first, second = client.delete.call_args_list
        assert first.kwargs["collection_name"] == "test_webhook_deliveries"
        assert isinstance(first.kwargs["points_selector"], models.FilterSelector)
        assert second.kwargs["collection_name"] == "test_webhooks"

    @pytest.mark.asyncio
    async def test_delete_missing(self, store, client):
        assert await store.delete_subscription("org_1", "whk_missing") is False
        client.delete.assert_not_called()


class TestRecordAttempt:
    @pytest.mark.asyncio
    async def test_writes_delivery_and_health(self, store, client):
        subscription = make_subscription(consecutive_failures=1)
        client.retrieve.return_value = [point(subscription.model_dump(mode="json"))]
        delivery = make_delivery(subscription).mark_failed(attempt=1, error="HTTP 500")

        updated = await store.record_attempt(
            delivery,
            HealthUpdate(subscription_id=subscription.id, success=False, error="HTTP 500"),
        )

        assert updated.consecutive_failures == 2
        assert client.upsert.call_args.kwargs["collection_name"] == "test_webhook_deliveries"
        health = client.set_payload.call_args.kwargs["payload"]
        assert health["consecutive_failures"] == 2
        assert health["last_error"] == "HTTP 500"
        assert "secret" not in health

    @pytest.mark.asyncio
    async def test_deleted_subscription_skips(self, store, client):
        subscription = make_subscription()
        delivery = make_delivery(subscription).mark_failed(attempt=1, error="x")

        assert await store.record_attempt(delivery, None) is None
        client.upsert.assert_not_called()
