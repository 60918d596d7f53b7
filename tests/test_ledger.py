"""Tests for the delivery ledger."""

import json
from datetime import timedelta

import pytest

from herald.exceptions import NotFoundError
from herald.ledger import DeliveryLedger
from herald.models import Subscription, WebhookEvent, utc_now
from herald.storage import MemoryWebhookStore


@pytest.fixture
def store() -> MemoryWebhookStore:
    return MemoryWebhookStore()


@pytest.fixture
def ledger(store) -> DeliveryLedger:
    return DeliveryLedger(store)


@pytest.fixture
def subscription() -> Subscription:
    return Subscription(
        tenant_id="org_1",
        url="https://example.com/hook",
        secret="secret",
        events=["training.completed"],
    )


@pytest.fixture
def event() -> WebhookEvent:
    return WebhookEvent(type="training.completed", data={"jobId": "j1"})


class TestOpen:
    @pytest.mark.asyncio
    async def test_creates_pending_delivery(self, ledger, store, subscription, event):
        await store.insert_subscription(subscription)
        delivery = await ledger.open(subscription, event)

        assert delivery.status == "pending"
        assert delivery.attempt == 0
        assert delivery.event_id == event.id
        assert delivery.tenant_id == "org_1"
        assert json.loads(delivery.payload)["data"] == {"jobId": "j1"}
        assert await store.get_delivery("org_1", delivery.id) == delivery

    @pytest.mark.asyncio
    async def test_payload_is_frozen_at_open(self, ledger, store, subscription, event):
        await store.insert_subscription(subscription)
        delivery = await ledger.open(subscription, event)
        event.data["jobId"] = "changed"
        assert delivery.payload == (await store.get_delivery("org_1", delivery.id)).payload
        assert "changed" not in delivery.payload


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_checks_subscription(self, ledger, store, subscription, event):
        await store.insert_subscription(subscription)
        delivery = await ledger.open(subscription, event)

        assert (await ledger.get("org_1", subscription.id, delivery.id)).id == delivery.id
        with pytest.raises(NotFoundError):
            await ledger.get("org_1", "whk_other", delivery.id)
        with pytest.raises(NotFoundError):
            await ledger.get("org_2", subscription.id, delivery.id)

    @pytest.mark.asyncio
    async def test_list_page(self, ledger, store, subscription, event):
        await store.insert_subscription(subscription)
        for _ in range(3):
            await ledger.open(subscription, event)

        page = await ledger.list("org_1", subscription.id, limit=2)
        assert page.total == 3
        assert len(page.items) == 2
        assert page.limit == 2
        assert page.offset == 0

    @pytest.mark.asyncio
    async def test_retrying(self, ledger, store, subscription, event):
        await store.insert_subscription(subscription)
        delivery = await ledger.open(subscription, event)
        await ledger.record_retry(
            delivery, attempt=1, next_retry_at=utc_now() + timedelta(minutes=2), error="HTTP 503"
        )
        await ledger.open(subscription, event)

        assert [d.id for d in await ledger.retrying()] == [delivery.id]


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success_resets_health(self, ledger, store, subscription, event):
        subscription.consecutive_failures = 2
        await store.insert_subscription(subscription)
        delivery = await ledger.open(subscription, event)

        updated = await ledger.record_success(
            delivery, attempt=1, status_code=200, response_body="ok", response_time_ms=10
        )
        assert updated.consecutive_failures == 0
        assert updated.last_delivered_at == delivery.delivered_at
        assert (await store.get_delivery("org_1", delivery.id)).status == "success"

    @pytest.mark.asyncio
    async def test_retry_counts_failure(self, ledger, store, subscription, event):
        await store.insert_subscription(subscription)
        delivery = await ledger.open(subscription, event)
        next_at = utc_now() + timedelta(minutes=2)

        updated = await ledger.record_retry(
            delivery, attempt=1, next_retry_at=next_at, error="HTTP 502", status_code=502
        )
        stored = await store.get_delivery("org_1", delivery.id)
        assert stored.status == "retrying"
        assert stored.next_retry_at == next_at
        assert updated.consecutive_failures == 1
        assert updated.last_error == "HTTP 502"

    @pytest.mark.asyncio
    async def test_failure_without_health(self, ledger, store, subscription, event):
        await store.insert_subscription(subscription)
        delivery = await ledger.open(subscription, event, is_test=True)

        updated = await ledger.record_failure(
            delivery, attempt=1, error="HTTP 404", status_code=404, count_health=False
        )
        assert updated.consecutive_failures == 0
        stored = await store.get_delivery("org_1", delivery.id)
        assert stored.status == "failed"
        assert stored.is_test is True

    @pytest.mark.asyncio
    async def test_reset_for_manual_retry(self, ledger, store, subscription, event):
        await store.insert_subscription(subscription)
        delivery = await ledger.open(subscription, event)
        await ledger.record_failure(delivery, attempt=3, error="HTTP 500")

        await ledger.reset_for_manual_retry(delivery)
        stored = await store.get_delivery("org_1", delivery.id)
        assert stored.status == "pending"
        assert stored.attempt == 0
