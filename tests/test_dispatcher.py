"""Tests for event fan-out."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from herald.exceptions import StorageError
from herald.models import Subscription
from herald.webhooks import WebhookDispatcher, WebhookService, dispatch_webhook_event
from herald.webhooks.sender import DELIVERY_HEADER


class TestTrigger:
    @pytest.mark.asyncio
    async def test_no_match(self, service):
        result = await service.dispatcher.trigger("org_1", "agent.created", {"agentId": "a1"})
        assert result.subscriptions_matched == 0
        assert result.delivery_ids == []
        assert result.event_id.startswith("evt_")

    @pytest.mark.asyncio
    async def test_fan_out_shares_event_id(self, service, subscribe, receiver):
        first = await subscribe()
        second = await subscribe()
        await subscribe(events=["agent.deleted"])

        result = await service.dispatcher.trigger("org_1", "agent.created", {"agentId": "a1"})
        await service.drain()

        assert result.subscriptions_matched == 2
        assert len(set(result.delivery_ids)) == 2
        bodies = [json.loads(r.content) for r in receiver.requests]
        assert {b["id"] for b in bodies} == {result.event_id}
        assert {r.headers[DELIVERY_HEADER] for r in receiver.requests} == set(result.delivery_ids)

        for created in (first, second):
            page = await service.list_deliveries("org_1", created.subscription.id)
            assert page.total == 1
            assert page.items[0].event_id == result.event_id
            assert page.items[0].status == "success"

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, service, subscribe, receiver):
        await subscribe("org_2")
        result = await service.dispatcher.trigger("org_1", "agent.created")
        await service.drain()
        assert result.subscriptions_matched == 0
        assert receiver.count == 0

    @pytest.mark.asyncio
    async def test_disabled_subscription_excluded(self, service, subscribe, receiver):
        created = await subscribe()
        await service.registry.set_enabled("org_1", created.subscription.id, False)

        result = await service.dispatcher.trigger("org_1", "agent.created")
        await service.drain()

        assert result.subscriptions_matched == 0
        assert receiver.count == 0

    @pytest.mark.asyncio
    async def test_resource_scope(self, service, subscribe, receiver):
        scoped = await subscribe(
            events=["deployment.failed"], resource_type="deployment", resource_id="d1"
        )

        other = await service.dispatcher.trigger(
            "org_1", "deployment.failed", {"deploymentId": "d2"},
            resource_type="deployment", resource_id="d2",
        )
        await service.drain()
        assert other.subscriptions_matched == 0
        page = await service.list_deliveries("org_1", scoped.subscription.id)
        assert page.total == 0

        hit = await service.dispatcher.trigger(
            "org_1", "deployment.failed", {"deploymentId": "d1"},
            resource_type="deployment", resource_id="d1",
        )
        await service.drain()
        assert hit.subscriptions_matched == 1
        assert receiver.count == 1

    @pytest.mark.asyncio
    async def test_returns_before_receivers_answer(self, store, settings):
        release = asyncio.Event()

        async def hanging(request: httpx.Request) -> httpx.Response:
            await release.wait()
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(hanging))
        service = WebhookService(store=store, settings=settings, http_client=client)
        created = await service.registry.create(
            "org_1", {"url": "https://example.com/hook", "events": ["agent.created"]}
        )

        result = await service.trigger("org_1", "agent.created")

        assert result.subscriptions_matched == 1
        assert service.dispatcher.in_flight() == 1
        delivery = await service.get_delivery("org_1", created.subscription.id, result.delivery_ids[0])
        assert delivery.status == "pending"

        release.set()
        await service.drain()
        assert service.dispatcher.in_flight() == 0

    @pytest.mark.asyncio
    async def test_one_slow_receiver_does_not_block_another(self, store, settings):
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "slow.example.com":
                await release.wait()
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        service = WebhookService(store=store, settings=settings, http_client=client)
        slow = await service.registry.create(
            "org_1", {"url": "https://slow.example.com/hook", "events": ["alert.triggered"]}
        )
        fast = await service.registry.create(
            "org_1", {"url": "https://fast.example.com/hook", "events": ["alert.triggered"]}
        )

        result = await service.trigger("org_1", "alert.triggered")
        for _ in range(100):
            fast_page = await service.list_deliveries("org_1", fast.subscription.id)
            if fast_page.items[0].status == "success":
                break
            await asyncio.sleep(0.01)

        slow_page = await service.list_deliveries("org_1", slow.subscription.id)
        assert fast_page.items[0].status == "success"
        assert slow_page.items[0].status == "pending"
        assert result.subscriptions_matched == 2

        release.set()
        await service.drain()


class TestDispatcherUnit:
    """Dispatcher against mocked collaborators."""

    @pytest.mark.asyncio
    async def test_crashing_attempt_is_contained(self):
        subscription = Subscription(
            tenant_id="org_1",
            url="https://example.com/hook",
            secret="secret",
            events=["agent.created"],
        )
        store = AsyncMock()
        store.find_matching_subscriptions = AsyncMock(return_value=[subscription])
        ledger = AsyncMock()
        ledger.open = AsyncMock(return_value=MagicMock(id="dlv_1"))
        sender = AsyncMock()
        sender.attempt = AsyncMock(side_effect=RuntimeError("bug"))

        dispatcher = WebhookDispatcher(store, ledger, sender)
        result = await dispatcher.trigger("org_1", "agent.created")
        await dispatcher.drain()

        assert result.delivery_ids == ["dlv_1"]
        sender.attempt.assert_awaited_once()
        assert dispatcher.in_flight() == 0

    @pytest.mark.asyncio
    async def test_failed_open_does_not_strand_other_deliveries(self):
        def make(name: str) -> Subscription:
            return Subscription(
                tenant_id="org_1",
                name=name,
                url="https://example.com/hook",
                secret="secret",
                events=["agent.created"],
            )

        good, broken = make("good"), make("broken")

        async def open_delivery(subscription, event):
            if subscription is broken:
                raise StorageError("insert failed")
            return MagicMock(id=f"dlv_{subscription.name}")

        store = AsyncMock()
        store.find_matching_subscriptions = AsyncMock(return_value=[good, broken])
        ledger = AsyncMock()
        ledger.open = AsyncMock(side_effect=open_delivery)
        sender = AsyncMock()

        dispatcher = WebhookDispatcher(store, ledger, sender)
        result = await dispatcher.trigger("org_1", "agent.created")
        await dispatcher.drain()

        assert result.subscriptions_matched == 2
        assert result.delivery_ids == ["dlv_good"]
        sender.attempt.assert_awaited_once()
        assert sender.attempt.await_args.args[0] is good

    @pytest.mark.asyncio
    async def test_every_open_failing_raises(self):
        subscription = Subscription(
            tenant_id="org_1",
            url="https://example.com/hook",
            secret="secret",
            events=["agent.created"],
        )
        store = AsyncMock()
        store.find_matching_subscriptions = AsyncMock(return_value=[subscription])
        ledger = AsyncMock()
        ledger.open = AsyncMock(side_effect=StorageError("insert failed"))
        sender = AsyncMock()

        dispatcher = WebhookDispatcher(store, ledger, sender)
        with pytest.raises(StorageError):
            await dispatcher.trigger("org_1", "agent.created")
        sender.attempt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dispatch_webhook_event_kwargs(self):
        dispatcher = MagicMock()
        dispatcher.trigger = AsyncMock()

        await dispatch_webhook_event(
            dispatcher, "org_1", "agent.created", agentId="a1", agentName="Scout"
        )

        dispatcher.trigger.assert_awaited_once_with(
            "org_1",
            "agent.created",
            {"agentId": "a1", "agentName": "Scout"},
            resource_type=None,
            resource_id=None,
        )
