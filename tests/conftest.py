"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import pytest

from herald.config import Settings
from herald.models import CreatedSubscription
from herald.storage import MemoryWebhookStore
from herald.webhooks import WebhookService

RECEIVER_URL = "https://receiver.example.com/hooks/herald"

Reply = int | tuple[int, str] | Exception


class Receiver:
    """Scripted webhook endpoint used as an httpx.MockTransport handler.

    Replies are consumed in order; once exhausted every request gets
    `default`. A reply is a status code, a (status, body) pair, or an
    exception to raise from the transport.

    Example:
        ```python
        receiver = Receiver([500, httpx.ConnectError("refused"), (200, "ok")])
        client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
        ```
    """

    def __init__(self, replies: list[Reply] | None = None, default: Reply = 200) -> None:
        self.requests: list[httpx.Request] = []
        self.times: list[float] = []
        self.replies = list(replies or [])
        self.default = default

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.times.append(time.monotonic())
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, tuple):
            status, body = reply
            return httpx.Response(status, text=body)
        return httpx.Response(reply, text="ok" if reply < 300 else "error")

    @property
    def count(self) -> int:
        return len(self.requests)


@pytest.fixture
def settings() -> Settings:
    """Settings with a backoff unit small enough to run retries in tests."""
    return Settings(
        _env_file=None,
        retry_backoff_unit_seconds=0.01,
        log_format="text",
    )


@pytest.fixture
def store() -> MemoryWebhookStore:
    return MemoryWebhookStore()


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest.fixture
def http_client(receiver: Receiver) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(receiver))


@pytest.fixture
def service(
    store: MemoryWebhookStore,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> WebhookService:
    return WebhookService(store=store, settings=settings, http_client=http_client)


@pytest.fixture
def subscribe(service: WebhookService) -> Callable[..., Awaitable[CreatedSubscription]]:
    """Factory registering a subscription through the service's registry."""

    async def _subscribe(tenant_id: str = "org_1", **overrides: Any) -> CreatedSubscription:
        data: dict[str, Any] = {
            "name": "Test hook",
            "url": RECEIVER_URL,
            "events": ["agent.created"],
            **overrides,
        }
        return await service.registry.create(tenant_id, data)

    return _subscribe
