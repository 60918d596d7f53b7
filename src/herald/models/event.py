"""Event taxonomy and the payload delivered to receivers."""

from datetime import datetime
from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utc_now

# Event types that can trigger webhooks
EventType = Literal[
    "agent.created",
    "agent.updated",
    "agent.deleted",
    "agent.deployed",
    "agent.version.created",
    "deployment.started",
    "deployment.running",
    "deployment.stopped",
    "deployment.failed",
    "training.started",
    "training.completed",
    "training.failed",
    "alert.triggered",
    "alert.resolved",
    "billing.low_balance",
    "billing.payment_received",
]

# All available event types for subscription
ALL_EVENT_TYPES: list[str] = list(get_args(EventType))

EVENT_CATEGORIES: tuple[str, ...] = ("agent", "deployment", "training", "alert", "billing")


def event_catalog() -> dict[str, Any]:
    """Available event types, flat and grouped by category prefix."""
    return {
        "events": list(ALL_EVENT_TYPES),
        "categories": {
            category: [e for e in ALL_EVENT_TYPES if e.startswith(f"{category}.")]
            for category in EVENT_CATEGORIES
        },
    }


class WebhookEvent(BaseModel):
    """Event payload sent to webhook endpoints.

    One event is created per trigger call; its id is shared by every
    delivery fanned out from it so receivers can deduplicate.

    Attributes:
        id: Unique identifier for this event occurrence.
        type: Event type (agent.created, deployment.failed, etc.).
        timestamp: When the event occurred.
        data: Event-specific payload data.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("evt"))
    type: str = Field(min_length=1, description="Event type")
    timestamp: datetime = Field(default_factory=utc_now, description="When the event occurred")
    data: dict[str, Any] = Field(default_factory=dict, description="Event-specific payload")

    def serialize(self) -> str:
        """JSON body sent on the wire and stored verbatim for retries."""
        return self.model_dump_json()

    @classmethod
    def for_test(cls) -> "WebhookEvent":
        """Synthetic event used by test deliveries."""
        return cls(
            type="agent.created",
            data={
                "test": True,
                "message": "This is a test webhook delivery",
                "agentId": "test-agent-id",
                "agentName": "Test Agent",
            },
        )


__all__ = [
    "ALL_EVENT_TYPES",
    "EVENT_CATEGORIES",
    "EventType",
    "WebhookEvent",
    "event_catalog",
]
