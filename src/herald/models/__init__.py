"""Data models for Herald.

Subscriptions:
    - Subscription: Registered receiver endpoint with secret and health counters
    - SubscriptionView: Secret-free projection returned to callers
    - SubscriptionCreate / SubscriptionUpdate: Registry inputs
    - RetryPolicy: Attempts and timeout

Events and deliveries:
    - WebhookEvent: Payload POSTed to receivers
    - Delivery: Ledger row tracking one (event, subscription) pair
"""

from .base import generate_id, utc_now
from .delivery import (
    TERMINAL_STATUSES,
    Delivery,
    DeliveryStatus,
    Page,
    TestDeliveryResult,
    TriggerResult,
)
from .event import ALL_EVENT_TYPES, EVENT_CATEGORIES, EventType, WebhookEvent, event_catalog
from .subscription import (
    CreatedSubscription,
    HealthUpdate,
    RetryPolicy,
    SecretRotation,
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
    SubscriptionView,
)

__all__ = [
    "generate_id",
    "utc_now",
    # Events
    "ALL_EVENT_TYPES",
    "EVENT_CATEGORIES",
    "EventType",
    "WebhookEvent",
    "event_catalog",
    # Subscriptions
    "CreatedSubscription",
    "HealthUpdate",
    "RetryPolicy",
    "SecretRotation",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionUpdate",
    "SubscriptionView",
    # Deliveries
    "TERMINAL_STATUSES",
    "Delivery",
    "DeliveryStatus",
    "Page",
    "TestDeliveryResult",
    "TriggerResult",
]
