"""Herald: outbound webhooks you can trust.

Tenants register HTTPS endpoints for business events. When an event
happens, Herald POSTs a JSON payload signed with HMAC-SHA256 to every
matching endpoint, retries failures with exponential backoff and keeps
a per-delivery ledger.

Quick Start:
    from herald import SubscriptionCreate, WebhookService

    async with WebhookService.create() as herald:
        created = await herald.registry.create(
            "org_1",
            SubscriptionCreate(
                url="https://example.com/hooks/herald",
                events=["deployment.failed"],
            ),
        )
        # created.secret is shown once; hand it to the receiver

        await herald.trigger(
            "org_1",
            "deployment.failed",
            {"deploymentId": "d1", "reason": "OOM"},
            resource_type="deployment",
            resource_id="d1",
        )

Receivers verify requests with:
    from herald import verify_signature

    verify_signature(raw_body, request.headers["X-Webhook-Signature"], secret)
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    ConfigurationError,
    ConflictError,
    HeraldError,
    NotFoundError,
    StorageError,
    ValidationError,
)

# Logging
from .logging import (
    configure_logging,
    delivery_context,
    get_logger,
)

# Models
from .models import (
    ALL_EVENT_TYPES,
    CreatedSubscription,
    Delivery,
    DeliveryStatus,
    Page,
    RetryPolicy,
    SecretRotation,
    Subscription,
    SubscriptionCreate,
    SubscriptionUpdate,
    SubscriptionView,
    TestDeliveryResult,
    TriggerResult,
    WebhookEvent,
)

# Signing
from .signing import compute_signature, generate_secret, verify_signature

# Engine
from .webhooks import WebhookService, dispatch_webhook_event

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "HeraldError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StorageError",
    "ConfigurationError",
    # Logging
    "configure_logging",
    "get_logger",
    "delivery_context",
    # Models
    "ALL_EVENT_TYPES",
    "CreatedSubscription",
    "Delivery",
    "DeliveryStatus",
    "Page",
    "RetryPolicy",
    "SecretRotation",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionUpdate",
    "SubscriptionView",
    "TestDeliveryResult",
    "TriggerResult",
    "WebhookEvent",
    # Signing
    "compute_signature",
    "generate_secret",
    "verify_signature",
    # Engine
    "WebhookService",
    "dispatch_webhook_event",
]
