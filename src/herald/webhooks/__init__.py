"""Webhook delivery engine.

Fans events out to subscriptions, makes HMAC-signed delivery attempts and
retries failures with exponential backoff.

Example:
    ```python
    from herald.webhooks import WebhookService, dispatch_webhook_event

    async with WebhookService.create() as herald:
        # Using the service directly
        await herald.trigger("org_1", "deployment.failed", {"deploymentId": "d1"})

        # Using convenience function
        await dispatch_webhook_event(
            herald.dispatcher,
            "org_1",
            "agent.created",
            agentId="a1",
            agentName="Scout",
        )
    ```
"""

from .dispatcher import WebhookDispatcher, dispatch_webhook_event
from .scheduler import RetryScheduler
from .sender import AttemptResult, WebhookSender, backoff, build_headers
from .service import WebhookService

__all__ = [
    "AttemptResult",
    "RetryScheduler",
    "WebhookDispatcher",
    "WebhookSender",
    "WebhookService",
    "backoff",
    "build_headers",
    "dispatch_webhook_event",
]
