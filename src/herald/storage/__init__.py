"""Storage backends for Herald.

Subscriptions and the delivery ledger are persisted through the
WebhookStore protocol. Two backends ship with Herald:

- MemoryWebhookStore: in-process, default, used by tests
- QdrantWebhookStore: Qdrant collections with tenant-scoped point ids

Example:
    ```python
    from herald.config import Settings
    from herald.storage import create_store

    store = create_store(Settings(storage_backend="qdrant"))
    await store.initialize()
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from herald.exceptions import ConfigurationError

from .base import WebhookStore, apply_changes, apply_health
from .memory import MemoryWebhookStore

if TYPE_CHECKING:
    from herald.config import Settings


def create_store(settings: Settings) -> WebhookStore:
    """Build the store selected by settings.storage_backend."""
    if settings.storage_backend == "memory":
        return MemoryWebhookStore()
    if settings.storage_backend == "qdrant":
        from .qdrant import QdrantWebhookStore

        return QdrantWebhookStore(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            prefix=settings.collection_prefix,
            max_scroll=settings.storage_max_scroll_limit,
        )
    raise ConfigurationError(f"Unknown storage backend: {settings.storage_backend}")


__all__ = [
    "MemoryWebhookStore",
    "WebhookStore",
    "apply_changes",
    "apply_health",
    "create_store",
]
