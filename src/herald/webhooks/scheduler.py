"""Timer-based retry scheduling.

Each scheduled retry is an asyncio task that sleeps until its due time
and then invokes a callback. Timers are keyed by delivery id (scheduling
again replaces the previous timer) and indexed by subscription so a
deleted subscription can drop all of its pending retries at once.

Timers live only in this process. Retries scheduled before a restart are
lost; the deliveries stay `retrying` and can be re-armed with
WebhookService.recover_retries().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from herald.models import utc_now

logger = logging.getLogger(__name__)

RetryCallback = Callable[[], Awaitable[None]]


class RetryScheduler:
    """Cancellable delayed re-invocation of delivery attempts."""

    def __init__(self) -> None:
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._owners: dict[str, str] = {}
        self._by_subscription: dict[str, set[str]] = {}
        self._running: set[asyncio.Task[None]] = set()
        self._closed = False

    def schedule(
        self,
        delivery_id: str,
        subscription_id: str,
        run_at: datetime,
        callback: RetryCallback,
    ) -> None:
        """Run `callback` at `run_at`, replacing any timer for this delivery.

        A due time in the past fires on the next loop iteration.
        """
        if self._closed:
            logger.warning("Scheduler closed; dropping retry for delivery %s", delivery_id)
            return

        self.cancel(delivery_id)
        delay = max(0.0, (run_at - utc_now()).total_seconds())
        task = asyncio.create_task(
            self._fire(delivery_id, delay, callback),
            name=f"herald-retry-{delivery_id}",
        )
        self._timers[delivery_id] = task
        self._owners[delivery_id] = subscription_id
        self._by_subscription.setdefault(subscription_id, set()).add(delivery_id)
        logger.debug("Retry for delivery %s scheduled in %.3fs", delivery_id, delay)

    async def _fire(self, delivery_id: str, delay: float, callback: RetryCallback) -> None:
        await asyncio.sleep(delay)
        # Past this point the timer can no longer be cancelled
        task = self._forget(delivery_id)
        if task is not None:
            self._running.add(task)
        try:
            await callback()
        except Exception:
            logger.exception("Scheduled retry for delivery %s failed", delivery_id)
        finally:
            if task is not None:
                self._running.discard(task)

    def _forget(self, delivery_id: str) -> asyncio.Task[None] | None:
        task = self._timers.pop(delivery_id, None)
        subscription_id = self._owners.pop(delivery_id, None)
        if subscription_id is not None:
            ids = self._by_subscription.get(subscription_id)
            if ids is not None:
                ids.discard(delivery_id)
                if not ids:
                    del self._by_subscription[subscription_id]
        return task

    def cancel(self, delivery_id: str) -> bool:
        """Cancel the pending timer for a delivery, if any."""
        task = self._forget(delivery_id)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_subscription(self, subscription_id: str) -> int:
        """Cancel every pending timer of a subscription. Returns the count."""
        ids = list(self._by_subscription.get(subscription_id, ()))
        return sum(1 for delivery_id in ids if self.cancel(delivery_id))

    def is_scheduled(self, delivery_id: str) -> bool:
        return delivery_id in self._timers

    def pending(self) -> int:
        """Number of timers waiting to fire."""
        return len(self._timers)

    def tasks(self) -> list[asyncio.Task[None]]:
        """Snapshot of timer tasks still waiting or running their callback."""
        return [*self._timers.values(), *self._running]

    async def shutdown(self) -> None:
        """Abandon all pending timers."""
        self._closed = True
        tasks = self.tasks()
        for task in tasks:
            task.cancel()
        self._timers.clear()
        self._owners.clear()
        self._by_subscription.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Abandoned %d scheduled retries on shutdown", len(tasks))
