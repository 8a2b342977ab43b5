import asyncio
from typing import Any, Optional

import requests

from deposit_indexer.models import NOTIFY_STATUSES
from deposit_indexer.store import DepositStore
from deposit_indexer.util import json_dumps, log, now_ts


class Notifier:
    """Messaging collaborator. ``notify`` returns a truthy ack once delivery is accepted."""

    def notify(self, order_id: str, status: str) -> Any:
        raise NotImplementedError


class WebhookNotifier(Notifier):
    """POSTs ``{"order_id", "status"}``; receivers dedupe on the Idempotency-Key header."""

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[Any] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, order_id: str, status: str) -> bool:
        resp = self.session.post(
            self.url,
            data=json_dumps({"order_id": order_id, "status": status}),
            headers={
                "Content-Type": "application/json",
                "Idempotency-Key": f"{order_id}:{status}",
            },
            timeout=self.timeout,
        )
        return 200 <= resp.status_code < 300


class NotificationDispatcher:
    """At-least-once delivery of terminal order outcomes.

    ``notified`` is set only after the collaborator acknowledges, so a crash
    between the two re-sends on the next pass. Failed deliveries back off per
    order; the schedule is kept on the order row, so orders waiting out their
    backoff never take a slot in the next batch.
    """

    def __init__(
        self,
        store: DepositStore,
        notifier: Notifier,
        timeout: float = 10.0,
        base_delay: float = 5.0,
        max_delay: float = 600.0,
        batch_size: int = 100,
    ):
        self.store = store
        self.notifier = notifier
        self.timeout = timeout
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.batch_size = batch_size

    async def _record_failure(self, order: Any, now: int) -> int:
        attempts = order["notify_attempts"] + 1
        delay = int(min(self.base_delay * (2 ** (attempts - 1)), self.max_delay))
        async with self.store.lock:
            self.store.defer_notification(order["order_id"], attempts, now + delay)
        return delay

    async def dispatch_pending(self, now: Optional[int] = None) -> int:
        """One delivery pass; orders still backing off are not selected."""
        now = int(now) if now is not None else now_ts()
        async with self.store.lock:
            orders = self.store.orders_to_notify(NOTIFY_STATUSES, now, self.batch_size)
        delivered = 0
        for order in orders:
            try:
                ack = await asyncio.wait_for(
                    asyncio.to_thread(self.notifier.notify, order["order_id"], order["status"]),
                    self.timeout,
                )
            except Exception as exc:
                delay = await self._record_failure(order, now)
                log(f"WARN: notify {order['order_id']} ({order['status']}) failed: {exc}; retry in {delay}s")
                continue
            if not ack:
                delay = await self._record_failure(order, now)
                log(f"WARN: notify {order['order_id']} ({order['status']}) not acknowledged; retry in {delay}s")
                continue
            async with self.store.lock:
                self.store.mark_notified(order["order_id"], order["status"])
            delivered += 1
            log(f"Notified order {order['order_id']} -> {order['status']}")
        return delivered
