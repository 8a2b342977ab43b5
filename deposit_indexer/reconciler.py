"""Order reconciliation.

Ties stored deposit events to orders by exact ``order_id`` match and drives the
order state machine::

    pending -> deposited -> completed
    pending -> failed
    pending -> cancelled

Every method that writes expects to run inside ``DepositStore.transaction()``
so the status change, the ``processed`` flag and any anomaly row commit with
the event insert that triggered them.
"""

import sqlite3
from typing import Any, Dict, Optional

from deposit_indexer.models import (
    CANCELLED,
    COMPLETED,
    DEPOSITED,
    FAILED,
    PENDING,
    CanonicalEvent,
)
from deposit_indexer.store import DepositStore
from deposit_indexer.util import log, now_ts

APPLIED = "applied"
WAITING = "waiting"
ANOMALY = "anomaly"
REVIEW = "needs_review"
SKIPPED = "skipped"

ANOMALY_ORDER_NOT_FOUND = "order_not_found"
ANOMALY_ORDER_NOT_PENDING = "order_not_pending"
ANOMALY_AMOUNT_MISMATCH = "amount_mismatch"
ANOMALY_CHAIN_MISMATCH = "chain_mismatch"
ANOMALY_UNDECODABLE = "undecodable_event"


class OrderReconciler:
    def __init__(self, store: DepositStore, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.store = store
        self.settle_inline = bool(config.get("settle_inline", True))
        self.retry_interval = int(config.get("retry_interval", 30))
        self.max_retry_interval = int(config.get("max_retry_interval", 600))
        self.max_retry_window = int(config.get("max_retry_window", 3600))
        self.order_expiry = config.get("order_expiry")

    def reconcile_event(self, event_id: int, now: Optional[int] = None) -> str:
        now = now if now is not None else now_ts()
        deposit = self.store.get_deposit(event_id)
        if deposit is None:
            raise LookupError(f"deposit event {event_id} does not exist")
        if deposit["processed"]:
            return SKIPPED

        order = self.store.get_order(deposit["order_id"])
        if order is None:
            return self._defer(deposit, now)

        ref = f"{deposit['chain_id']}:{deposit['tx_id']}:{deposit['event_index']}"
        if order["status"] != PENDING:
            return self._anomaly(
                deposit,
                ANOMALY_ORDER_NOT_PENDING,
                f"order {order['order_id']} is {order['status']}, deposit {ref} not applied",
                now,
            )
        if int(order["amount"]) != int(deposit["amount"]):
            return self._anomaly(
                deposit,
                ANOMALY_AMOUNT_MISMATCH,
                f"order expects {order['amount']}, deposit {ref} carried {deposit['amount']}",
                now,
            )
        if order["chain_id"] and str(order["chain_id"]) != str(deposit["chain_id"]):
            return self._anomaly(
                deposit,
                ANOMALY_CHAIN_MISMATCH,
                f"order is for chain {order['chain_id']}, deposit {ref} arrived on {deposit['chain_id']}",
                now,
            )

        target = COMPLETED if self.settle_inline else DEPOSITED
        if not self.store.transition_order(order["order_id"], PENDING, target, deposit["tx_id"], now):
            # another chain settled it between our read and the conditional update
            return self._anomaly(
                deposit,
                ANOMALY_ORDER_NOT_PENDING,
                f"order {order['order_id']} left pending before deposit {ref} applied",
                now,
            )
        if target == COMPLETED:
            self.store.credit_balance(order["account_id"], order["token_address"], deposit["amount"], now)
        self.store.mark_processed(event_id)
        self.store.clear_retry(event_id)
        log(f"Order {order['order_id']} {PENDING} -> {target} by deposit {ref}")
        return APPLIED

    def _defer(self, deposit: sqlite3.Row, now: int) -> str:
        event_id = deposit["id"]
        retry = self.store.get_retry(event_id)
        if retry is None:
            self.store.queue_retry(event_id, now + self.retry_interval, now)
            log(
                f"WARN: no order {deposit['order_id']} for deposit "
                f"{deposit['chain_id']}:{deposit['tx_id']}:{deposit['event_index']}, will retry"
            )
            return WAITING
        if now - retry["first_seen_at"] >= self.max_retry_window:
            self.store.flag_for_review(event_id)
            self.store.record_anomaly(
                deposit,
                ANOMALY_ORDER_NOT_FOUND,
                f"no matching order after {retry['attempts'] + 1} attempts",
                now,
            )
            log(
                f"ERROR: deposit {deposit['chain_id']}:{deposit['tx_id']}:{deposit['event_index']} "
                f"for unknown order {deposit['order_id']} needs manual review"
            )
            return REVIEW
        attempts = retry["attempts"] + 1
        delay = min(self.retry_interval * (2 ** attempts), self.max_retry_interval)
        self.store.reschedule_retry(event_id, attempts, now + delay)
        return WAITING

    def _anomaly(self, deposit: sqlite3.Row, kind: str, detail: str, now: int) -> str:
        self.store.record_anomaly(deposit, kind, detail, now)
        self.store.mark_processed(deposit["id"])
        self.store.clear_retry(deposit["id"])
        log(f"WARN: anomaly {kind}: {detail}")
        return ANOMALY

    def record_undecodable(self, event: CanonicalEvent, now: Optional[int] = None) -> None:
        """Surface an event of ours that no adapter could decode; no order is touched."""
        self.store.record_anomaly(
            {
                "chain_id": event.chain_id,
                "tx_id": event.tx_id,
                "event_index": event.event_index,
                "order_id": None,
            },
            ANOMALY_UNDECODABLE,
            f"event {event.chain_id}:{event.tx_id}:{event.event_index} at {event.position}: "
            f"{event.extra.get('error')}",
            now if now is not None else now_ts(),
        )

    async def retry_due(self, now: Optional[int] = None) -> Dict[str, int]:
        """Re-run matching for deferred deposits whose next attempt is due."""
        now = now if now is not None else now_ts()
        outcomes: Dict[str, int] = {}
        async with self.store.lock:
            due = self.store.due_retries(now)
        for row in due:
            async with self.store.lock:
                with self.store.transaction():
                    outcome = self.reconcile_event(row["event_id"], now)
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
        return outcomes

    async def settle_deposited(self, now: Optional[int] = None) -> int:
        """Finish ``deposited`` orders: credit the account balance and complete them."""
        now = now if now is not None else now_ts()
        settled = 0
        async with self.store.lock:
            orders = self.store.orders_with_status(DEPOSITED)
        for order in orders:
            async with self.store.lock:
                with self.store.transaction():
                    if not self.store.transition_order(order["order_id"], DEPOSITED, COMPLETED, None, now):
                        continue
                    self.store.credit_balance(order["account_id"], order["token_address"], order["amount"], now)
            settled += 1
            log(f"Order {order['order_id']} {DEPOSITED} -> {COMPLETED}")
        return settled

    async def expire_stale_orders(self, now: Optional[int] = None) -> int:
        if not self.order_expiry:
            return 0
        now = now if now is not None else now_ts()
        cutoff = now - int(self.order_expiry)
        expired = 0
        async with self.store.lock:
            with self.store.transaction():
                for order in self.store.pending_orders_created_before(cutoff):
                    if self.store.transition_order(order["order_id"], PENDING, FAILED, None, now):
                        expired += 1
                        log(f"Order {order['order_id']} {PENDING} -> {FAILED} (expired)")
        return expired

    def cancel_order(self, order_id: str, now: Optional[int] = None) -> bool:
        order = self.store.get_order(order_id)
        if order is None:
            raise LookupError(f"order {order_id} does not exist")
        if order["status"] != PENDING:
            log(f"WARN: cannot cancel order {order_id} in status {order['status']}")
            return False
        with self.store.transaction():
            changed = self.store.transition_order(order_id, PENDING, CANCELLED, None, now)
        if changed:
            log(f"Order {order_id} {PENDING} -> {CANCELLED}")
        return changed
