import asyncio

import pytest

from deposit_indexer.models import CANCELLED, COMPLETED, DEPOSITED, FAILED, PENDING
from deposit_indexer.reconciler import (
    ANOMALY,
    ANOMALY_AMOUNT_MISMATCH,
    ANOMALY_CHAIN_MISMATCH,
    ANOMALY_ORDER_NOT_FOUND,
    ANOMALY_ORDER_NOT_PENDING,
    APPLIED,
    REVIEW,
    SKIPPED,
    WAITING,
    OrderReconciler,
)
from deposit_indexer.store import RETRY_NEEDS_REVIEW, RETRY_WAITING
from helpers import USDC, make_deposit

NOW = 1_700_000_100


def _store_and_reconcile(store, reconciler, event, now=NOW):
    with store.transaction():
        event_id = store.insert_deposit_if_new(event)
        outcome = reconciler.reconcile_event(event_id, now)
    return event_id, outcome


class TestSettlement:

    def test_matching_deposit_completes_order(self, store, order_id):
        reconciler = OrderReconciler(store)
        event = make_deposit(order_id, amount="1000000", tx_id="0xfeed")
        event_id, outcome = _store_and_reconcile(store, reconciler, event)

        assert outcome == APPLIED
        order = store.get_order(order_id)
        assert order["status"] == COMPLETED
        assert order["transaction_hash"] == "0xfeed"
        assert order["notified"] == 0
        assert store.get_deposit(event_id)["processed"] == 1
        assert store.get_balance("a1", USDC) == "1000000"
        assert store.list_anomalies() == []

    def test_second_deposit_is_an_anomaly(self, store, order_id):
        reconciler = OrderReconciler(store)
        _store_and_reconcile(store, reconciler, make_deposit(order_id, tx_id="0x01"))
        event_id, outcome = _store_and_reconcile(store, reconciler, make_deposit(order_id, tx_id="0x02"))

        assert outcome == ANOMALY
        assert store.get_order(order_id)["transaction_hash"] == "0x01"
        assert store.get_balance("a1", USDC) == "1000000"
        anomalies = store.list_anomalies()
        assert [a["kind"] for a in anomalies] == [ANOMALY_ORDER_NOT_PENDING]
        assert anomalies[0]["tx_id"] == "0x02"
        assert store.get_deposit(event_id)["processed"] == 1

    def test_reconciling_twice_is_a_no_op(self, store, order_id):
        reconciler = OrderReconciler(store)
        event_id, _ = _store_and_reconcile(store, reconciler, make_deposit(order_id))
        with store.transaction():
            assert reconciler.reconcile_event(event_id, NOW) == SKIPPED
        assert store.get_balance("a1", USDC) == "1000000"

    def test_amount_mismatch_fails_closed(self, store, order_id):
        reconciler = OrderReconciler(store)
        event_id, outcome = _store_and_reconcile(store, reconciler, make_deposit(order_id, amount="999999"))

        assert outcome == ANOMALY
        assert store.get_order(order_id)["status"] == PENDING
        assert store.list_anomalies()[0]["kind"] == ANOMALY_AMOUNT_MISMATCH
        assert store.get_balance("a1", USDC) == "0"

    def test_chain_mismatch_when_order_names_a_chain(self, store):
        order_id = store.create_order("b1", "a1", 7, "5", USDC, chain_id="8453")
        reconciler = OrderReconciler(store)
        _, outcome = _store_and_reconcile(store, reconciler, make_deposit(order_id, amount="5", chain_id="84532"))
        assert outcome == ANOMALY
        assert store.list_anomalies()[0]["kind"] == ANOMALY_CHAIN_MISMATCH
        assert store.get_order(order_id)["status"] == PENDING

    def test_deferred_settlement(self, store, order_id):
        reconciler = OrderReconciler(store, {"settle_inline": False})
        _, outcome = _store_and_reconcile(store, reconciler, make_deposit(order_id))
        assert outcome == APPLIED
        assert store.get_order(order_id)["status"] == DEPOSITED
        assert store.get_balance("a1", USDC) == "0"

        assert asyncio.run(reconciler.settle_deposited(NOW)) == 1
        assert store.get_order(order_id)["status"] == COMPLETED
        assert store.get_balance("a1", USDC) == "1000000"
        assert asyncio.run(reconciler.settle_deposited(NOW)) == 0
        assert store.get_balance("a1", USDC) == "1000000"

    def test_racing_chains_have_one_winner(self, store, order_id):
        reconciler = OrderReconciler(store)
        outcomes = []
        for chain_id in ("84532", "sui-testnet"):
            _, outcome = _store_and_reconcile(
                store, reconciler, make_deposit(order_id, chain_id=chain_id, tx_id="0xsame")
            )
            outcomes.append(outcome)
        assert outcomes == [APPLIED, ANOMALY]
        assert store.get_balance("a1", USDC) == "1000000"

    def test_order_settled_after_read_loses_the_update(self, store, order_id, monkeypatch):
        reconciler = OrderReconciler(store)
        stale = store.get_order(order_id)
        # another chain wins between the read and the conditional update
        assert store.transition_order(order_id, PENDING, COMPLETED, "0xwinner")

        with monkeypatch.context() as patched:
            patched.setattr(store, "get_order", lambda _order_id: stale)
            event_id, outcome = _store_and_reconcile(store, reconciler, make_deposit(order_id, tx_id="0xloser"))

        assert outcome == ANOMALY
        anomalies = store.list_anomalies()
        assert [a["kind"] for a in anomalies] == [ANOMALY_ORDER_NOT_PENDING]
        assert "left pending" in anomalies[0]["detail"]
        assert store.get_balance("a1", USDC) == "0"
        assert store.get_deposit(event_id)["processed"] == 1
        assert store.get_order(order_id)["transaction_hash"] == "0xwinner"


class TestTerminalImmutability:

    @pytest.mark.parametrize("terminal", [COMPLETED, FAILED, CANCELLED])
    def test_no_event_moves_a_terminal_order(self, store, order_id, terminal):
        assert store.transition_order(order_id, PENDING, terminal)
        reconciler = OrderReconciler(store)
        for index in range(3):
            _, outcome = _store_and_reconcile(store, reconciler, make_deposit(order_id, event_index=index))
            assert outcome == ANOMALY
        assert store.get_order(order_id)["status"] == terminal
        assert not reconciler.cancel_order(order_id)
        assert store.get_order(order_id)["status"] == terminal
        assert len(store.list_anomalies()) == 3


class TestMissingOrder:

    def test_deposit_before_order_is_retried_then_applied(self, store):
        reconciler = OrderReconciler(store, {"retry_interval": 30, "max_retry_window": 3600})
        from deposit_indexer.order_id import derive_order_id

        future_id = derive_order_id("b1", "a1", 2)
        event_id, outcome = _store_and_reconcile(store, reconciler, make_deposit(future_id))

        assert outcome == WAITING
        assert store.get_deposit(event_id)["processed"] == 0
        retry = store.get_retry(event_id)
        assert retry["state"] == RETRY_WAITING
        assert retry["next_attempt_at"] == NOW + 30

        assert asyncio.run(reconciler.retry_due(NOW + 10)) == {}
        assert asyncio.run(reconciler.retry_due(NOW + 31)) == {WAITING: 1}
        assert store.get_retry(event_id)["attempts"] == 1

        store.create_order("b1", "a1", 2, "1000000", USDC)
        assert asyncio.run(reconciler.retry_due(NOW + 1000)) == {APPLIED: 1}
        assert store.get_order(future_id)["status"] == COMPLETED
        assert store.get_deposit(event_id)["processed"] == 1
        assert store.get_retry(event_id) is None

    def test_unmatched_deposit_is_surfaced_for_review(self, store):
        reconciler = OrderReconciler(store, {"retry_interval": 30, "max_retry_window": 600})
        event_id, _ = _store_and_reconcile(store, reconciler, make_deposit("ab" * 32))

        assert asyncio.run(reconciler.retry_due(NOW + 600)) == {REVIEW: 1}
        assert store.get_retry(event_id)["state"] == RETRY_NEEDS_REVIEW
        assert store.get_deposit(event_id)["processed"] == 0
        assert [a["kind"] for a in store.list_anomalies()] == [ANOMALY_ORDER_NOT_FOUND]
        assert len(store.list_retries(RETRY_NEEDS_REVIEW)) == 1
        # needs_review rows are no longer picked up
        assert asyncio.run(reconciler.retry_due(NOW + 10_000)) == {}

    def test_backoff_is_capped(self, store):
        reconciler = OrderReconciler(
            store, {"retry_interval": 10, "max_retry_interval": 40, "max_retry_window": 10_000}
        )
        event_id, _ = _store_and_reconcile(store, reconciler, make_deposit("cd" * 32))
        now = NOW
        gaps = []
        for _ in range(4):
            now = store.get_retry(event_id)["next_attempt_at"]
            asyncio.run(reconciler.retry_due(now))
            gaps.append(store.get_retry(event_id)["next_attempt_at"] - now)
        assert gaps == [20, 40, 40, 40]


class TestOrderLifecycle:

    def test_cancel_only_from_pending(self, store, order_id):
        reconciler = OrderReconciler(store)
        assert reconciler.cancel_order(order_id)
        assert store.get_order(order_id)["status"] == CANCELLED
        assert not reconciler.cancel_order(order_id)
        with pytest.raises(LookupError):
            reconciler.cancel_order("00" * 32)

    def test_expiry_fails_old_pending_orders(self, store):
        old = store.create_order("b1", "a1", 10, "1", USDC, now=1000)
        fresh = store.create_order("b1", "a1", 11, "1", USDC, now=5000)
        reconciler = OrderReconciler(store, {"order_expiry": 3600})
        assert asyncio.run(reconciler.expire_stale_orders(now=5000)) == 1
        assert store.get_order(old)["status"] == FAILED
        assert store.get_order(fresh)["status"] == PENDING

    def test_expiry_disabled_by_default(self, store, order_id):
        assert asyncio.run(OrderReconciler(store).expire_stale_orders(now=10 ** 10)) == 0
        assert store.get_order(order_id)["status"] == PENDING
