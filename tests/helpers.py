import asyncio

from deposit_indexer.health import HealthRegistry
from deposit_indexer.models import CanonicalEvent
from deposit_indexer.reconciler import OrderReconciler
from deposit_indexer.scanner import ChainScanner
from deposit_indexer.sources.base import EventSource

USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
VAULT = "0x1111111111111111111111111111111111111111"
PAYER = "0x2222222222222222222222222222222222222222"


class FakeSource(EventSource):
    """In-memory chain: a list of canonical events and a settable head."""

    family = "fake"

    def __init__(self, chain_id="84532", contract=VAULT, events=None, head=100, name=None):
        super().__init__({"name": name or f"fake-{chain_id}", "chain_id": chain_id, "contract": contract})
        self.events = list(events or [])
        self.head = head
        self.fetch_calls = []
        self.fetch_failures = []
        self.head_failures = []

    def head_position(self):
        if self.head_failures:
            raise self.head_failures.pop(0)
        return self.head

    def fetch_events(self, from_position, to_position):
        self.fetch_calls.append((from_position, to_position))
        if self.fetch_failures:
            raise self.fetch_failures.pop(0)
        return [e for e in self.events if from_position <= e.position <= to_position]

    async def wait_for_new_head(self, timeout):
        await asyncio.sleep(0)


def make_deposit(order_id, amount="1000000", position=10, tx_id=None, event_index=0, chain_id="84532", payer=PAYER):
    return CanonicalEvent(
        chain_id=chain_id,
        contract_address=VAULT.lower(),
        tx_id=tx_id or f"0x{position:064x}",
        event_index=event_index,
        position=position,
        timestamp=1_700_000_000 + position,
        payer=payer,
        order_id=order_id,
        amount=amount,
    )


async def no_sleep(_delay):
    return None


def make_scanner(store, source, reconciler=None, health=None, **settings):
    defaults = {
        "batch_size": 100,
        "confirmation_depth": 0,
        "start_position": 0,
        "poll_interval": 0,
        "request_timeout": 5,
        "max_attempts": 3,
        "retry_base_delay": 0.01,
        "retry_max_delay": 0.02,
    }
    defaults.update(settings)
    return ChainScanner(
        source,
        store,
        reconciler or OrderReconciler(store),
        health or HealthRegistry(),
        defaults,
        sleep=no_sleep,
    )
