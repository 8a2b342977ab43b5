import asyncio

import pytest

from deposit_indexer.config import normalize_config
from deposit_indexer.errors import StorageError
from deposit_indexer.health import FAILED
from deposit_indexer.models import COMPLETED
from deposit_indexer.notifier import Notifier
from deposit_indexer.service import IndexerService
from deposit_indexer.store import DepositStore
from helpers import USDC, VAULT, FakeSource, make_deposit

APTOS = {
    "name": "aptos-testnet",
    "family": "aptos",
    "chain_id": "aptos-testnet",
    "contract": "0xcafe",
    "rest_url": "https://fullnode.example/v1",
    "module": "payment_vault",
}


def _config(tmp_path, chains, **extra):
    raw = {"db_path": str(tmp_path / "service.db"), "chains": chains, "poll_interval": 0}
    raw.update(extra)
    return normalize_config(raw)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def notify(self, order_id, status):
        self.sent.append((order_id, status))
        return True


def test_unusable_chain_is_disabled_not_fatal(tmp_path):
    chains = [
        APTOS,
        {"name": "solana", "family": "solana", "chain_id": "sol", "contract": "x"},
        dict(APTOS, name="aptos-bad", chain_id="aptos-2", module=""),
    ]
    service = IndexerService(_config(tmp_path, chains))

    scanners = service.build_scanners()

    assert [s.source.name for s in scanners] == ["aptos-testnet"]
    statuses = {entry["name"]: entry["status"] for entry in service.health.snapshot()}
    assert statuses["solana"] == FAILED
    assert statuses["aptos-bad"] == FAILED
    assert statuses["aptos-testnet"] != FAILED
    assert service.dispatcher is None


def test_webhook_url_enables_notifications(tmp_path):
    cfg = _config(tmp_path, [APTOS], notifications={"webhook_url": "https://hooks.example"})
    assert IndexerService(cfg).dispatcher is not None


def test_service_indexes_reconciles_and_notifies(tmp_path):
    seed = DepositStore(str(tmp_path / "service.db"))
    seed.init_db()
    order_id = seed.create_order("b1", "a1", 1, "1000000", USDC)
    seed.close()

    cfg = _config(
        tmp_path,
        [{"name": "fake", "family": "fake", "chain_id": "84532", "contract": VAULT}],
        notifications={"interval": 0.01},
        reconcile={"sweep_interval": 0.01},
    )
    notifier = RecordingNotifier()
    service = IndexerService(cfg, notifier=notifier)
    service.build_scanners(sources=[FakeSource(events=[make_deposit(order_id)], name="fake")])

    async def run_briefly():
        task = asyncio.ensure_future(service.start())
        for _ in range(200):
            await asyncio.sleep(0.01)
            if notifier.sent:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run_briefly())

    assert notifier.sent == [(order_id, COMPLETED)]
    check = DepositStore(str(tmp_path / "service.db"))
    check.init_db()
    assert check.get_order(order_id)["notified"] == 1
    assert check.get_balance("a1", USDC) == "1000000"
    assert check.count_deposits() == 1
    check.close()


class BrokenStoreSource(FakeSource):
    def head_position(self):
        raise StorageError("disk I/O error")


def test_storage_error_stops_the_service(tmp_path):
    cfg = _config(tmp_path, [{"name": "fake", "family": "fake", "chain_id": "84532", "contract": VAULT}])
    service = IndexerService(cfg)
    service.build_scanners(sources=[BrokenStoreSource(name="fake")])

    with pytest.raises(StorageError):
        asyncio.run(service.start())
    assert service.store.conn is None
