import pytest

from deposit_indexer.store import DepositStore
from helpers import USDC


@pytest.fixture
def store(tmp_path):
    s = DepositStore(str(tmp_path / "deposits.db"))
    s.init_db()
    yield s
    s.close()


@pytest.fixture
def order_id(store):
    """Order ("b1", "a1", 1) for 1 USDC, created pending."""
    return store.create_order("b1", "a1", 1, "1000000", USDC, now=1_700_000_000)
