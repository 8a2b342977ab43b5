"""Multi-chain vault deposit indexer and order reconciliation."""

from deposit_indexer.models import CanonicalEvent
from deposit_indexer.order_id import derive_order_id
from deposit_indexer.reconciler import OrderReconciler
from deposit_indexer.scanner import ChainScanner
from deposit_indexer.service import IndexerService
from deposit_indexer.store import DepositStore

__version__ = "0.1.0"

__all__ = [
    "CanonicalEvent",
    "ChainScanner",
    "DepositStore",
    "IndexerService",
    "OrderReconciler",
    "derive_order_id",
]
