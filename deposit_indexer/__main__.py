"""Vault deposit indexer.

Usage:
  python -m deposit_indexer --config config.json run
  python -m deposit_indexer --config config.json status
  python -m deposit_indexer --config config.json events --chain 84532 --limit 20
  python -m deposit_indexer --config config.json anomalies
  python -m deposit_indexer --config config.json review --state needs_review
  python -m deposit_indexer --config config.json cancel --order-id <hex>
"""

import argparse
import asyncio
import sqlite3
import sys
from typing import Any, Dict, List, Optional

from deposit_indexer.config import load_config
from deposit_indexer.errors import ConfigurationError, StorageError
from deposit_indexer.models import canonical_order_id
from deposit_indexer.reconciler import OrderReconciler
from deposit_indexer.service import IndexerService
from deposit_indexer.store import RETRY_NEEDS_REVIEW, RETRY_WAITING, DepositStore
from deposit_indexer.util import json_dumps, log


def _rows(rows: List[sqlite3.Row]) -> List[Dict[str, Any]]:
    return [dict(row) for row in rows]


def _open_store(cfg: Dict[str, Any]) -> DepositStore:
    store = DepositStore(cfg["db_path"], float(cfg.get("busy_timeout", 30)))
    store.init_db()
    return store


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Multi-chain vault deposit indexer")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Start every configured chain scanner")
    sub.add_parser("status", help="Show cursors and last known chain health")

    events_parser = sub.add_parser("events", help="Recent deposit events")
    events_parser.add_argument("--chain", type=str, default=None)
    events_parser.add_argument("--limit", type=int, default=50)

    anomalies_parser = sub.add_parser("anomalies", help="Deposits that could not be applied")
    anomalies_parser.add_argument("--kind", type=str, default=None)
    anomalies_parser.add_argument("--limit", type=int, default=100)

    review_parser = sub.add_parser("review", help="Deposits still waiting for their order")
    review_parser.add_argument("--state", choices=[RETRY_WAITING, RETRY_NEEDS_REVIEW], default=None)
    review_parser.add_argument("--limit", type=int, default=100)

    cancel_parser = sub.add_parser("cancel", help="Cancel a pending order")
    cancel_parser.add_argument("--order-id", required=True)

    args = parser.parse_args(argv)
    try:
        cfg = load_config(args.config)
    except ConfigurationError as exc:
        log(f"ERROR: {exc}")
        return 2

    if args.command == "run":
        service = IndexerService(cfg)
        try:
            asyncio.run(service.start())
        except KeyboardInterrupt:
            log("Interrupted, exiting")
        except StorageError as exc:
            log(f"ERROR: {exc}")
            return 1
        return 0

    store = _open_store(cfg)
    try:
        if args.command == "status":
            print(json_dumps({"cursors": _rows(store.list_cursors()), "chains": _rows(store.list_chain_status())}))
        elif args.command == "events":
            print(json_dumps(_rows(store.recent_deposits(args.limit, args.chain))))
        elif args.command == "anomalies":
            print(json_dumps(_rows(store.list_anomalies(args.limit, args.kind))))
        elif args.command == "review":
            print(json_dumps(_rows(store.list_retries(args.state, args.limit))))
        elif args.command == "cancel":
            reconciler = OrderReconciler(store, cfg.get("reconcile"))
            try:
                cancelled = reconciler.cancel_order(canonical_order_id(args.order_id))
            except (LookupError, ValueError) as exc:
                log(f"ERROR: {exc}")
                return 1
            print(json_dumps({"order_id": args.order_id, "cancelled": cancelled}))
            return 0 if cancelled else 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
