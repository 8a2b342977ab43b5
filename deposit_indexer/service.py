import asyncio
from typing import Any, Dict, List, Optional

from deposit_indexer.config import chain_names, scanner_settings
from deposit_indexer.errors import ConfigurationError, StorageError
from deposit_indexer.health import FAILED, HealthRegistry
from deposit_indexer.notifier import NotificationDispatcher, Notifier, WebhookNotifier
from deposit_indexer.reconciler import OrderReconciler
from deposit_indexer.scanner import ChainScanner
from deposit_indexer.sources import build_source
from deposit_indexer.sources.base import EventSource
from deposit_indexer.store import DepositStore
from deposit_indexer.util import log


class IndexerService:
    """Owns the store and runs every scanner plus the reconcile and notify loops.

    A chain whose configuration is unusable is reported as failed and left
    out; the other chains keep running. Only a ``StorageError`` stops the
    whole service.
    """

    def __init__(self, config: Dict[str, Any], notifier: Optional[Notifier] = None):
        self.config = config
        self.store = DepositStore(config["db_path"], float(config.get("busy_timeout", 30)))
        self.health = HealthRegistry()
        self.reconciler = OrderReconciler(self.store, config.get("reconcile"))
        notifications = config.get("notifications") or {}
        if notifier is None and notifications.get("webhook_url"):
            notifier = WebhookNotifier(notifications["webhook_url"], float(notifications.get("timeout", 10)))
        self.dispatcher = (
            NotificationDispatcher(self.store, notifier, timeout=float(notifications.get("timeout", 10)))
            if notifier is not None
            else None
        )
        self.scanners: List[ChainScanner] = []
        self._tasks: List[asyncio.Task] = []

    def build_scanners(self, sources: Optional[List[EventSource]] = None) -> List[ChainScanner]:
        timeout = float(self.config.get("request_timeout", 30))
        chains = self.config["chains"]
        for index, chain in enumerate(chains):
            name = chain.get("name") or str(chain.get("chain_id"))
            try:
                source = sources[index] if sources is not None else build_source(chain, timeout)
                scanner = ChainScanner(
                    source,
                    self.store,
                    self.reconciler,
                    self.health,
                    scanner_settings(self.config, chain),
                )
            except ConfigurationError as exc:
                entry = self.health.register(name, str(chain.get("chain_id") or name), chain.get("contract") or "")
                self.health.mark_failed(entry, exc)
                log(f"ERROR: [{name}] {exc}; chain disabled")
                continue
            self.scanners.append(scanner)
        return self.scanners

    async def reconcile_loop(self) -> None:
        interval = float(self.config["reconcile"].get("sweep_interval", 15))
        while True:
            try:
                outcomes = await self.reconciler.retry_due()
                if outcomes:
                    log(f"Reconcile retries: {outcomes}")
                if not self.reconciler.settle_inline:
                    await self.reconciler.settle_deposited()
                await self.reconciler.expire_stale_orders()
            except StorageError:
                raise
            except Exception as exc:
                log(f"WARN: reconcile sweep failed: {exc}")
            await asyncio.sleep(interval)

    async def notify_loop(self) -> None:
        interval = float(self.config["notifications"].get("interval", 60))
        while True:
            try:
                await self.dispatcher.dispatch_pending()
            except StorageError:
                raise
            except Exception as exc:
                log(f"WARN: notification pass failed: {exc}")
            await asyncio.sleep(interval)

    async def start(self) -> None:
        self.store.init_db()
        if not self.scanners:
            self.build_scanners()
        for snapshot in self.health.snapshot():
            if snapshot["status"] == FAILED:
                self.store.record_chain_status(snapshot)
        log(f"Starting indexer for {len(self.scanners)} of {len(self.config['chains'])} chains: "
            f"{', '.join(chain_names(self.config))}")
        coros = []
        for scanner in self.scanners:
            coros.append(scanner.run())
            coros.extend(scanner.source.background_tasks())
        coros.append(self.reconcile_loop())
        if self.dispatcher is not None:
            coros.append(self.notify_loop())
        else:
            log("WARN: no notifications.webhook_url configured, outcomes will not be delivered")
        self._tasks = [asyncio.ensure_future(coro) for coro in coros]
        try:
            await self._supervise()
        finally:
            await self.stop()

    async def _supervise(self) -> None:
        pending = set(self._tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if isinstance(exc, StorageError):
                    log(f"ERROR: storage failure, shutting down: {exc}")
                    raise exc
                if exc is not None:
                    log(f"ERROR: task ended with {type(exc).__name__}: {exc}")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        for scanner in self.scanners:
            scanner.source.close()
        self.store.close()
