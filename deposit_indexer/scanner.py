"""Per (chain, contract) scan loop.

One iteration reads the cursor, asks the source for the chain head, fetches
``[cursor + 1, min(cursor + batch_size, head - confirmation_depth)]`` and
commits the new events, their reconciliation and the cursor advance in a
single transaction. Nothing is written when any step fails, so a crash or a
cancelled task resumes from the last committed position and re-fetched
events are absorbed by the ledger's unique key.
"""

import asyncio
import random
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from deposit_indexer.errors import ConfigurationError, StaleAdvance, StorageError, is_transient
from deposit_indexer.health import ChainHealth, HealthRegistry
from deposit_indexer.models import KIND_DEPOSIT, KIND_UNDECODABLE, CanonicalEvent, sort_events
from deposit_indexer.reconciler import OrderReconciler
from deposit_indexer.sources.base import EventSource
from deposit_indexer.store import DepositStore
from deposit_indexer.util import log


class ScanResult(NamedTuple):
    advanced_to: Optional[int]
    remaining: int
    stored: int


class ChainScanner:
    def __init__(
        self,
        source: EventSource,
        store: DepositStore,
        reconciler: OrderReconciler,
        health: HealthRegistry,
        settings: Optional[Dict[str, Any]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        settings = settings or {}
        self.source = source
        self.store = store
        self.reconciler = reconciler
        self.health = health
        self.chain_id = source.chain_id
        self.contract = source.contract
        self.batch_size = int(settings.get("batch_size", 100))
        depth = settings.get("confirmation_depth")
        self.confirmation_depth = int(depth if depth is not None else source.default_confirmation_depth)
        self.start_position = int(settings.get("start_position", 0))
        self.poll_interval = float(settings.get("poll_interval", 5))
        self.request_timeout = float(settings.get("request_timeout", 30))
        self.max_attempts = int(settings.get("max_attempts", 5))
        self.retry_base_delay = float(settings.get("retry_base_delay", 1.0))
        self.retry_max_delay = float(settings.get("retry_max_delay", 60.0))
        self._sleep = sleep
        if self.batch_size < 1:
            raise ConfigurationError(f"chain {source.name}: batch_size must be positive")
        if self.confirmation_depth < 0:
            raise ConfigurationError(f"chain {source.name}: confirmation_depth cannot be negative")
        self.entry: ChainHealth = health.register(source.name, self.chain_id, self.contract)

    def _log(self, msg: str) -> None:
        log(f"[{self.source.name}] {msg}")

    def compute_range(self, cursor: int, head: int) -> Optional[Tuple[int, int]]:
        start = cursor + 1
        end = min(cursor + self.batch_size, head - self.confirmation_depth)
        if end < start:
            return None
        return start, end

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), self.request_timeout)

    async def scan_once(self) -> ScanResult:
        async with self.store.lock:
            cursor = self.store.get_position(self.chain_id, self.contract, self.start_position)
        head = await self._call(self.source.head_position)
        if head is None:
            self._log("chain head unavailable, idling")
            return ScanResult(None, 0, 0)
        self.entry.head = head
        span = self.compute_range(cursor, head)
        if span is None:
            self.health.mark_progress(self.entry, cursor, head)
            return ScanResult(None, 0, 0)

        start, end = span
        events = await self._call(self.source.fetch_events, start, end)
        stored = await self.commit_batch(events, start, end)
        self.health.mark_progress(self.entry, end, head)
        remaining = max(head - self.confirmation_depth - end, 0)
        if stored or remaining == 0:
            self._log(f"scanned {start}-{end}: {len(events)} events, {stored} new, {remaining} behind")
        return ScanResult(end, remaining, stored)

    async def commit_batch(self, events: List[CanonicalEvent], start: int, end: int) -> int:
        stored = 0
        outcomes: Dict[str, int] = {}
        async with self.store.lock:
            with self.store.transaction():
                for event in sort_events(events):
                    if not start <= event.position <= end or event.chain_id != self.chain_id:
                        self._log(
                            f"WARN: source returned {event.chain_id}:{event.tx_id}:{event.event_index} "
                            f"at {event.position} outside {start}-{end}, ignored"
                        )
                        continue
                    if event.kind == KIND_DEPOSIT:
                        event_id = self.store.insert_deposit_if_new(event)
                        if event_id is None:
                            continue
                        stored += 1
                        outcome = self.reconciler.reconcile_event(event_id)
                        outcomes[outcome] = outcomes.get(outcome, 0) + 1
                    elif self.store.insert_vault_event_if_new(event):
                        stored += 1
                        if event.kind == KIND_UNDECODABLE:
                            self.reconciler.record_undecodable(event)
                self.store.advance(self.chain_id, self.contract, end)
        if outcomes:
            self._log(f"reconciled {start}-{end}: {outcomes}")
        return stored

    def backoff_delay(self, attempt: int) -> float:
        delay = min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)
        return random.uniform(delay / 2, delay)

    async def scan_with_retry(self) -> ScanResult:
        """One iteration with bounded retries; never raises for transient failures."""
        attempt = 0
        while True:
            try:
                return await self.scan_once()
            except (ConfigurationError, StorageError):
                raise
            except StaleAdvance as exc:
                self.health.mark_failure(self.entry, exc)
                self._log(f"ERROR: {exc}; batch rolled back")
                return ScanResult(None, 0, 0)
            except Exception as exc:
                self.health.mark_failure(self.entry, exc)
                if not is_transient(exc):
                    self._log(f"ERROR: scan failed: {type(exc).__name__}: {exc}")
                    self.health.mark_degraded(self.entry)
                    return ScanResult(None, 0, 0)
                attempt += 1
                if attempt >= self.max_attempts:
                    self.health.mark_degraded(self.entry)
                    self._log(f"ERROR: giving up after {attempt} attempts, chain degraded: {exc}")
                    return ScanResult(None, 0, 0)
                delay = self.backoff_delay(attempt)
                self._log(f"WARN: attempt {attempt}/{self.max_attempts} failed ({exc}), retrying in {delay:.1f}s")
                await self._sleep(delay)

    async def _record_health(self) -> None:
        async with self.store.lock:
            self.store.record_chain_status(
                {
                    "chain_id": self.chain_id,
                    "contract_address": self.contract,
                    "name": self.source.name,
                    "status": self.entry.status,
                    "position": self.entry.position,
                    "head": self.entry.head,
                    "consecutive_failures": self.entry.consecutive_failures,
                    "last_error": self.entry.last_error,
                    "updated_at": self.entry.updated_at,
                }
            )

    async def run(self, max_iterations: Optional[int] = None) -> None:
        self._log(
            f"starting scanner for {self.contract} (family={self.source.family}, "
            f"depth={self.confirmation_depth}, batch={self.batch_size})"
        )
        iterations = 0
        try:
            while max_iterations is None or iterations < max_iterations:
                iterations += 1
                try:
                    result = await self.scan_with_retry()
                except ConfigurationError as exc:
                    self.health.mark_failed(self.entry, exc)
                    self._log(f"ERROR: configuration error, stopping this chain: {exc}")
                    await self._record_health()
                    return
                await self._record_health()
                if result.remaining > 0:
                    await asyncio.sleep(0)
                    continue
                await self.source.wait_for_new_head(self.poll_interval)
        except asyncio.CancelledError:
            self.health.mark_stopped(self.entry)
            self._log("scanner cancelled")
            raise
