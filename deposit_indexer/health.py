from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

from deposit_indexer.util import now_ts

STARTING = "starting"
HEALTHY = "healthy"
DEGRADED = "degraded"
FAILED = "failed"
STOPPED = "stopped"


@dataclass
class ChainHealth:
    name: str
    chain_id: str
    contract_address: str
    status: str = STARTING
    position: Optional[int] = None
    head: Optional[int] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    updated_at: int = 0

    @property
    def lag(self) -> Optional[int]:
        if self.position is None or self.head is None:
            return None
        return max(self.head - self.position, 0)


class HealthRegistry:
    """In-process view of every chain task, keyed by (chain_id, contract)."""

    def __init__(self):
        self._chains: Dict[Tuple[str, str], ChainHealth] = {}

    def register(self, name: str, chain_id: str, contract: str) -> ChainHealth:
        key = (chain_id, contract.lower())
        entry = self._chains.get(key)
        if entry is None:
            entry = ChainHealth(name=name, chain_id=chain_id, contract_address=contract.lower(), updated_at=now_ts())
            self._chains[key] = entry
        return entry

    def mark_progress(self, entry: ChainHealth, position: Optional[int], head: Optional[int]) -> None:
        entry.status = HEALTHY
        if position is not None:
            entry.position = position
        if head is not None:
            entry.head = head
        entry.consecutive_failures = 0
        entry.last_error = None
        entry.updated_at = now_ts()

    def mark_failure(self, entry: ChainHealth, error: BaseException) -> None:
        entry.consecutive_failures += 1
        entry.last_error = f"{type(error).__name__}: {error}"
        entry.updated_at = now_ts()

    def mark_degraded(self, entry: ChainHealth) -> None:
        entry.status = DEGRADED
        entry.updated_at = now_ts()

    def mark_failed(self, entry: ChainHealth, error: BaseException) -> None:
        entry.status = FAILED
        entry.last_error = f"{type(error).__name__}: {error}"
        entry.updated_at = now_ts()

    def mark_stopped(self, entry: ChainHealth) -> None:
        entry.status = STOPPED
        entry.updated_at = now_ts()

    def snapshot(self) -> List[Dict[str, Any]]:
        out = []
        for entry in self._chains.values():
            item = asdict(entry)
            item["lag"] = entry.lag
            out.append(item)
        return out

    def is_healthy(self) -> bool:
        return all(entry.status in (STARTING, HEALTHY) for entry in self._chains.values())
