import asyncio
from typing import Any, Awaitable, Dict, List, Optional

from deposit_indexer.errors import ConfigurationError
from deposit_indexer.models import (
    KIND_DEPOSIT,
    KIND_OWNERSHIP_TRANSFER,
    KIND_UNDECODABLE,
    KIND_WITHDRAW,
    CanonicalEvent,
)
from deposit_indexer.util import log

DEFAULT_EVENT_NAMES = {
    "DepositReceived": KIND_DEPOSIT,
    "WithdrawCompleted": KIND_WITHDRAW,
    "OwnershipTransferred": KIND_OWNERSHIP_TRANSFER,
}


class EventSource:
    """Chain-family specific decoder behind one canonical output shape.

    Implementations are plain blocking clients; the scanner calls them from a
    worker thread under a timeout.
    """

    family = "base"
    default_confirmation_depth = 1

    def __init__(self, chain: Dict[str, Any], request_timeout: float = 30.0):
        self.chain = chain
        self.name = chain.get("name") or str(chain.get("chain_id"))
        self.chain_id = str(chain.get("chain_id") or "")
        self.contract = chain.get("contract") or ""
        self.request_timeout = request_timeout
        if not self.chain_id:
            raise ConfigurationError(f"chain {self.name}: chain_id is required")
        if not self.contract:
            raise ConfigurationError(f"chain {self.name}: contract is required")
        self.event_kinds = dict(DEFAULT_EVENT_NAMES)
        for kind_key, kind in (
            ("deposit_event_type", KIND_DEPOSIT),
            ("withdraw_event_type", KIND_WITHDRAW),
            ("ownership_transfer_event_type", KIND_OWNERSHIP_TRANSFER),
        ):
            if chain.get(kind_key):
                self.event_kinds = {k: v for k, v in self.event_kinds.items() if v != kind}
                self.event_kinds[chain[kind_key]] = kind

    def head_position(self) -> Optional[int]:
        raise NotImplementedError

    def fetch_events(self, from_position: int, to_position: int) -> List[CanonicalEvent]:
        raise NotImplementedError

    async def wait_for_new_head(self, timeout: float) -> None:
        await asyncio.sleep(timeout)

    def undecodable(
        self,
        tx_id: Optional[str],
        event_index: int,
        position: int,
        error: Exception,
        timestamp: Optional[int] = None,
        contract_address: Optional[str] = None,
    ) -> Optional[CanonicalEvent]:
        """Record of an event from our contract that failed to decode.

        Returns None when the event carries no transaction id to key it on.
        """
        log(f"WARN: [{self.name}] undecodable event {tx_id}:{event_index} at {position}: {error}")
        if not tx_id:
            return None
        return CanonicalEvent(
            chain_id=self.chain_id,
            contract_address=(contract_address or self.contract).lower(),
            tx_id=tx_id,
            event_index=event_index,
            position=position,
            timestamp=timestamp,
            kind=KIND_UNDECODABLE,
            extra={"error": str(error)},
        )

    def background_tasks(self) -> List[Awaitable[None]]:
        return []

    def close(self) -> None:
        pass


def require(chain: Dict[str, Any], key: str) -> Any:
    value = chain.get(key)
    if value in (None, ""):
        raise ConfigurationError(f"chain {chain.get('name') or chain.get('chain_id')}: {key} is required")
    return value
