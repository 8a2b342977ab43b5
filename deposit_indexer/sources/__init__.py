from typing import Any, Dict

from deposit_indexer.errors import ConfigurationError
from deposit_indexer.sources.aptos import AptosEventSource
from deposit_indexer.sources.base import EventSource
from deposit_indexer.sources.evm import EvmEventSource
from deposit_indexer.sources.sui import SuiEventSource

SOURCE_FAMILIES = {
    EvmEventSource.family: EvmEventSource,
    SuiEventSource.family: SuiEventSource,
    AptosEventSource.family: AptosEventSource,
}


def build_source(chain: Dict[str, Any], request_timeout: float = 30.0) -> EventSource:
    family = chain.get("family")
    cls = SOURCE_FAMILIES.get(family)
    if cls is None:
        raise ConfigurationError(f"chain {chain.get('name')}: unknown family {family!r}")
    return cls(chain, request_timeout=request_timeout)


__all__ = [
    "AptosEventSource",
    "EventSource",
    "EvmEventSource",
    "SuiEventSource",
    "build_source",
]
