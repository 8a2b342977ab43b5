import asyncio
import sqlite3

import requests
from web3.exceptions import Web3Exception


class IndexerError(Exception):
    pass


class TransientError(IndexerError):
    """RPC timeout, rate limit or a briefly unavailable database."""


class StaleAdvance(IndexerError):
    def __init__(self, chain_id: str, contract: str, current: int, requested: int):
        super().__init__(
            f"refusing to move cursor for {chain_id}/{contract} from {current} to {requested}"
        )
        self.chain_id = chain_id
        self.contract = contract
        self.current = current
        self.requested = requested


class ConfigurationError(IndexerError):
    pass


class DecodeError(IndexerError, ValueError):
    """A contract event that cannot be turned into a canonical record."""


class StorageError(IndexerError):
    pass


TRANSIENT_EXCEPTIONS = (
    TransientError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    OSError,
    requests.RequestException,
    Web3Exception,
    sqlite3.OperationalError,
)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (ConfigurationError, StorageError, StaleAdvance)):
        return False
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return True
    # web3 surfaces JSON-RPC error payloads (rate limits, node hiccups) as ValueError
    if isinstance(exc, ValueError) and not isinstance(exc, DecodeError):
        msg = str(exc).lower()
        return any(word in msg for word in ("rate", "limit", "timeout", "timed out", "unavailable", "busy"))
    return False
