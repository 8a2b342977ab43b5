"""Canonical records shared by the event sources, the store and the reconciler."""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from hexbytes import HexBytes

from deposit_indexer.errors import DecodeError

KIND_DEPOSIT = "deposit"
KIND_WITHDRAW = "withdraw"
KIND_OWNERSHIP_TRANSFER = "ownership_transfer"
# an event of ours that failed to decode, kept so the failure is on record
KIND_UNDECODABLE = "undecodable"
EVENT_KINDS = (KIND_DEPOSIT, KIND_WITHDRAW, KIND_OWNERSHIP_TRANSFER, KIND_UNDECODABLE)

PENDING = "pending"
DEPOSITED = "deposited"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
ORDER_STATUSES = (PENDING, DEPOSITED, COMPLETED, FAILED, CANCELLED)
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)
NOTIFY_STATUSES = (COMPLETED, FAILED)

ALLOWED_TRANSITIONS = {
    PENDING: (DEPOSITED, COMPLETED, FAILED, CANCELLED),
    DEPOSITED: (COMPLETED,),
    COMPLETED: (),
    FAILED: (),
    CANCELLED: (),
}

ORDER_ID_BYTES = 32
_DIGITS = re.compile(r"^[0-9]+$")
_HEX = re.compile(r"^[0-9a-f]*$")


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, ())


def canonical_order_id(raw: Any) -> str:
    """Return the order identifier as 64 lowercase hex characters without prefix.

    Accepts raw bytes (EVM topics), lists of byte values (Sui ``parsedJson``)
    and hex strings with or without ``0x`` (Aptos REST, operator input).
    """
    if isinstance(raw, (HexBytes, bytes, bytearray)):
        data = bytes(raw)
    elif isinstance(raw, (list, tuple)):
        try:
            data = bytes(int(b) for b in raw)
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"order id is not a byte list: {raw!r}") from exc
    elif isinstance(raw, str):
        text = raw.lower()
        if text.startswith("0x"):
            text = text[2:]
        if len(text) % 2 or not _HEX.match(text):
            raise DecodeError(f"order id is not hex: {raw!r}")
        data = bytes.fromhex(text)
    else:
        raise DecodeError(f"unsupported order id type: {type(raw).__name__}")
    if len(data) != ORDER_ID_BYTES:
        raise DecodeError(f"order id must be {ORDER_ID_BYTES} bytes, got {len(data)}")
    return data.hex()


def canonical_amount(raw: Any) -> str:
    """Return a token amount in base units as a string of decimal digits."""
    if isinstance(raw, bool) or isinstance(raw, float):
        raise DecodeError(f"amount must be an integer or digit string, got {raw!r}")
    if isinstance(raw, int):
        if raw < 0:
            raise DecodeError(f"negative amount: {raw}")
        return str(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if not _DIGITS.match(text):
            raise DecodeError(f"amount is not a decimal digit string: {raw!r}")
        return str(int(text))
    raise DecodeError(f"unsupported amount type: {type(raw).__name__}")


@dataclass(frozen=True)
class CanonicalEvent:
    chain_id: str
    contract_address: str
    tx_id: str
    event_index: int
    position: int
    timestamp: Optional[int]
    kind: str = KIND_DEPOSIT
    payer: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise DecodeError(f"unknown event kind {self.kind!r}")
        if self.kind == KIND_DEPOSIT:
            if not self.payer:
                raise DecodeError(f"deposit {self.tx_id}:{self.event_index} has no payer")
            object.__setattr__(self, "order_id", canonical_order_id(self.order_id))
            object.__setattr__(self, "amount", canonical_amount(self.amount))
        elif self.amount is not None:
            object.__setattr__(self, "amount", canonical_amount(self.amount))

    @property
    def key(self):
        return (self.chain_id, self.tx_id, self.event_index)


def sort_events(events: Iterable[CanonicalEvent]):
    # stable: adapters already emit chain order inside a position
    return sorted(events, key=lambda e: e.position)
