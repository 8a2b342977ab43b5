from typing import Any, Dict, List, Optional

from web3 import HTTPProvider

from deposit_indexer.errors import DecodeError, TransientError
from deposit_indexer.models import KIND_DEPOSIT, KIND_OWNERSHIP_TRANSFER, KIND_WITHDRAW, CanonicalEvent
from deposit_indexer.sources.base import EventSource, require
from deposit_indexer.util import parse_int

MULTI_GET_LIMIT = 50


def _normalize_object_id(value: str) -> str:
    text = value.lower()
    if text.startswith("0x"):
        text = text[2:]
    return "0x" + (text.lstrip("0") or "0")


def split_event_type(type_str: str):
    """``0xpkg::module::Name<T>`` -> (package, module, name)."""
    base = type_str.split("<", 1)[0]
    parts = base.split("::")
    if len(parts) != 3:
        raise DecodeError(f"unexpected Move type {type_str!r}")
    return parts[0], parts[1], parts[2]


class SuiEventSource(EventSource):
    """Checkpoint-ordered events of one Move package on Sui.

    Positions are checkpoint sequence numbers. Each checkpoint lists its
    transaction digests; the events of those transactions are fetched in
    groups of ``MULTI_GET_LIMIT``.
    """

    family = "sui"
    default_confirmation_depth = 1

    def __init__(self, chain: Dict[str, Any], request_timeout: float = 30.0, provider: Optional[Any] = None):
        super().__init__(chain, request_timeout)
        self.module = require(chain, "module")
        self.package_id = _normalize_object_id(self.contract)
        if provider is None:
            provider = HTTPProvider(require(chain, "rpc_http"), request_kwargs={"timeout": request_timeout})
        self.provider = provider

    def _rpc(self, method: str, params: List[Any]) -> Any:
        response = self.provider.make_request(method, params)
        if response.get("error"):
            raise TransientError(f"{method} failed: {response['error']}")
        return response.get("result")

    def head_position(self) -> Optional[int]:
        result = self._rpc("sui_getLatestCheckpointSequenceNumber", [])
        if result is None:
            return None
        return parse_int(result)

    def fetch_events(self, from_position: int, to_position: int) -> List[CanonicalEvent]:
        events: List[CanonicalEvent] = []
        for seq in range(from_position, to_position + 1):
            checkpoint = self._rpc("sui_getCheckpoint", [str(seq)])
            if checkpoint is None:
                raise TransientError(f"checkpoint {seq} not available yet")
            digests = checkpoint.get("transactions") or []
            checkpoint_ts = checkpoint.get("timestampMs")
            for start in range(0, len(digests), MULTI_GET_LIMIT):
                chunk = digests[start:start + MULTI_GET_LIMIT]
                blocks = self._rpc("sui_multiGetTransactionBlocks", [chunk, {"showEvents": True}]) or []
                for block in blocks:
                    events.extend(self._events_from_block(block, seq, checkpoint_ts))
        return events

    def _events_from_block(self, block: Dict[str, Any], seq: int, checkpoint_ts: Any) -> List[CanonicalEvent]:
        out: List[CanonicalEvent] = []
        digest = block.get("digest")
        for position_in_tx, raw in enumerate(block.get("events") or []):
            try:
                event = self.decode_event(raw, seq, digest, position_in_tx, checkpoint_ts)
            except DecodeError as exc:
                ident = raw.get("id") or {}
                event = self.undecodable(
                    ident.get("txDigest") or digest,
                    parse_int(ident.get("eventSeq", position_in_tx)),
                    seq,
                    exc,
                    contract_address=self.package_id,
                )
            if event is not None:
                out.append(event)
        return out

    def decode_event(
        self,
        raw: Dict[str, Any],
        seq: int,
        digest: Optional[str] = None,
        position_in_tx: int = 0,
        checkpoint_ts: Any = None,
    ) -> Optional[CanonicalEvent]:
        if _normalize_object_id(raw.get("packageId") or "0x0") != self.package_id:
            return None
        if raw.get("transactionModule") != self.module:
            return None
        _pkg, _module, name = split_event_type(raw.get("type", ""))
        kind = self.event_kinds.get(name)
        if kind is None:
            return None

        event_id = raw.get("id") or {}
        tx_id = event_id.get("txDigest") or digest
        if not tx_id:
            raise DecodeError("event has no transaction digest")
        event_index = parse_int(event_id.get("eventSeq", position_in_tx))
        ts_ms = raw.get("timestampMs") or checkpoint_ts
        fields = raw.get("parsedJson")
        if not isinstance(fields, dict):
            raise DecodeError("parsedJson is not an object")

        common = dict(
            chain_id=self.chain_id,
            contract_address=self.package_id,
            tx_id=tx_id,
            event_index=event_index,
            position=seq,
            timestamp=parse_int(ts_ms) // 1000 if ts_ms is not None else None,
        )
        try:
            if kind == KIND_DEPOSIT:
                return CanonicalEvent(
                    kind=KIND_DEPOSIT,
                    payer=fields["payer"],
                    order_id=fields["order_id"],
                    amount=fields["amount"],
                    extra={"vault_id": fields.get("vault_id"), "deposit_index": fields.get("deposit_index")},
                    **common,
                )
            if kind == KIND_WITHDRAW:
                return CanonicalEvent(
                    kind=KIND_WITHDRAW,
                    amount=fields["amount"],
                    extra={
                        "vault_id": fields.get("vault_id"),
                        "owner": fields["owner"],
                        "recipient": fields["recipient"],
                    },
                    **common,
                )
            return CanonicalEvent(
                kind=KIND_OWNERSHIP_TRANSFER,
                extra={
                    "vault_id": fields.get("vault_id"),
                    "previous_owner": fields["previous_owner"],
                    "new_owner": fields["new_owner"],
                },
                **common,
            )
        except KeyError as exc:
            raise DecodeError(f"{name} is missing field {exc}") from exc
