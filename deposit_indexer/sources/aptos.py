from typing import Any, Dict, List, Optional

import requests

from deposit_indexer.errors import DecodeError
from deposit_indexer.models import KIND_DEPOSIT, KIND_OWNERSHIP_TRANSFER, KIND_WITHDRAW, CanonicalEvent
from deposit_indexer.sources.base import EventSource, require
from deposit_indexer.util import parse_int

PAGE_LIMIT = 100


def _normalize_address(value: str) -> str:
    text = value.lower()
    if text.startswith("0x"):
        text = text[2:]
    return "0x" + (text.lstrip("0") or "0")


class AptosEventSource(EventSource):
    """Move module events read from the Aptos REST API.

    Positions are ledger versions; every committed transaction has one.
    """

    family = "aptos"
    default_confirmation_depth = 1

    def __init__(self, chain: Dict[str, Any], request_timeout: float = 30.0, session: Optional[Any] = None):
        super().__init__(chain, request_timeout)
        self.rest_url = require(chain, "rest_url").rstrip("/")
        self.module = require(chain, "module")
        self.account = _normalize_address(self.contract)
        self.session = session or requests.Session()

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = self.session.get(f"{self.rest_url}{path}", params=params, timeout=self.request_timeout)
        resp.raise_for_status()
        return resp.json()

    def head_position(self) -> Optional[int]:
        info = self._get("/")
        version = info.get("ledger_version")
        return parse_int(version) if version is not None else None

    def fetch_events(self, from_position: int, to_position: int) -> List[CanonicalEvent]:
        events: List[CanonicalEvent] = []
        start = from_position
        while start <= to_position:
            limit = min(PAGE_LIMIT, to_position - start + 1)
            txns = self._get("/transactions", {"start": start, "limit": limit})
            if not txns:
                break
            for txn in txns:
                version = parse_int(txn.get("version"))
                if version > to_position:
                    break
                events.extend(self._events_from_txn(txn))
            start = parse_int(txns[-1].get("version")) + 1
        return events

    def _events_from_txn(self, txn: Dict[str, Any]) -> List[CanonicalEvent]:
        if txn.get("type") != "user_transaction" or not txn.get("success", False):
            return []
        out: List[CanonicalEvent] = []
        for index, raw in enumerate(txn.get("events") or []):
            try:
                event = self.decode_event(raw, txn, index)
            except DecodeError as exc:
                event = self.undecodable(
                    txn.get("hash"), index, parse_int(txn.get("version")), exc, contract_address=self.account
                )
            if event is not None:
                out.append(event)
        return out

    def decode_event(self, raw: Dict[str, Any], txn: Dict[str, Any], index: int) -> Optional[CanonicalEvent]:
        parts = (raw.get("type") or "").split("<", 1)[0].split("::")
        if len(parts) != 3:
            return None
        address, module, name = parts
        if _normalize_address(address) != self.account or module != self.module:
            return None
        kind = self.event_kinds.get(name)
        if kind is None:
            return None

        data = raw.get("data")
        if not isinstance(data, dict):
            raise DecodeError("event data is not an object")
        ts = txn.get("timestamp")
        common = dict(
            chain_id=self.chain_id,
            contract_address=self.account,
            tx_id=txn.get("hash"),
            event_index=index,
            position=parse_int(txn.get("version")),
            timestamp=parse_int(ts) // 1_000_000 if ts is not None else None,
        )
        try:
            if kind == KIND_DEPOSIT:
                return CanonicalEvent(
                    kind=KIND_DEPOSIT,
                    payer=data["payer"],
                    order_id=data["order_id"],
                    amount=data["amount"],
                    extra={"deposit_index": data.get("deposit_index")},
                    **common,
                )
            if kind == KIND_WITHDRAW:
                return CanonicalEvent(
                    kind=KIND_WITHDRAW,
                    amount=data["amount"],
                    extra={"owner": data["owner"], "recipient": data.get("recipient")},
                    **common,
                )
            return CanonicalEvent(
                kind=KIND_OWNERSHIP_TRANSFER,
                extra={"previous_owner": data["previous_owner"], "new_owner": data["new_owner"]},
                **common,
            )
        except KeyError as exc:
            raise DecodeError(f"{name} is missing field {exc}") from exc
