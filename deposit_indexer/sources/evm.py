import asyncio
import json
from typing import Any, Awaitable, Dict, List, Optional

from hexbytes import HexBytes
from web3 import Web3
from web3._utils.events import get_event_data
import websockets

from deposit_indexer.errors import ConfigurationError, DecodeError
from deposit_indexer.models import KIND_DEPOSIT, KIND_OWNERSHIP_TRANSFER, KIND_WITHDRAW, CanonicalEvent
from deposit_indexer.sources.base import EventSource, require
from deposit_indexer.util import log, parse_int

VAULT_EVENTS_ABI: List[Dict[str, Any]] = [
    {
        "anonymous": False,
        "type": "event",
        "name": "DepositReceived",
        "inputs": [
            {"indexed": True, "name": "payer", "type": "address"},
            {"indexed": True, "name": "orderId", "type": "bytes32"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
    },
    {
        "anonymous": False,
        "type": "event",
        "name": "WithdrawCompleted",
        "inputs": [
            {"indexed": True, "name": "owner", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
    },
    {
        "anonymous": False,
        "type": "event",
        "name": "OwnershipTransferred",
        "inputs": [
            {"indexed": True, "name": "previousOwner", "type": "address"},
            {"indexed": True, "name": "newOwner", "type": "address"},
        ],
    },
]

BLOCK_TS_CACHE_LIMIT = 10000


def event_signature(event_abi: Dict[str, Any]) -> str:
    types = ",".join(item["type"] for item in event_abi.get("inputs", []))
    return f"{event_abi['name']}({types})"


def event_topic(event_abi: Dict[str, Any]) -> str:
    return _hex(Web3.keccak(text=event_signature(event_abi)))


def _hex(value: Any) -> str:
    # HexBytes.hex() dropped the 0x prefix in hexbytes 1.0
    if isinstance(value, (HexBytes, bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def _normalize_log(log_entry: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(log_entry)
    if isinstance(out.get("transactionHash"), str):
        out["transactionHash"] = HexBytes(out["transactionHash"])
    if isinstance(out.get("blockHash"), str):
        out["blockHash"] = HexBytes(out["blockHash"])
    if isinstance(out.get("data"), str):
        out["data"] = HexBytes(out["data"])
    if isinstance(out.get("topics"), list):
        out["topics"] = [HexBytes(t) if isinstance(t, str) else t for t in out["topics"]]
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        if key in out and out[key] is not None:
            out[key] = parse_int(out[key])
    if "address" in out and isinstance(out["address"], str):
        out["address"] = Web3.to_checksum_address(out["address"])
    return out


class EvmEventSource(EventSource):
    """PaymentVault logs fetched with ``eth_getLogs`` and decoded against the vault ABI."""

    family = "evm"
    default_confirmation_depth = 12

    def __init__(self, chain: Dict[str, Any], request_timeout: float = 30.0, w3: Optional[Web3] = None):
        super().__init__(chain, request_timeout)
        self.rpc_http = chain.get("rpc_http")
        self.rpc_ws = chain.get("rpc_ws")
        try:
            self.address = Web3.to_checksum_address(self.contract)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"chain {self.name}: bad contract address {self.contract!r}") from exc
        if w3 is None:
            rpc_http = require(chain, "rpc_http")
            w3 = Web3(Web3.HTTPProvider(rpc_http, request_kwargs={"timeout": request_timeout}))
        self.w3 = w3
        self.reconnect_delay = int(chain.get("reconnect_delay", 5))

        self.topic_to_abi: Dict[str, Dict[str, Any]] = {}
        for event_abi in VAULT_EVENTS_ABI:
            if event_abi["name"] in self.event_kinds:
                self.topic_to_abi[event_topic(event_abi)] = event_abi
        self._block_ts_cache: Dict[int, int] = {}
        self._ws_id = 0
        self._new_head: Optional[asyncio.Event] = None

    def head_position(self) -> Optional[int]:
        return int(self.w3.eth.block_number)

    def fetch_events(self, from_position: int, to_position: int) -> List[CanonicalEvent]:
        logs = self._get_logs(from_position, to_position)
        logs = sorted(logs, key=lambda x: (x.get("blockNumber", 0), x.get("logIndex", 0)))
        events: List[CanonicalEvent] = []
        for raw in logs:
            normalized = _normalize_log(raw)
            if normalized.get("removed"):
                continue
            try:
                event = self.decode_log(normalized)
            except DecodeError as exc:
                tx_hash = normalized.get("transactionHash")
                event = self.undecodable(
                    _hex(tx_hash) if tx_hash else None,
                    normalized.get("logIndex") or 0,
                    normalized.get("blockNumber", from_position),
                    exc,
                    contract_address=self.address,
                )
            if event is not None:
                events.append(event)
        return events

    def _get_logs(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        try:
            return list(
                self.w3.eth.get_logs(
                    {
                        "fromBlock": from_block,
                        "toBlock": to_block,
                        "address": self.address,
                        "topics": [list(self.topic_to_abi.keys())],
                    }
                )
            )
        except ValueError as exc:
            msg = str(exc).lower()
            if from_block >= to_block:
                raise
            if "query returned more than" in msg or "too many" in msg or "range" in msg:
                middle = (from_block + to_block) // 2
                log(f"WARN: [{self.name}] get_logs too large ({from_block}-{to_block}), splitting at {middle}")
                return self._get_logs(from_block, middle) + self._get_logs(middle + 1, to_block)
            raise

    def decode_log(self, log_entry: Dict[str, Any]) -> Optional[CanonicalEvent]:
        topics = log_entry.get("topics") or []
        if not topics:
            raise DecodeError("log has no topics")
        event_abi = self.topic_to_abi.get(_hex(topics[0]))
        if event_abi is None:
            return None
        try:
            event_data = get_event_data(self.w3.codec, event_abi, log_entry)
        except Exception as exc:
            raise DecodeError(f"{event_abi['name']}: {exc}") from exc

        args = dict(event_data["args"])
        block_number = log_entry["blockNumber"]
        common = dict(
            chain_id=self.chain_id,
            contract_address=self.address.lower(),
            tx_id=_hex(log_entry["transactionHash"]),
            event_index=int(log_entry["logIndex"]),
            position=int(block_number),
            timestamp=self._get_block_timestamp(block_number),
        )
        kind = self.event_kinds[event_abi["name"]]
        if kind == KIND_DEPOSIT:
            return CanonicalEvent(
                kind=KIND_DEPOSIT,
                payer=args["payer"],
                order_id=args["orderId"],
                amount=int(args["amount"]),
                **common,
            )
        if kind == KIND_WITHDRAW:
            return CanonicalEvent(
                kind=KIND_WITHDRAW,
                amount=int(args["amount"]),
                extra={"owner": args["owner"]},
                **common,
            )
        return CanonicalEvent(
            kind=KIND_OWNERSHIP_TRANSFER,
            extra={"previous_owner": args["previousOwner"], "new_owner": args["newOwner"]},
            **common,
        )

    def _get_block_timestamp(self, block_number: int) -> Optional[int]:
        if block_number in self._block_ts_cache:
            return self._block_ts_cache[block_number]
        block = self.w3.eth.get_block(block_number)
        ts = block.get("timestamp")
        if len(self._block_ts_cache) >= BLOCK_TS_CACHE_LIMIT:
            self._block_ts_cache.clear()
        self._block_ts_cache[block_number] = ts
        return ts

    # -- newHeads subscription ------------------------------------------

    async def wait_for_new_head(self, timeout: float) -> None:
        if self._new_head is None:
            await asyncio.sleep(timeout)
            return
        try:
            await asyncio.wait_for(self._new_head.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        self._new_head.clear()

    def background_tasks(self) -> List[Awaitable[None]]:
        if not self.rpc_ws:
            return []
        self._new_head = asyncio.Event()
        return [self.watch_heads()]

    async def watch_heads(self) -> None:
        backoff = max(self.reconnect_delay, 1)
        max_backoff = 60

        while True:
            try:
                async with websockets.connect(self.rpc_ws, ping_interval=20, ping_timeout=20) as ws:
                    sub_id = await self._ws_subscribe(ws)
                    log(f"[{self.name}] subscribed to newHeads: {sub_id}")
                    backoff = max(self.reconnect_delay, 1)
                    async for message in ws:
                        self._handle_ws_message(json.loads(message))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log(f"WARN: [{self.name}] websocket error: {exc}")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)

    async def _ws_subscribe(self, ws: Any) -> str:
        self._ws_id += 1
        req_id = self._ws_id
        await ws.send(json.dumps({"jsonrpc": "2.0", "id": req_id, "method": "eth_subscribe", "params": ["newHeads"]}))
        while True:
            data = json.loads(await ws.recv())
            if data.get("id") == req_id:
                if "result" in data:
                    return data["result"]
                raise RuntimeError(f"Subscribe failed: {data}")
            self._handle_ws_message(data)

    def _handle_ws_message(self, payload: Dict[str, Any]) -> None:
        if payload.get("method") != "eth_subscription":
            return
        head = payload.get("params", {}).get("result") or {}
        if head.get("number") is None:
            return
        if self._new_head is not None:
            self._new_head.set()
