"""Deterministic order identifiers.

The vault contract, the order-creation service and every indexer must agree
bit for bit: ``keccak256(broker_id || account_id || uint64_be(order_num))``,
the same bytes Solidity's ``abi.encodePacked(string, string, uint64)`` produces.
"""

from web3 import Web3

UINT64_MAX = 2 ** 64 - 1


def order_id_preimage(broker_id: str, account_id: str, order_num: int) -> bytes:
    if isinstance(order_num, bool) or not isinstance(order_num, int):
        raise TypeError("order_num must be an int")
    if not 0 <= order_num <= UINT64_MAX:
        raise ValueError(f"order_num out of uint64 range: {order_num}")
    return broker_id.encode("utf-8") + account_id.encode("utf-8") + order_num.to_bytes(8, "big")


def derive_order_id_bytes(broker_id: str, account_id: str, order_num: int) -> bytes:
    return bytes(Web3.keccak(order_id_preimage(broker_id, account_id, order_num)))


def derive_order_id(broker_id: str, account_id: str, order_num: int) -> str:
    return derive_order_id_bytes(broker_id, account_id, order_num).hex()
