"""
Order identifier derivation.

These vectors are shared with the order-creation service and the vault
tooling; a mismatch never crashes anything, deposits simply stop matching.
"""

import pytest

from deposit_indexer.order_id import derive_order_id, derive_order_id_bytes, order_id_preimage

GOLDEN = [
    ("b1", "a1", 1, "8c0bdceee60a2841a04f19ecf4c0a5a4864d0d96d15f2c55e52e3dda19da647b"),
    ("b1", "a1", 2, "168a00040ac8b4d9bd849b2f277dfffab6a90689dbc8b4c8e8c5dfb87d9f8bba"),
    ("test_broker", "test_account", 123, "7ce33fe53e349410dda995dc84c5a93ad26b71b71f724ba798e2ab46f911fb73"),
]


@pytest.mark.parametrize("broker_id,account_id,order_num,expected", GOLDEN)
def test_matches_reference_vectors(broker_id, account_id, order_num, expected):
    assert derive_order_id(broker_id, account_id, order_num) == expected


def test_is_deterministic():
    first = derive_order_id_bytes("b1", "a1", 1)
    assert all(derive_order_id_bytes("b1", "a1", 1) == first for _ in range(5))
    assert len(first) == 32


def test_preimage_is_packed_without_delimiters():
    assert order_id_preimage("b1", "a1", 1) == b"b1a1" + b"\x00" * 7 + b"\x01"
    assert order_id_preimage("b", "1a1", 1) == order_id_preimage("b1", "a1", 1)


def test_number_is_big_endian_uint64():
    assert order_id_preimage("", "", 0x0102030405060708) == bytes(range(1, 9))
    with pytest.raises(ValueError):
        order_id_preimage("b1", "a1", 2 ** 64)
    with pytest.raises(ValueError):
        order_id_preimage("b1", "a1", -1)
    with pytest.raises(TypeError):
        order_id_preimage("b1", "a1", "1")


def test_hex_form_is_lowercase_without_prefix():
    value = derive_order_id("b1", "a1", 1)
    assert len(value) == 64
    assert value == value.lower()
    assert not value.startswith("0x")
