"""ABI encoding helpers for LedgerCall objects."""
from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Any

from eth_abi import decode, encode
from web3 import Web3

from ..models import LedgerCall

# FixedPoint values on the financial contract carry 18 decimals.
FIXED_POINT_DECIMALS = 18


def selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


def event_topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))


def encode_call(call: LedgerCall) -> str:
    """Calldata for ``call`` as a 0x-prefixed hex string."""
    payload = selector(call.signature) + encode(list(call.arg_types), list(call.args))
    return "0x" + payload.hex()


def encode_call_bytes(call: LedgerCall) -> bytes:
    return bytes.fromhex(encode_call(call)[2:])


def decode_output(call: LedgerCall, data: str | None) -> Any:
    """Decode return data; a single output is unwrapped from its tuple."""
    if not call.output_types:
        return None
    if not data or data == "0x":
        raise ValueError(f"{call.name} returned no data")
    values = decode(list(call.output_types), bytes.fromhex(data[2:]))
    if len(values) == 1:
        return values[0]
    return values


def topic_to_address(topic: str) -> str:
    return Web3.to_checksum_address("0x" + topic[-40:])


def to_decimal(raw: int, decimals: int) -> Decimal:
    return Decimal(raw).scaleb(-decimals)


def to_raw(amount: Decimal, decimals: int) -> int:
    return int(amount.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))
