"""Bindings for the delegated-execution stack: proxy, factory, multicall, router."""
from __future__ import annotations

from web3 import Web3

from ..models import LedgerCall
from .abi import encode_call_bytes

PROXY_CREATED_EVENT = "Created(address,address,address,address)"


def proxy_execute_call(proxy: str, target: str, data: bytes) -> LedgerCall:
    """Run ``data`` in the proxy's context via delegatecall into ``target``."""
    return LedgerCall(
        Web3.to_checksum_address(proxy),
        "execute(address,bytes)",
        (Web3.to_checksum_address(target), data),
        ("bytes",),
    )


def build_proxy_call(factory: str, owner: str) -> LedgerCall:
    return LedgerCall(
        Web3.to_checksum_address(factory),
        "build(address)",
        (Web3.to_checksum_address(owner),),
        ("address",),
    )


def aggregate_data(multicall: str, calls: list[LedgerCall]) -> bytes:
    """Calldata for ``multicall.aggregate``; any failing call reverts the whole batch."""
    aggregate = LedgerCall(
        Web3.to_checksum_address(multicall),
        "aggregate((address,bytes)[])",
        ([(call.to, encode_call_bytes(call)) for call in calls],),
        ("uint256", "bytes[]"),
    )
    return encode_call_bytes(aggregate)


def swap_tokens_for_exact_tokens_call(
    router: str,
    amount_out: int,
    amount_in_max: int,
    path: list[str],
    to: str,
    deadline: int,
) -> LedgerCall:
    return LedgerCall(
        Web3.to_checksum_address(router),
        "swapTokensForExactTokens(uint256,uint256,address[],address,uint256)",
        (
            amount_out,
            amount_in_max,
            [Web3.to_checksum_address(token) for token in path],
            Web3.to_checksum_address(to),
            deadline,
        ),
        ("uint256[]",),
    )
