"""EVM JSON-RPC client with fallback support."""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ...config import ChainConfig
from ...contracts.abi import decode_output, encode_call
from ...errors import SimulationError, TransactionRevertedError, TransportError
from ...models import Block, LedgerCall, TransactionResult

logger = logging.getLogger(__name__)

RECEIPT_POLL_INTERVAL = 1.0


class RpcError(Exception):
    """JSON-RPC level error returned by a node."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"RPC Error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    @property
    def is_revert(self) -> bool:
        return self.code == 3 or "revert" in self.message.lower()


class EvmClient:
    """EVM JSON-RPC client with automatic endpoint fallback."""

    def __init__(self, config: ChainConfig) -> None:
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.receipt_timeout = config.receipt_timeout
        self.gas_limit = config.gas_limit
        self.current_rpc_index = 0
        self._request_id = 0

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Make RPC call with fallback to alternative endpoints.

        Reverts are answered identically by every node, so they are raised as
        ``SimulationError`` without trying the remaining endpoints.
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            rpc_url = self.endpoints[rpc_index]

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.post(
                        rpc_url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        result = await response.json()
                        if "error" in result:
                            error = result["error"]
                            raise RpcError(
                                int(error.get("code", 0)),
                                str(error.get("message", "")),
                                error.get("data"),
                            )

                        if rpc_index != self.current_rpc_index:
                            logger.info("Switched to RPC endpoint: %s", rpc_url)
                            self.current_rpc_index = rpc_index

                        return result.get("result")
            except RpcError as e:
                if e.is_revert:
                    raise SimulationError(f"{method} reverted: {e.message}") from e
                last_error = e
                logger.warning("RPC endpoint %s failed: %s", rpc_url, e)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                logger.warning("RPC endpoint %s failed: %s", rpc_url, e)
            if attempt < len(self.endpoints) - 1:
                logger.info("Trying next endpoint...")

        raise TransportError(f"All RPC endpoints failed. Last error: {last_error}")

    async def call(self, call: LedgerCall, sender: str | None = None) -> Any:
        """Execute a read-only call against the latest block and decode it."""
        tx: dict[str, Any] = {"to": call.to, "data": encode_call(call)}
        if sender:
            tx["from"] = sender
        data = await self.rpc_call("eth_call", [tx, "latest"])
        return decode_output(call, data)

    async def send(
        self, call: LedgerCall, account: str, gas_price: int
    ) -> TransactionResult:
        """Simulate, submit and await inclusion of a state-changing call.

        Raises:
            SimulationError: the call would revert; nothing was submitted.
            TransactionRevertedError: the transaction was included but reverted.
            TransportError: the node could not be reached or inclusion timed out.
        """
        return_value = await self.call(call, sender=account)

        tx: dict[str, Any] = {
            "from": account,
            "to": call.to,
            "data": encode_call(call),
            "gasPrice": hex(gas_price),
        }
        if self.gas_limit:
            tx["gas"] = hex(self.gas_limit)

        tx_hash = await self.rpc_call("eth_sendTransaction", [tx])
        logger.debug("Submitted %s: %s", call.name, tx_hash)

        receipt = await self._wait_for_receipt(tx_hash)
        if int(receipt.get("status", "0x1"), 16) == 0:
            raise TransactionRevertedError(f"{call.name} reverted on-chain", tx_hash)

        return TransactionResult(
            transaction_hash=tx_hash,
            events=tuple(receipt.get("logs", [])),
            return_value=return_value,
        )

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """Receipt of ``tx_hash``, or ``None`` while it is still pending."""
        return await self.rpc_call("eth_getTransactionReceipt", [tx_hash]) or None

    async def _wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout
        while True:
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt:
                return receipt
            if loop.time() >= deadline:
                raise TransportError(
                    f"Transaction {tx_hash} not included after {self.receipt_timeout}s",
                    tx_hash,
                )
            await asyncio.sleep(RECEIPT_POLL_INTERVAL)

    async def get_block(self, number: int | str = "latest") -> Block:
        """Get a block by number (or ``"latest"``) without transactions."""
        tag = number if isinstance(number, str) else hex(number)
        result = await self.rpc_call("eth_getBlockByNumber", [tag, False])
        if not result:
            raise TransportError(f"Block {number} not available")
        return Block(
            number=int(result["number"], 16),
            timestamp=int(result["timestamp"], 16),
        )

    async def get_logs(
        self,
        address: str,
        topics: list[str | None],
        from_block: int,
        to_block: int | str = "latest",
    ) -> list[dict[str, Any]]:
        """Get raw event logs for a contract within a block range."""
        result = await self.rpc_call(
            "eth_getLogs",
            [
                {
                    "address": address,
                    "topics": topics,
                    "fromBlock": hex(from_block),
                    "toBlock": to_block if isinstance(to_block, str) else hex(to_block),
                }
            ],
        )
        return result or []

    async def gas_price(self) -> int:
        return int(await self.rpc_call("eth_gasPrice", []), 16)
