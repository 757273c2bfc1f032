"""Locate or deploy the keeper's delegated proxy account."""
from __future__ import annotations

import logging
from typing import Any

from eth_abi import decode
from web3 import Web3

from ..config import ProxyConfig
from ..contracts.abi import event_topic
from ..contracts.proxy import PROXY_CREATED_EVENT, build_proxy_call
from ..interfaces.chain import LedgerClient
from .gas import GasEstimator

logger = logging.getLogger(__name__)


def _owner_topic(owner: str) -> str:
    return "0x" + "0" * 24 + Web3.to_checksum_address(owner)[2:].lower()


def _proxy_from_created_log(log: dict[str, Any]) -> str:
    data = log["data"]
    proxy, _cache = decode(["address", "address"], bytes.fromhex(data[2:]))
    return Web3.to_checksum_address(proxy)


class ProxyManager:
    """Resolves the proxy address the keeper executes bundles through.

    Order of preference: the configured ``proxy_address``, the most recent proxy
    the factory created for ``account``, or a freshly built one.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        account: str,
        config: ProxyConfig,
        gas_estimator: GasEstimator,
    ) -> None:
        self._ledger = ledger
        self._account = Web3.to_checksum_address(account)
        self._config = config
        self._gas = gas_estimator
        self.proxy_address: str | None = (
            Web3.to_checksum_address(config.proxy_address) if config.proxy_address else None
        )

    @property
    def initialized(self) -> bool:
        return self.proxy_address is not None

    async def initialize(self) -> str:
        if self.proxy_address is not None:
            logger.info("Using configured proxy %s", self.proxy_address)
            return self.proxy_address

        factory = Web3.to_checksum_address(self._config.factory_address)
        logs = await self._ledger.get_logs(
            factory,
            [event_topic(PROXY_CREATED_EVENT), None, _owner_topic(self._account)],
            0,
        )
        if logs:
            self.proxy_address = _proxy_from_created_log(logs[-1])
            logger.info("Found existing proxy %s for %s", self.proxy_address, self._account)
            return self.proxy_address

        logger.info("No proxy found for %s, deploying one via %s", self._account, factory)
        receipt = await self._ledger.send(
            build_proxy_call(factory, self._account),
            self._account,
            await self._gas.get_current_fast_price(),
        )
        created_topic = event_topic(PROXY_CREATED_EVENT)
        for log in receipt.events:
            topics = log.get("topics", [])
            if topics and topics[0] == created_topic:
                self.proxy_address = _proxy_from_created_log(log)
                break
        else:
            self.proxy_address = Web3.to_checksum_address(receipt.return_value)
        logger.info("Deployed proxy %s in %s", self.proxy_address, receipt.transaction_hash)
        return self.proxy_address
