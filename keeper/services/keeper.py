"""Keeper orchestration: one cycle refreshes state, decides and executes."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from web3 import Web3

from ..chains.evm import EvmClient
from ..config import AppConfig
from ..errors import ConfigurationError, OutOfRangeError, SimulationError
from ..contracts.financial_contract import FinancialContract
from ..engine.decisions import DecisionEngine
from ..execution import AllowanceManager, ExecutionWrapper, GasEstimator, ProxyManager
from ..interfaces.chain import LedgerClient
from ..interfaces.notifier import Notifier
from ..interfaces.price_source import PriceSource
from ..models import ActionDecision, ActionKind, TransactionResult
from ..notifications import TelegramNotifier
from ..oracles import PythPriceSource
from ..state import PositionStateCache, Snapshot, SponsorEventSource
from ..temporal.blocks import BlockIndex
from .pricing import ReferencePrice

logger = logging.getLogger(__name__)


@dataclass
class CycleSummary:
    liquidated: int = 0
    disputed: int = 0
    withdrawn: int = 0
    dropped: int = 0
    expired: bool = False


class Keeper:
    """Liquidates, disputes and withdraws on one financial contract.

    ``setup`` runs once, lazily, before the first cycle: it reads the contract
    parameters, resolves the sponsor discovery start block, initialises the proxy
    and sets approvals.
    """

    def __init__(
        self,
        config: AppConfig,
        ledger: LedgerClient | None = None,
        price_source: PriceSource | None = None,
        notifiers: Sequence[Notifier] | None = None,
    ) -> None:
        self._config = config
        self._ledger: LedgerClient = ledger if ledger is not None else EvmClient(config.chain)
        self._account = Web3.to_checksum_address(config.chain.account)

        self.contract = FinancialContract(
            self._ledger, config.contract.address, config.contract.contract_type
        )
        self._gas = GasEstimator(self._ledger, config.gas)
        self.blocks = BlockIndex(self._ledger.get_block, config.chain.average_block_time)
        source = price_source if price_source is not None else PythPriceSource(config.price_feed)
        self.prices = ReferencePrice(
            source,
            self.blocks,
            config.price_feed.twap_lookback,
            max_price_age=config.price_feed.max_price_age,
        )
        self._allowances = AllowanceManager(self._ledger, self._account, self._gas)
        self._proxy_manager = (
            ProxyManager(self._ledger, self._account, config.proxy, self._gas)
            if config.proxy.enabled
            else None
        )

        if notifiers is None:
            notifiers = []
            if config.notifications.telegram.enabled:
                notifiers.append(TelegramNotifier(config.notifications.telegram))
        self._notifiers = list(notifiers)
        self._pending: set[asyncio.Task] = set()

        self.engine: DecisionEngine | None = None
        self.cache: PositionStateCache | None = None
        self.wrapper: ExecutionWrapper | None = None

    # ------------------------------------------------------------------
    # Notification dispatch
    # ------------------------------------------------------------------

    @staticmethod
    def _now_str() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    async def _send_log(self, message: str) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_log(message, silent=False)
            except Exception as e:
                logger.error("Notifier send_log failed: %s", e)

    async def _send_alert(self, message: str, subject: str = "") -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_alert(message, subject=subject)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

    def _schedule(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def notify(self, message: str) -> None:
        """Queue ``message`` for delivery without blocking the cycle."""
        if self._notifiers:
            self._schedule(self._send_log(message))

    async def alert(self, message: str, subject: str = "") -> None:
        await self._send_alert(message, subject=subject)

    async def drain_notifications(self) -> None:
        """Wait for every queued notification to be delivered."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _format_result(self, decision: ActionDecision, result: TransactionResult) -> str:
        if decision.kind == ActionKind.LIQUIDATE:
            headline = (
                f"🔨 Liquidated {decision.amount} tokens of {decision.sponsor} "
                f"at price {decision.computed_price}"
            )
        elif decision.kind == ActionKind.DISPUTE:
            headline = (
                f"⚖️ Disputed liquidation #{decision.liquidation_id} of {decision.sponsor} "
                f"(reference price {decision.computed_price})"
            )
        else:
            headline = (
                f"💸 Withdrew liquidation #{decision.liquidation_id} of {decision.sponsor}"
            )
        return (
            f"{headline}\n"
            f"\n"
            f"Contract: {self.contract.address}\n"
            f"Tx: {result.transaction_hash}\n"
            f"{self._now_str()} UTC"
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def _starting_block(self) -> int:
        contract_cfg = self._config.contract
        if contract_cfg.starting_block is not None:
            return contract_cfg.starting_block
        if contract_cfg.event_lookback_seconds is None:
            return 0
        now = await self.contract.get_current_time()
        try:
            block = await self.blocks.block_at(now - contract_cfg.event_lookback_seconds)
        except OutOfRangeError as e:
            raise ConfigurationError(
                f"event_lookback_seconds {contract_cfg.event_lookback_seconds} "
                "reaches before the genesis block"
            ) from e
        logger.info(
            "Sponsor discovery starts at block %d (%ds lookback)",
            block.number,
            contract_cfg.event_lookback_seconds,
        )
        return block.number

    async def setup(self) -> None:
        props = await self.contract.load_props()
        liquidator_cfg = self._config.liquidator
        disputer_cfg = self._config.disputer
        self.engine = DecisionEngine(
            collateral_requirement=props.collateral_requirement,
            cr_threshold=liquidator_cfg.cr_threshold,
            dispute_price_error=disputer_cfg.dispute_price_error,
            dispute_delay=disputer_cfg.dispute_delay,
            min_sponsor_tokens=max(liquidator_cfg.min_sponsor_tokens, props.min_sponsor_tokens),
            liquidation_liveness=props.liquidation_liveness,
        )

        event_source = SponsorEventSource(
            self.contract, await self._starting_block(), self._config.contract.ending_block
        )
        self.cache = PositionStateCache(self.contract, event_source, self._config.contract.sponsors)

        await self._gas.update()
        if self._proxy_manager is not None:
            try:
                await self._proxy_manager.initialize()
            except SimulationError as e:
                raise ConfigurationError(f"Proxy could not be initialised: {e}") from e

        self.wrapper = ExecutionWrapper(
            self._ledger,
            self.contract,
            self._gas,
            self._account,
            allowance_manager=self._allowances,
            proxy_manager=self._proxy_manager,
            proxy_config=self._config.proxy,
            liquidation_deadline=liquidator_cfg.liquidation_deadline,
        )

        if not self.wrapper.uses_proxy:
            for token in (props.collateral_token, props.synthetic_token):
                try:
                    await self._allowances.ensure(self.contract.address, token)
                except SimulationError as e:
                    raise ConfigurationError(f"Approval of {token} failed: {e}") from e

        logger.info(
            "Keeper ready on %s %s as %s (liquidate=%s, dispute=%s, proxy=%s)",
            self.contract.contract_type,
            self.contract.address,
            self.wrapper.executing_account,
            self._config.keeper.liquidate,
            self._config.keeper.dispute,
            self.wrapper.uses_proxy,
        )

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _liquidate(self, snapshot: Snapshot, now: int, summary: CycleSummary) -> None:
        assert self.engine is not None and self.wrapper is not None
        override = self._config.liquidator.override_price
        price = override if override is not None else await self.prices.current(now)
        balance = await self.wrapper.effective_synthetic_balance()
        decisions = self.engine.liquidation_targets(
            snapshot.positions, price, override_price=override, available_balance=balance
        )
        positions = {position.sponsor: position for position in snapshot.positions}
        for decision in decisions:
            result = await self.wrapper.execute(decision, position=positions[decision.sponsor])
            self._record(decision, result, summary)

    async def _dispute(self, snapshot: Snapshot, now: int, summary: CycleSummary) -> None:
        assert self.engine is not None and self.wrapper is not None
        override = self._config.disputer.override_price
        candidates = snapshot.undisputed()
        prices = {}
        if override is None:
            prices = await self.prices.historical(
                liquidation.liquidation_time
                for liquidation in candidates
                if now - liquidation.liquidation_time >= self.engine.dispute_delay
            )
        decisions = self.engine.dispute_targets(candidates, prices, now, override_price=override)
        records = {liquidation.key: liquidation for liquidation in candidates}
        for decision in decisions:
            result = await self.wrapper.execute(decision, liquidation=records[decision.target])
            self._record(decision, result, summary)

    async def _withdraw(self, snapshot: Snapshot, now: int, summary: CycleSummary) -> None:
        assert self.engine is not None and self.wrapper is not None
        decisions = self.engine.settleable_actions(
            snapshot.liquidations, self.wrapper.executing_account, now
        )
        for decision in decisions:
            result = await self.wrapper.execute(decision)
            self._record(decision, result, summary)

    def _record(
        self,
        decision: ActionDecision,
        result: TransactionResult | None,
        summary: CycleSummary,
    ) -> None:
        if result is None:
            summary.dropped += 1
            return
        if decision.kind == ActionKind.LIQUIDATE:
            summary.liquidated += 1
        elif decision.kind == ActionKind.DISPUTE:
            summary.disputed += 1
        else:
            summary.withdrawn += 1
        self.notify(self._format_result(decision, result))

    async def run_cycle(self) -> CycleSummary:
        if self.wrapper is None:
            await self.setup()
        assert self.cache is not None and self.wrapper is not None

        await self._gas.update()
        await self.prices.update()
        now = await self.contract.get_current_time()
        latest = await self.blocks.block_at(now)
        snapshot = await self.cache.refresh(now, latest.number)
        await self.wrapper.release_settled(snapshot)

        summary = CycleSummary()
        if await self.contract.is_expired_or_shutdown():
            summary.expired = True
            logger.info("Contract expired or shut down, skipping liquidations and disputes")
        else:
            if self._config.keeper.liquidate:
                await self._liquidate(snapshot, now, summary)
            if self._config.keeper.dispute:
                await self._dispute(snapshot, now, summary)
        await self._withdraw(snapshot, now, summary)

        logger.info(
            "Cycle done at %d (snapshot v%d): %d liquidated, %d disputed, %d withdrawn, %d dropped",
            now,
            snapshot.version,
            summary.liquidated,
            summary.disputed,
            summary.withdrawn,
            summary.dropped,
        )
        return summary
