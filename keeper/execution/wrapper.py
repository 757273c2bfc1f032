"""Turn action decisions into ledger transactions, directly or through a proxy."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Callable

from web3 import Web3

from ..config import ProxyConfig
from ..contracts.abi import to_decimal, to_raw
from ..contracts.erc20 import Erc20Token
from ..contracts.financial_contract import FinancialContract
from ..contracts.proxy import (
    aggregate_data,
    proxy_execute_call,
    swap_tokens_for_exact_tokens_call,
)
from ..errors import ConfigurationError, SimulationError, TransportError
from ..interfaces.chain import LedgerClient
from ..models import (
    ActionDecision,
    ActionKind,
    LedgerCall,
    LiquidationRecord,
    LiquidationState,
    Position,
    TransactionResult,
)
from .allowance import AllowanceManager
from .gas import GasEstimator
from .proxy import ProxyManager

if TYPE_CHECKING:
    from ..state import Snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingMutation:
    """An outstanding mutation; ``transaction_hash`` is set once it was broadcast
    without a confirmed receipt."""

    kind: ActionKind
    transaction_hash: str = ""


class ExecutionWrapper:
    """Executes one decision at a time as a single transaction.

    In direct mode each decision is one contract call sent from ``account``. In
    proxy mode liquidations and disputes become a bundle that first buys any
    missing settlement token with the reserve currency and then settles; the
    bundle runs through ``multicall.aggregate`` inside the proxy, so either every
    step lands or none does.

    Raises:
        ConfigurationError: proxy mode without an initialised proxy or with a
            missing or malformed reserve currency, router or multicall address.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        contract: FinancialContract,
        gas_estimator: GasEstimator,
        account: str,
        allowance_manager: AllowanceManager | None = None,
        proxy_manager: ProxyManager | None = None,
        proxy_config: ProxyConfig | None = None,
        liquidation_deadline: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._contract = contract
        self._gas = gas_estimator
        self._account = Web3.to_checksum_address(account)
        self._allowances = allowance_manager or AllowanceManager(ledger, account, gas_estimator)
        self._liquidation_deadline = liquidation_deadline
        self._clock = clock
        self._in_flight: dict[tuple[str, int | None], PendingMutation] = {}

        self._proxy_config = proxy_config if proxy_config and proxy_config.enabled else None
        self._proxy_manager = proxy_manager
        if self._proxy_config is not None:
            self._validate_proxy_mode()

    def _validate_proxy_mode(self) -> None:
        assert self._proxy_config is not None
        if self._proxy_manager is None or not self._proxy_manager.initialized:
            raise ConfigurationError("Proxy mode requires an initialised proxy manager")
        for name in ("reserve_currency_address", "router_address", "multicall_address"):
            value = getattr(self._proxy_config, name)
            if not value or not Web3.is_address(value):
                raise ConfigurationError(f"Proxy mode requires a valid {name}, got {value!r}")

    @property
    def uses_proxy(self) -> bool:
        return self._proxy_config is not None

    @property
    def executing_account(self) -> str:
        if self._proxy_manager is not None and self.uses_proxy:
            assert self._proxy_manager.proxy_address is not None
            return self._proxy_manager.proxy_address
        return self._account

    def in_flight(self) -> frozenset[tuple[str, int | None]]:
        return frozenset(self._in_flight)

    async def effective_synthetic_balance(self) -> Decimal | None:
        """Synthetic tokens available to liquidate with.

        ``None`` in proxy mode: inventory is bought per bundle, bounded only by
        ``max_reserve_spent``.
        """
        if self.uses_proxy:
            return None
        props = self._contract.props
        raw = await Erc20Token(self._ledger, props.synthetic_token).balance_of(self._account)
        return to_decimal(raw, props.synthetic_decimals)

    # ------------------------------------------------------------------
    # Call construction
    # ------------------------------------------------------------------

    def _deadline(self) -> int:
        return int(self._clock()) + self._liquidation_deadline

    def _settlement_call(
        self,
        decision: ActionDecision,
        position: Position | None,
    ) -> LedgerCall:
        if decision.kind == ActionKind.LIQUIDATE:
            if position is None or decision.amount is None:
                raise ValueError("LIQUIDATE decisions need the position and an amount")
            return self._contract.create_liquidation_call(
                decision.sponsor,
                position.collateral / position.debt,
                decision.amount,
                self._deadline(),
            )
        assert decision.liquidation_id is not None
        if decision.kind == ActionKind.DISPUTE:
            return self._contract.dispute_call(decision.liquidation_id, decision.sponsor)
        return self._contract.withdraw_liquidation_call(decision.liquidation_id, decision.sponsor)

    async def _acquire_calls(self, token: str, needed: int) -> list[LedgerCall]:
        """Approve-and-swap calls buying the proxy's shortfall of ``token``, if any."""
        assert self._proxy_config is not None
        proxy = self.executing_account
        balance = await Erc20Token(self._ledger, token).balance_of(proxy)
        shortfall = needed - balance
        if shortfall <= 0:
            return []

        reserve = self._proxy_config.reserve_currency_address
        router = self._proxy_config.router_address
        logger.debug("Proxy short %d of %s, swapping from reserve %s", shortfall, token, reserve)
        calls: list[LedgerCall] = []
        approval = await self._allowances.approval_call_if_needed(proxy, router, reserve)
        if approval is not None:
            calls.append(approval)
        calls.append(
            swap_tokens_for_exact_tokens_call(
                router,
                shortfall,
                self._proxy_config.max_reserve_spent,
                [reserve, token],
                proxy,
                self._deadline(),
            )
        )
        return calls

    async def build_bundle(
        self,
        decision: ActionDecision,
        position: Position | None = None,
        liquidation: LiquidationRecord | None = None,
    ) -> list[LedgerCall]:
        """Ordered calls the proxy runs for ``decision``; the settlement is always last."""
        props = self._contract.props
        proxy = self.executing_account
        settlement = self._settlement_call(decision, position)
        calls: list[LedgerCall] = []

        if decision.kind == ActionKind.LIQUIDATE:
            assert decision.amount is not None
            needed = to_raw(decision.amount, props.synthetic_decimals)
            calls += await self._acquire_calls(props.synthetic_token, needed)
            for token in (props.synthetic_token, props.collateral_token):
                approval = await self._allowances.approval_call_if_needed(
                    proxy, self._contract.address, token
                )
                if approval is not None:
                    calls.append(approval)
        elif decision.kind == ActionKind.DISPUTE:
            if liquidation is None:
                raise ValueError("DISPUTE decisions in proxy mode need the liquidation record")
            bond = to_raw(self._contract.dispute_bond(liquidation), props.collateral_decimals)
            calls += await self._acquire_calls(props.collateral_token, bond)
            approval = await self._allowances.approval_call_if_needed(
                proxy, self._contract.address, props.collateral_token
            )
            if approval is not None:
                calls.append(approval)

        calls.append(settlement)
        return calls

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _send_direct(
        self, decision: ActionDecision, position: Position | None
    ) -> TransactionResult:
        props = self._contract.props
        if decision.kind == ActionKind.LIQUIDATE:
            await self._allowances.ensure(self._contract.address, props.synthetic_token)
        if decision.kind in (ActionKind.LIQUIDATE, ActionKind.DISPUTE):
            await self._allowances.ensure(self._contract.address, props.collateral_token)

        call = self._settlement_call(decision, position)
        result = await self._ledger.send(
            call, self._account, await self._gas.get_current_fast_price()
        )
        if decision.kind == ActionKind.LIQUIDATE and decision.amount is not None:
            self._allowances.record_spend(
                self._contract.address,
                props.synthetic_token,
                to_raw(decision.amount, props.synthetic_decimals),
            )
        return result

    async def _send_bundle(
        self,
        decision: ActionDecision,
        position: Position | None,
        liquidation: LiquidationRecord | None,
    ) -> TransactionResult:
        assert self._proxy_config is not None
        proxy = self.executing_account
        calls = await self.build_bundle(decision, position, liquidation)
        multicall = self._proxy_config.multicall_address
        execute = proxy_execute_call(proxy, multicall, aggregate_data(multicall, calls))
        logger.debug(
            "Executing %d-step bundle through proxy %s: %s",
            len(calls),
            proxy,
            ", ".join(call.name for call in calls),
        )
        result = await self._ledger.send(
            execute, self._account, await self._gas.get_current_fast_price()
        )
        for call in calls:
            if call.name == "approve":
                self._allowances.record_approval(call.args[0], call.to, owner=proxy)
        return result

    async def execute(
        self,
        decision: ActionDecision,
        position: Position | None = None,
        liquidation: LiquidationRecord | None = None,
    ) -> TransactionResult | None:
        """Submit ``decision`` and wait for inclusion.

        Returns ``None`` when the transaction would revert (or did) or when a
        mutation for the same target is still outstanding. Transport failures
        propagate to the caller; if the transaction was already broadcast the
        target stays in flight until ``release_settled`` sees it resolved.
        """
        key = decision.target
        if key in self._in_flight:
            logger.warning(
                "Skipping %s on %s: a transaction is already in flight",
                decision.kind.value,
                key,
            )
            return None

        self._in_flight[key] = PendingMutation(decision.kind)
        logger.debug("Attempting %s on %s", decision.kind.value, key)
        try:
            if self.uses_proxy:
                result = await self._send_bundle(decision, position, liquidation)
            else:
                result = await self._send_direct(decision, position)
        except SimulationError as e:
            del self._in_flight[key]
            # Pending-dispute withdrawals are attempted every cycle and usually revert.
            level = logging.DEBUG if decision.kind == ActionKind.SETTLE else logging.ERROR
            logger.log(
                level, "%s on %s failed simulation, dropping: %s", decision.kind.value, key, e
            )
            return None
        except TransportError as e:
            if e.transaction_hash:
                self._in_flight[key] = PendingMutation(decision.kind, e.transaction_hash)
                logger.warning(
                    "%s on %s unconfirmed (%s), holding target until it resolves",
                    decision.kind.value,
                    key,
                    e.transaction_hash,
                )
            else:
                del self._in_flight[key]
            raise
        except BaseException:
            del self._in_flight[key]
            raise

        del self._in_flight[key]
        logger.info(
            "%s on %s succeeded in %s", decision.kind.value, key, result.transaction_hash
        )
        return result

    async def release_settled(self, snapshot: Snapshot) -> None:
        """Release held targets whose transaction now has a receipt or whose
        target ``snapshot`` shows as no longer needing the action."""
        for key, pending in list(self._in_flight.items()):
            if not pending.transaction_hash:
                continue
            receipt = await self._ledger.get_transaction_receipt(pending.transaction_hash)
            if receipt is None and not _is_resolved(pending.kind, key, snapshot):
                logger.debug(
                    "%s on %s still pending (%s)", pending.kind.value, key, pending.transaction_hash
                )
                continue
            del self._in_flight[key]
            logger.info(
                "Released %s on %s (%s)",
                pending.kind.value,
                key,
                "receipt seen" if receipt is not None else "target resolved",
            )


def _is_resolved(kind: ActionKind, key: tuple[str, int | None], snapshot: Snapshot) -> bool:
    sponsor, liquidation_id = key
    if kind == ActionKind.LIQUIDATE:
        return all(position.sponsor != sponsor for position in snapshot.positions)
    record = next((r for r in snapshot.liquidations if r.key == (sponsor, liquidation_id)), None)
    if record is None:
        return True
    if kind == ActionKind.DISPUTE:
        return record.state != LiquidationState.PRE_DISPUTE
    return False
