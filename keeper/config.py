"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from web3 import Web3

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

MAX_UINT = 2**256 - 1

CONTRACT_TYPES = frozenset({"ExpiringMultiParty", "Perpetual"})

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeeperConfig:
    polling_interval: int = 60
    error_retries: int = 3
    error_retries_timeout: float = 1.0
    liquidate: bool = True
    dispute: bool = True

    def __post_init__(self) -> None:
        if self.polling_interval < 0:
            raise ConfigurationError("polling_interval must be >= 0")
        if self.error_retries < 0:
            raise ConfigurationError("error_retries must be >= 0")
        if self.error_retries_timeout < 0:
            raise ConfigurationError("error_retries_timeout must be >= 0")


@dataclass(frozen=True)
class ChainConfig:
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30
    account: str = ""
    average_block_time: float = 13.0
    receipt_timeout: int = 240
    gas_limit: int | None = None

    def __post_init__(self) -> None:
        if self.average_block_time <= 0:
            raise ConfigurationError("average_block_time must be > 0")


@dataclass(frozen=True)
class ContractConfig:
    address: str = ""
    contract_type: str = "ExpiringMultiParty"
    starting_block: int | None = None
    ending_block: int | None = None
    event_lookback_seconds: int | None = None
    sponsors: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if (
            self.starting_block is not None
            and self.ending_block is not None
            and self.starting_block > self.ending_block
        ):
            raise ConfigurationError("starting_block must not exceed ending_block")
        if self.contract_type not in CONTRACT_TYPES:
            raise ConfigurationError(
                f"contract_type must be one of {sorted(CONTRACT_TYPES)}, got {self.contract_type!r}"
            )


@dataclass(frozen=True)
class LiquidatorConfig:
    cr_threshold: Decimal = Decimal(0)
    liquidation_deadline: int = 300
    min_sponsor_tokens: Decimal = Decimal(0)
    override_price: Decimal | None = None

    def __post_init__(self) -> None:
        if not Decimal(0) <= self.cr_threshold < Decimal(1):
            raise ConfigurationError(
                f"cr_threshold must be in [0, 1), got {self.cr_threshold}"
            )
        if self.liquidation_deadline <= 0:
            raise ConfigurationError("liquidation_deadline must be > 0")


@dataclass(frozen=True)
class DisputerConfig:
    dispute_price_error: Decimal = Decimal("0.05")
    dispute_delay: int = 0
    override_price: Decimal | None = None

    def __post_init__(self) -> None:
        if self.dispute_price_error < 0:
            raise ConfigurationError("dispute_price_error must be >= 0")
        if self.dispute_delay < 0:
            raise ConfigurationError(
                f"dispute_delay must be >= 0, got {self.dispute_delay}"
            )


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network"
    feed_id: str = ""
    twap_lookback: int = 0
    max_price_age: int = 600

    def __post_init__(self) -> None:
        if self.twap_lookback < 0:
            raise ConfigurationError("twap_lookback must be >= 0")
        if self.max_price_age <= 0:
            raise ConfigurationError("max_price_age must be > 0")


@dataclass(frozen=True)
class GasConfig:
    update_interval: int = 60
    multiplier: Decimal = Decimal(1)


@dataclass(frozen=True)
class ProxyConfig:
    enabled: bool = False
    proxy_address: str = ""
    factory_address: str = ""
    reserve_currency_address: str = ""
    router_address: str = ""
    multicall_address: str = ""
    max_reserve_spent: int = MAX_UINT


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    log_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)


@dataclass(frozen=True)
class AppConfig:
    keeper: KeeperConfig = field(default_factory=KeeperConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    contract: ContractConfig = field(default_factory=ContractConfig)
    liquidator: LiquidatorConfig = field(default_factory=LiquidatorConfig)
    disputer: DisputerConfig = field(default_factory=DisputerConfig)
    price_feed: PythConfig = field(default_factory=PythConfig)
    gas: GasConfig = field(default_factory=GasConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ConfigurationError(f"{name} is not a number: {value!r}") from None


def _optional_decimal(value: Any, name: str) -> Decimal | None:
    if value is None or value == "":
        return None
    return _decimal(value, name)


def _int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} is not an integer: {value!r}") from None


def _float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} is not a number: {value!r}") from None


def _optional_int(value: Any, name: str) -> int | None:
    if value is None or value == "":
        return None
    return _int(value, name)


def _build_keeper(raw: dict[str, Any]) -> KeeperConfig:
    return KeeperConfig(
        polling_interval=_int(raw.get("polling_interval", 60), "polling_interval"),
        error_retries=_int(raw.get("error_retries", 3), "error_retries"),
        error_retries_timeout=_float(
            raw.get("error_retries_timeout", 1.0), "error_retries_timeout"
        ),
        liquidate=bool(raw.get("liquidate", True)),
        dispute=bool(raw.get("dispute", True)),
    )


def _build_chain(raw: dict[str, Any]) -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=tuple(raw.get("rpc_endpoints", [])),
        rpc_timeout=_int(raw.get("rpc_timeout", 30), "rpc_timeout"),
        account=raw.get("account", ""),
        average_block_time=_float(raw.get("average_block_time", 13.0), "average_block_time"),
        receipt_timeout=_int(raw.get("receipt_timeout", 240), "receipt_timeout"),
        gas_limit=_optional_int(raw.get("gas_limit"), "gas_limit"),
    )


def _build_contract(raw: dict[str, Any]) -> ContractConfig:
    return ContractConfig(
        address=raw.get("address", ""),
        contract_type=raw.get("contract_type", "ExpiringMultiParty"),
        starting_block=_optional_int(raw.get("starting_block"), "starting_block"),
        ending_block=_optional_int(raw.get("ending_block"), "ending_block"),
        event_lookback_seconds=_optional_int(
            raw.get("event_lookback_seconds"), "event_lookback_seconds"
        ),
        sponsors=tuple(raw.get("sponsors", [])),
    )


def _build_liquidator(raw: dict[str, Any]) -> LiquidatorConfig:
    return LiquidatorConfig(
        cr_threshold=_decimal(raw.get("cr_threshold", 0), "cr_threshold"),
        liquidation_deadline=_int(raw.get("liquidation_deadline", 300), "liquidation_deadline"),
        min_sponsor_tokens=_decimal(
            raw.get("min_sponsor_tokens", 0), "min_sponsor_tokens"
        ),
        override_price=_optional_decimal(raw.get("override_price"), "override_price"),
    )


def _build_disputer(raw: dict[str, Any]) -> DisputerConfig:
    return DisputerConfig(
        dispute_price_error=_decimal(
            raw.get("dispute_price_error", "0.05"), "dispute_price_error"
        ),
        dispute_delay=_int(raw.get("dispute_delay", 0), "dispute_delay"),
        override_price=_optional_decimal(raw.get("override_price"), "override_price"),
    )


def _build_price_feed(raw: dict[str, Any]) -> PythConfig:
    pyth_raw = raw.get("pyth", {})
    return PythConfig(
        hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
        feed_id=pyth_raw.get("feed_id", ""),
        twap_lookback=_int(pyth_raw.get("twap_lookback", 0), "twap_lookback"),
        max_price_age=_int(pyth_raw.get("max_price_age", 600), "max_price_age"),
    )


def _build_gas(raw: dict[str, Any]) -> GasConfig:
    return GasConfig(
        update_interval=_int(raw.get("update_interval", 60), "update_interval"),
        multiplier=_decimal(raw.get("multiplier", 1), "gas.multiplier"),
    )


def _build_proxy(raw: dict[str, Any]) -> ProxyConfig:
    max_spent = raw.get("max_reserve_spent")
    return ProxyConfig(
        enabled=bool(raw.get("enabled", False)),
        proxy_address=raw.get("proxy_address", ""),
        factory_address=raw.get("factory_address", ""),
        reserve_currency_address=raw.get("reserve_currency_address", ""),
        router_address=raw.get("router_address", ""),
        multicall_address=raw.get("multicall_address", ""),
        max_reserve_spent=(
            _int(max_spent, "max_reserve_spent") if max_spent not in (None, "") else MAX_UINT
        ),
    )


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    return NotificationsConfig(
        telegram=TelegramConfig(
            enabled=bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            log_bot_token=tg.get("log_bot_token", ""),
            chat_id=str(tg.get("chat_id", "")),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        keeper=_build_keeper(raw.get("keeper", {})),
        chain=_build_chain(raw.get("chain", {})),
        contract=_build_contract(raw.get("contract", {})),
        liquidator=_build_liquidator(raw.get("liquidator", {})),
        disputer=_build_disputer(raw.get("disputer", {})),
        price_feed=_build_price_feed(raw.get("price_feed", {})),
        gas=_build_gas(raw.get("gas", {})),
        proxy=_build_proxy(raw.get("proxy", {})),
        notifications=_build_notifications(raw.get("notifications", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid cross-field configuration."""
    if not cfg.chain.rpc_endpoints:
        raise ConfigurationError("At least one RPC endpoint must be configured")
    if not Web3.is_address(cfg.chain.account):
        raise ConfigurationError(f"Invalid keeper account '{cfg.chain.account}'")
    if not Web3.is_address(cfg.contract.address):
        raise ConfigurationError(
            f"Invalid financial contract address '{cfg.contract.address}'"
        )
    for sponsor in cfg.contract.sponsors:
        if not Web3.is_address(sponsor):
            raise ConfigurationError(f"Invalid sponsor address '{sponsor}'")
    if not cfg.price_feed.feed_id:
        raise ConfigurationError("price_feed.pyth.feed_id is required")

    if cfg.proxy.enabled:
        _validate_proxy(cfg.proxy)


def _validate_proxy(proxy: ProxyConfig) -> None:
    for name in ("reserve_currency_address", "router_address", "multicall_address"):
        value = getattr(proxy, name)
        if not value:
            raise ConfigurationError(f"proxy.{name} is required when proxy is enabled")
        if not Web3.is_address(value):
            raise ConfigurationError(f"proxy.{name} is not a valid address: {value}")
    if not proxy.proxy_address and not proxy.factory_address:
        raise ConfigurationError(
            "proxy.proxy_address or proxy.factory_address is required when proxy is enabled"
        )
    if proxy.max_reserve_spent <= 0:
        raise ConfigurationError("proxy.max_reserve_spent must be > 0")
