"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from decimal import Decimal
from pathlib import Path

import pytest

from keeper.config import (
    AppConfig,
    ChainConfig,
    ContractConfig,
    DisputerConfig,
    GasConfig,
    KeeperConfig,
    LiquidatorConfig,
    NotificationsConfig,
    ProxyConfig,
    PythConfig,
    TelegramConfig,
)
from keeper.models import LiquidationRecord, LiquidationState, Position
from tests.fakes import (
    ACCOUNT,
    CONTRACT,
    FACTORY,
    MULTICALL,
    OTHER,
    PROXY,
    RESERVE,
    ROUTER,
    SPONSOR_A,
    SPONSOR_B,
    FakeLedger,
)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_chain_config() -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=("https://rpc1.example.com", "https://rpc2.example.com"),
        rpc_timeout=10,
        account=ACCOUNT,
        receipt_timeout=5,
    )


@pytest.fixture()
def sample_proxy_config() -> ProxyConfig:
    return ProxyConfig(
        enabled=True,
        proxy_address=PROXY,
        factory_address=FACTORY,
        reserve_currency_address=RESERVE,
        router_address=ROUTER,
        multicall_address=MULTICALL,
        max_reserve_spent=1_000 * 10**18,
    )


@pytest.fixture()
def sample_app_config(sample_chain_config: ChainConfig) -> AppConfig:
    return AppConfig(
        keeper=KeeperConfig(polling_interval=0, error_retries=1, error_retries_timeout=0),
        chain=sample_chain_config,
        contract=ContractConfig(address=CONTRACT, sponsors=(SPONSOR_A, SPONSOR_B)),
        liquidator=LiquidatorConfig(cr_threshold=Decimal(0)),
        disputer=DisputerConfig(dispute_price_error=Decimal("0.05"), dispute_delay=60),
        price_feed=PythConfig(hermes_url="https://hermes.example.com", feed_id="ab" * 32),
        gas=GasConfig(update_interval=60, multiplier=Decimal(1)),
        notifications=NotificationsConfig(
            telegram=TelegramConfig(
                enabled=True,
                alert_bot_token="fake-alert-token",
                log_bot_token="fake-log-token",
                chat_id="12345",
            ),
        ),
    )


@pytest.fixture()
def fake_ledger() -> FakeLedger:
    return FakeLedger()


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def healthy_position() -> Position:
    return Position(sponsor=SPONSOR_A, collateral=Decimal(125), debt=Decimal(100))


@pytest.fixture()
def pre_dispute_liquidation() -> LiquidationRecord:
    return LiquidationRecord(
        sponsor=SPONSOR_B,
        liquidation_id=0,
        liquidator=OTHER,
        locked_collateral=Decimal(100),
        tokens_outstanding=Decimal(100),
        liquidation_time=10_000,
        state=LiquidationState.PRE_DISPUTE,
        liquidated_price=Decimal("1.0"),
        final_fee=Decimal(1),
    )


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent(f"""\
    keeper:
      polling_interval: 30
      error_retries: 5
      error_retries_timeout: 2
      dispute: false
    chain:
      rpc_endpoints: ["https://rpc.example.com"]
      rpc_timeout: 10
      account: "{ACCOUNT}"
      average_block_time: 12
    contract:
      address: "{CONTRACT}"
      contract_type: Perpetual
      starting_block: 100
      ending_block: 200
      sponsors: ["{SPONSOR_A}"]
    liquidator:
      cr_threshold: 0.02
      liquidation_deadline: 600
      override_price: "1.5"
    disputer:
      dispute_price_error: 0.1
      dispute_delay: 120
    price_feed:
      pyth:
        hermes_url: "https://hermes.example.com"
        feed_id: "0xfeed"
        twap_lookback: 3600
        max_price_age: 120
    gas:
      update_interval: 30
      multiplier: 1.25
    proxy:
      enabled: false
    notifications:
      telegram:
        enabled: true
        alert_bot_token: "tok1"
        log_bot_token: "tok2"
        chat_id: 999
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file
