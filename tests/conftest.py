"""Shared test fixtures, fakes and sample data."""
from __future__ import annotations

import textwrap
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

import pytest

from creditshaft.config import (
    AppConfig,
    ChainConfig,
    HoldConfig,
    MonitorConfig,
    NotificationsConfig,
    PaymentConfig,
    PriceOracleConfig,
    PythConfig,
    StripeConfig,
    TelegramConfig,
    WalletConfig,
)
from creditshaft.errors import ChainError, OracleError, PaymentDeclined
from creditshaft.models import HoldReference, RawPosition, TxReceipt
from creditshaft.storage import InMemoryLoanStore

WALLET = "0x" + "ab" * 20
OTHER_WALLET = "0x" + "cd" * 20
NOW = 1_700_000_000
LINK_FEED = "0x8ac0c70fff57e9aefdf5edf44b51d62c2d433653cbb2cf5cc06bb115af04d221"


# ---------------------------------------------------------------------------
# Fakes for the external collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeChain:
    """ChainClient holding one position per wallet."""

    def __init__(self) -> None:
        self.positions: dict[str, RawPosition | None] = {}
        self.read_errors: list[Exception] = []
        self.close_error: Exception | None = None
        # Whether a successful close removes the position on-chain.
        self.close_clears = True
        self.reads = 0
        self.closed: list[str] = []

    async def get_position(self, wallet_address: str) -> RawPosition | None:
        self.reads += 1
        if self.read_errors:
            raise self.read_errors.pop(0)
        return self.positions.get(wallet_address)

    async def close_position(self, wallet_address: str) -> TxReceipt:
        self.closed.append(wallet_address)
        if self.close_error is not None:
            raise self.close_error
        position = self.positions.get(wallet_address)
        if self.close_clears and position is not None:
            self.positions[wallet_address] = replace(position, is_active=False)
        return TxReceipt(tx_hash=f"0xclose{len(self.closed)}", status=True, block_number=7)


class FakeOracle:
    def __init__(self, price: str = "1200000000") -> None:
        self.price = price
        self.error: Exception | None = None
        self.requested: list[str] = []

    async def get_price(self, asset: str) -> str:
        self.requested.append(asset)
        if self.error is not None:
            raise self.error
        return self.price


class FakePayment:
    """PaymentClient that records every call."""

    def __init__(self) -> None:
        self.created: list[dict] = []
        self.captured: list[tuple[str, str | None]] = []
        self.released: list[tuple[str, str | None]] = []
        # Raised, in order, by the next capture/release calls.
        self.failures: list[Exception] = []
        self.hold_status = "requires_capture"

    async def create_hold(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        description: str = "",
    ) -> HoldReference:
        self.created.append(
            {
                "amount_cents": amount_cents,
                "currency": currency,
                "customer_id": customer_id,
                "payment_method_id": payment_method_id,
                "description": description,
            }
        )
        if self.hold_status != "requires_capture":
            raise PaymentDeclined(f"Payment failed: {self.hold_status}", status=self.hold_status)
        return HoldReference(
            intent_id=f"pi_{len(self.created)}",
            amount_cents=amount_cents,
            currency=currency,
        )

    async def capture_hold(
        self, ref: HoldReference, idempotency_key: str | None = None
    ) -> HoldReference:
        if self.failures:
            raise self.failures.pop(0)
        self.captured.append((ref.intent_id, idempotency_key))
        return replace(ref, status="succeeded")

    async def release_hold(
        self, ref: HoldReference, idempotency_key: str | None = None
    ) -> HoldReference:
        if self.failures:
            raise self.failures.pop(0)
        self.released.append((ref.intent_id, idempotency_key))
        return replace(ref, status="canceled")


class RecordingNotifier:
    def __init__(self) -> None:
        self.alerts: list[tuple[str, str]] = []
        self.logs: list[str] = []

    async def send_alert(self, message: str, subject: str = "") -> bool:
        self.alerts.append((message, subject))
        return True

    async def send_log(self, message: str, silent: bool = True) -> bool:
        self.logs.append(message)
        return True


async def no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Position fixtures
# ---------------------------------------------------------------------------


def make_raw_position(**overrides) -> RawPosition:
    """50 LINK collateral, 100 LINK supplied, 800 USD borrowed at 10.00."""
    values = dict(
        collateral=str(50 * 10**18),
        supplied=str(100 * 10**18),
        borrowed=str(800 * 10**6),
        entry_price=str(10 * 10**8),
        pre_auth_expiry=NOW + 3600,
        is_active=True,
        pre_auth_charged=False,
        payment_intent_id="pi_1",
        customer_id="cus_1",
        payment_method_id="pm_1",
    )
    values.update(overrides)
    return RawPosition(**values)


@pytest.fixture()
def raw_position() -> RawPosition:
    return make_raw_position()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def chain(raw_position: RawPosition) -> FakeChain:
    fake = FakeChain()
    fake.positions[WALLET] = raw_position
    return fake


@pytest.fixture()
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture()
def payment() -> FakePayment:
    return FakePayment()


@pytest.fixture()
def store() -> InMemoryLoanStore:
    return InMemoryLoanStore()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def chain_error() -> ChainError:
    return ChainError("RPC Error in eth_call: timeout")


@pytest.fixture()
def oracle_error() -> OracleError:
    return OracleError("Error fetching prices from Pyth: HTTP 503")


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_chain_config() -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=("https://rpc1.example.com", "https://rpc2.example.com"),
        rpc_timeout=10,
        contract_address="0x" + "11" * 20,
        get_position_selector="0x12345678",
        close_position_selector="0x9abcdef0",
        receipt_poll_interval_seconds=0,
        receipt_timeout_seconds=5,
    )


@pytest.fixture()
def sample_pyth_config() -> PythConfig:
    return PythConfig(
        hermes_url="https://hermes.example.com/v2/updates/price/latest",
        feeds={"LINK": LINK_FEED},
    )


@pytest.fixture()
def sample_hold_config() -> HoldConfig:
    return HoldConfig(
        default_ltv_percent=Decimal("50"),
        default_duration_minutes=7 * 24 * 60,
        max_attempts=3,
        backoff_base_seconds=0.5,
        backoff_max_seconds=30.0,
    )


@pytest.fixture()
def sample_app_config(
    sample_chain_config: ChainConfig,
    sample_pyth_config: PythConfig,
    sample_hold_config: HoldConfig,
) -> AppConfig:
    return AppConfig(
        monitor=MonitorConfig(close_confirm_attempts=2, close_confirm_delay_seconds=0),
        wallets=(WalletConfig(label="test-wallet", address=WALLET),),
        chain=sample_chain_config,
        price_oracle=PriceOracleConfig(provider="pyth", pyth=sample_pyth_config),
        payment=PaymentConfig(stripe=StripeConfig(api_key="sk_test_123")),
        hold=sample_hold_config,
        notifications=NotificationsConfig(
            telegram=TelegramConfig(
                enabled=True,
                alert_bot_token="fake-alert-token",
                log_bot_token="fake-log-token",
                chat_id="12345",
            ),
        ),
    )


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    monitor:
      refresh_interval_seconds: 10
      tick_seconds: 1
      close_confirm_attempts: 4
      asset: LINK
    wallets:
      - label: test-wallet
        address: "0xabababababababababababababababababababab"
    chain:
      rpc_endpoints: ["https://rpc.example.com"]
      rpc_timeout: 10
      contract_address: "0x1111111111111111111111111111111111111111"
      get_position_selector: "0x12345678"
      close_position_selector: "0x9abcdef0"
    price_oracle:
      provider: pyth
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {LINK: "aaa"}
    payment:
      stripe:
        api_key: "sk_test_123"
    hold:
      default_ltv_percent: 40
      max_attempts: 2
    storage:
      path: ""
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


# ---------------------------------------------------------------------------
# ABI encoding of the position getter's return data
# ---------------------------------------------------------------------------


def _abi_word(value: int) -> bytes:
    return value.to_bytes(32, "big")


def _abi_string(value: str) -> bytes:
    data = value.encode("utf-8")
    return _abi_word(len(data)) + data + b"\x00" * (-len(data) % 32)


def encode_position_result(raw: RawPosition) -> str:
    """ABI-encode ``raw`` the way the contract's position getter returns it."""
    tails = [
        _abi_string(raw.payment_intent_id),
        _abi_string(raw.customer_id),
        _abi_string(raw.payment_method_id),
    ]
    offsets = []
    offset = 13 * 32
    for tail in tails:
        offsets.append(offset)
        offset += len(tail)

    head = [
        int(raw.collateral),
        2,  # leverage ratio
        int(raw.borrowed),
        int(raw.supplied),
        int(raw.entry_price),
        1600,  # pre-auth amount
        NOW - 60,  # open timestamp
        raw.pre_auth_expiry,
        int(raw.is_active),
        int(raw.pre_auth_charged),
        *offsets,
    ]
    data = _abi_word(32) + b"".join(_abi_word(v) for v in head) + b"".join(tails)
    return "0x" + data.hex()
