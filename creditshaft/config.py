"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MonitorConfig:
    refresh_interval_seconds: float = 15.0
    tick_seconds: float = 1.0
    close_confirm_attempts: int = 3
    close_confirm_delay_seconds: float = 2.0
    asset: str = "LINK"


@dataclass(frozen=True)
class WalletConfig:
    label: str = ""
    address: str = ""


@dataclass(frozen=True)
class ChainConfig:
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30
    contract_address: str = ""
    get_position_selector: str = ""
    close_position_selector: str = ""
    receipt_poll_interval_seconds: float = 2.0
    receipt_timeout_seconds: float = 120.0


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "pyth"
    pyth: PythConfig = field(default_factory=PythConfig)


@dataclass(frozen=True)
class StripeConfig:
    api_key: str = ""
    api_base: str = "https://api.stripe.com/v1"
    currency: str = "usd"
    timeout: int = 30


@dataclass(frozen=True)
class PaymentConfig:
    provider: str = "stripe"
    stripe: StripeConfig = field(default_factory=StripeConfig)


@dataclass(frozen=True)
class HoldConfig:
    default_ltv_percent: Decimal = Decimal("50")
    default_duration_minutes: int = 7 * 24 * 60
    max_attempts: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    expiry_check_interval_seconds: float = 30.0
    reconcile_interval_seconds: float = 60.0


@dataclass(frozen=True)
class StorageConfig:
    path: str = ""


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
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    wallets: tuple[WalletConfig, ...] = ()
    chain: ChainConfig = field(default_factory=ChainConfig)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    payment: PaymentConfig = field(default_factory=PaymentConfig)
    hold: HoldConfig = field(default_factory=HoldConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")
_SELECTOR_RE = re.compile(r"0x[0-9a-fA-F]{8}")


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


def _build_monitor(raw: dict[str, Any]) -> MonitorConfig:
    return MonitorConfig(
        refresh_interval_seconds=float(raw.get("refresh_interval_seconds", 15.0)),
        tick_seconds=float(raw.get("tick_seconds", 1.0)),
        close_confirm_attempts=int(raw.get("close_confirm_attempts", 3)),
        close_confirm_delay_seconds=float(raw.get("close_confirm_delay_seconds", 2.0)),
        asset=str(raw.get("asset", "LINK")),
    )


def _build_wallets(raw: list[dict[str, Any]]) -> tuple[WalletConfig, ...]:
    return tuple(
        WalletConfig(label=w.get("label", ""), address=w.get("address", ""))
        for w in raw
    )


def _build_chain(raw: dict[str, Any]) -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=tuple(raw.get("rpc_endpoints", [])),
        rpc_timeout=int(raw.get("rpc_timeout", 30)),
        contract_address=raw.get("contract_address", ""),
        get_position_selector=raw.get("get_position_selector", ""),
        close_position_selector=raw.get("close_position_selector", ""),
        receipt_poll_interval_seconds=float(
            raw.get("receipt_poll_interval_seconds", 2.0)
        ),
        receipt_timeout_seconds=float(raw.get("receipt_timeout_seconds", 120.0)),
    )


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "pyth"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
        ),
    )


def _build_payment(raw: dict[str, Any]) -> PaymentConfig:
    st = raw.get("stripe", {})
    return PaymentConfig(
        provider=raw.get("provider", "stripe"),
        stripe=StripeConfig(
            api_key=st.get("api_key", ""),
            api_base=st.get("api_base", StripeConfig.api_base),
            currency=st.get("currency", "usd"),
            timeout=int(st.get("timeout", 30)),
        ),
    )


def _build_hold(raw: dict[str, Any]) -> HoldConfig:
    return HoldConfig(
        default_ltv_percent=Decimal(str(raw.get("default_ltv_percent", "50"))),
        default_duration_minutes=int(raw.get("default_duration_minutes", 7 * 24 * 60)),
        max_attempts=int(raw.get("max_attempts", 5)),
        backoff_base_seconds=float(raw.get("backoff_base_seconds", 0.5)),
        backoff_max_seconds=float(raw.get("backoff_max_seconds", 30.0)),
        expiry_check_interval_seconds=float(
            raw.get("expiry_check_interval_seconds", 30.0)
        ),
        reconcile_interval_seconds=float(raw.get("reconcile_interval_seconds", 60.0)),
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
            project root (one level up from the package).
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
        monitor=_build_monitor(raw.get("monitor", {})),
        wallets=_build_wallets(raw.get("wallets", [])),
        chain=_build_chain(raw.get("chain", {})),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        payment=_build_payment(raw.get("payment", {})),
        hold=_build_hold(raw.get("hold", {})),
        storage=StorageConfig(path=raw.get("storage", {}).get("path", "")),
        notifications=_build_notifications(raw.get("notifications", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.wallets:
        raise ValueError("At least one wallet must be configured")

    for wallet in cfg.wallets:
        if not wallet.address:
            raise ValueError(f"Wallet '{wallet.label}' has no address")

    chain = cfg.chain
    if not chain.rpc_endpoints:
        raise ValueError("At least one RPC endpoint must be configured")
    if not chain.contract_address:
        raise ValueError("Chain contract_address is required")
    for name in ("get_position_selector", "close_position_selector"):
        selector = getattr(chain, name)
        if not _SELECTOR_RE.fullmatch(selector):
            raise ValueError(f"Chain {name} must be a 4-byte hex selector, got '{selector}'")

    if cfg.price_oracle.provider != "pyth":
        raise ValueError(f"Unsupported price_oracle.provider '{cfg.price_oracle.provider}'")
    if cfg.payment.provider != "stripe":
        raise ValueError(f"Unsupported payment.provider '{cfg.payment.provider}'")

    if cfg.monitor.asset not in cfg.price_oracle.pyth.feeds:
        raise ValueError(f"No price feed configured for asset '{cfg.monitor.asset}'")

    hold = cfg.hold
    if not (0 < hold.default_ltv_percent <= 100):
        raise ValueError("hold.default_ltv_percent must be in (0, 100]")
    if hold.max_attempts < 1:
        raise ValueError("hold.max_attempts must be at least 1")

    for name, value in (
        ("monitor.refresh_interval_seconds", cfg.monitor.refresh_interval_seconds),
        ("monitor.tick_seconds", cfg.monitor.tick_seconds),
        ("hold.expiry_check_interval_seconds", hold.expiry_check_interval_seconds),
        ("hold.reconcile_interval_seconds", hold.reconcile_interval_seconds),
    ):
        if value <= 0:
            raise ValueError(f"{name} must be positive")
