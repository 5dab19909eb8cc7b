"""Pure risk calculations for leveraged positions — no I/O, no state."""
from __future__ import annotations

from decimal import Decimal

from ..models import DecodedPosition, HoldOutcome, RiskSnapshot

LIQUIDATION_THRESHOLD = Decimal("0.85")
AT_RISK_HEALTH_FACTOR = Decimal("1.10")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def _ratio(numerator: Decimal, denominator: Decimal) -> Decimal:
    """numerator / denominator, or 0 when the denominator is 0."""
    if denominator == 0:
        return _ZERO
    return numerator / denominator


def calc_health_factor(total_exposure: Decimal, borrowed: Decimal) -> Decimal:
    """health_factor = (exposure * liquidation_threshold) / borrowed"""
    return _ratio(total_exposure * LIQUIDATION_THRESHOLD, borrowed)


def calc_liquidation_price(borrowed: Decimal, supplied: Decimal) -> Decimal:
    """Price at which the health factor reaches 1.0."""
    return _ratio(borrowed, supplied * LIQUIDATION_THRESHOLD)


def calc_ltv(borrowed: Decimal, total_exposure: Decimal) -> Decimal:
    """Loan-to-value as a percentage."""
    return _ratio(borrowed, total_exposure) * _HUNDRED


def compute_risk(
    decoded: DecodedPosition, current_price: Decimal, now: int
) -> RiskSnapshot:
    """Derive the risk snapshot for a position at ``current_price``.

    Never raises for valid decoded input. A non-positive price is treated as an
    unusable feed: price-dependent fields are 0 and the snapshot is at risk.
    """
    collateral_at_entry = decoded.collateral * decoded.entry_price
    exposure_at_entry = decoded.supplied * decoded.entry_price
    liquidation_price = calc_liquidation_price(decoded.borrowed, decoded.supplied)
    seconds_remaining = decoded.pre_auth_expiry - now

    if current_price <= 0:
        return RiskSnapshot(
            price=current_price,
            collateral_value_now=_ZERO,
            collateral_value_at_entry=collateral_at_entry,
            total_exposure_now=_ZERO,
            total_exposure_at_entry=exposure_at_entry,
            unrealized_pnl=_ZERO,
            unrealized_pnl_percent=_ZERO,
            health_factor=_ZERO,
            liquidation_price=liquidation_price,
            current_ltv=_ZERO,
            seconds_remaining=seconds_remaining,
            is_at_risk=True,
        )

    collateral_now = decoded.collateral * current_price
    exposure_now = decoded.supplied * current_price
    # Borrowed amount is constant, so P&L is the change in exposure value.
    pnl = exposure_now - exposure_at_entry
    health_factor = calc_health_factor(exposure_now, decoded.borrowed)

    return RiskSnapshot(
        price=current_price,
        collateral_value_now=collateral_now,
        collateral_value_at_entry=collateral_at_entry,
        total_exposure_now=exposure_now,
        total_exposure_at_entry=exposure_at_entry,
        unrealized_pnl=pnl,
        unrealized_pnl_percent=_ratio(pnl, collateral_at_entry) * _HUNDRED,
        health_factor=health_factor,
        liquidation_price=liquidation_price,
        current_ltv=calc_ltv(decoded.borrowed, exposure_now),
        seconds_remaining=seconds_remaining,
        is_at_risk=health_factor < AT_RISK_HEALTH_FACTOR,
    )


def choose_outcome(risk: RiskSnapshot | None, hold_amount: Decimal) -> HoldOutcome:
    """Capture the hold only when a loss exceeds what it covers."""
    if risk is not None and -risk.unrealized_pnl > hold_amount:
        return HoldOutcome.CAPTURED
    return HoldOutcome.RELEASED


def display_seconds(risk: RiskSnapshot) -> int:
    return max(0, risk.seconds_remaining)
