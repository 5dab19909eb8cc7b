"""Data models — all frozen (immutable)."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class MonitorState(str, Enum):
    """Lifecycle state of a wallet's position as seen by the monitor."""

    IDLE = "idle"
    LOADING = "loading"
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSING = "closing"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    LIQUIDATED = "liquidated"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not LoanStatus.ACTIVE


class HoldStatus(str, Enum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    RELEASED = "released"


class HoldOutcome(str, Enum):
    """How a pre-authorization hold is resolved."""

    CAPTURED = "captured"
    RELEASED = "released"

    @property
    def hold_status(self) -> HoldStatus:
        return HoldStatus(self.value)


# ---------------------------------------------------------------------------
# Chain-side position
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawPosition:
    """Position exactly as the contract reports it.

    Quantities are integer strings at fixed scales: collateral and supplied
    amounts at 10^18, borrowed amount at 10^6, entry price at 10^8.
    """

    collateral: str
    supplied: str
    borrowed: str
    entry_price: str
    pre_auth_expiry: int
    is_active: bool
    pre_auth_charged: bool = False
    payment_intent_id: str = ""
    customer_id: str = ""
    payment_method_id: str = ""


@dataclass(frozen=True)
class DecodedPosition:
    """RawPosition with every quantity at its decimal scale."""

    collateral: Decimal
    supplied: Decimal
    borrowed: Decimal
    entry_price: Decimal
    pre_auth_expiry: int
    is_active: bool
    pre_auth_charged: bool = False
    payment_intent_id: str = ""
    customer_id: str = ""
    payment_method_id: str = ""


@dataclass(frozen=True)
class RiskSnapshot:
    """Risk metrics for one (position, price, time) triple."""

    price: Decimal
    collateral_value_now: Decimal
    collateral_value_at_entry: Decimal
    total_exposure_now: Decimal
    total_exposure_at_entry: Decimal
    unrealized_pnl: Decimal
    unrealized_pnl_percent: Decimal
    health_factor: Decimal
    liquidation_price: Decimal
    current_ltv: Decimal
    seconds_remaining: int
    is_at_risk: bool


@dataclass(frozen=True)
class PositionView:
    """What readers of the monitor see for one wallet.

    ``position`` and ``risk`` are either both set (ACTIVE, or CLOSING while the
    close is unconfirmed) or both None.
    """

    wallet: str
    state: MonitorState = MonitorState.IDLE
    position: DecodedPosition | None = None
    risk: RiskSnapshot | None = None
    countdown: int = 0
    error: Exception | None = None
    sequence: int = 0
    updated_at: datetime | None = None


@dataclass(frozen=True)
class RefreshOutcome:
    view: PositionView
    error: Exception | None = None

    @property
    def position(self) -> DecodedPosition | None:
        return self.view.position


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: bool
    block_number: int = 0


@dataclass(frozen=True)
class CloseResult:
    receipt: TxReceipt
    view: PositionView
    # Risk snapshot taken just before the close was submitted.
    last_risk: RiskSnapshot | None = None


# ---------------------------------------------------------------------------
# Payments and loans
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentMethod:
    customer_id: str
    payment_method_id: str


@dataclass(frozen=True)
class HoldReference:
    """Processor-side handle of an authorized, uncaptured charge."""

    intent_id: str
    amount_cents: int
    currency: str = "usd"
    status: str = "requires_capture"


@dataclass(frozen=True)
class HoldResult:
    reference: HoldReference
    requested_amount: Decimal
    # Whole-currency amount actually authorized (may differ by rounding).
    authorized_amount: Decimal


@dataclass(frozen=True)
class BorrowRequest:
    wallet_address: str
    amount_usd: Decimal
    ltv_percent: Decimal
    payment_method: PaymentMethod
    asset: str = "LINK"
    entry_price: Decimal = Decimal("0")
    required_pre_auth: Decimal | None = None
    duration_minutes: int | None = None


@dataclass(frozen=True)
class ContractParams:
    """Arguments the position-opening transaction is submitted with."""

    pre_auth_amount_usd: int
    pre_auth_duration_minutes: int
    payment_intent_id: str
    customer_id: str
    payment_method_id: str


@dataclass(frozen=True)
class LoanRecord:
    id: str
    wallet_address: str
    asset: str
    borrowed_amount: Decimal
    entry_price: Decimal
    pre_auth_amount: Decimal
    pre_auth_duration_minutes: int
    status: LoanStatus
    created_at: datetime
    expires_at: datetime
    tx_hash: str = ""
    payment_intent_id: str = ""
    customer_id: str = ""
    payment_method_id: str = ""
    hold_status: HoldStatus = HoldStatus.AUTHORIZED
    pending_resolution: HoldOutcome | None = None
    pending_status: LoanStatus | None = None
    resolution_attempts: int = 0

    @property
    def hold_resolved(self) -> bool:
        return self.hold_status is not HoldStatus.AUTHORIZED


@dataclass(frozen=True)
class OpenedLoan:
    loan: LoanRecord
    contract_params: ContractParams


@dataclass(frozen=True)
class CreditSummary:
    active_loans: int = 0
    closed_loans: int = 0
    liquidated_loans: int = 0
    failed_loans: int = 0
    total_borrowed: Decimal = Decimal("0")
    total_held: Decimal = Decimal("0")


@dataclass(frozen=True)
class LoanCloseResult:
    close: CloseResult
    # None when the wallet has no active loan record.
    loan: LoanRecord | None = None

    @property
    def resolved(self) -> bool:
        return self.loan is not None and self.loan.hold_resolved


@dataclass(frozen=True)
class ReconcileReport:
    checked: int = 0
    resolved: int = 0
    still_pending: int = 0
    closed_on_chain: int = 0
    expiry_updated: int = 0
    read_errors: int = 0
