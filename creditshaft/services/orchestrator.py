"""Pre-authorization orchestration — hold creation, resolution and reconciliation."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable, Iterable, TypeVar

from ..config import HoldConfig
from ..errors import (
    ChainError,
    Conflict,
    HoldResolutionPending,
    PaymentDeclined,
    ProcessorError,
)
from ..interfaces.chain import ChainClient
from ..interfaces.loan_store import LoanStore
from ..interfaces.notifier import Notifier
from ..interfaces.payment import PaymentClient
from ..models import (
    BorrowRequest,
    ContractParams,
    HoldOutcome,
    HoldReference,
    HoldResult,
    LoanCloseResult,
    LoanRecord,
    LoanStatus,
    OpenedLoan,
    PaymentMethod,
    RawPosition,
    ReconcileReport,
)
from ..risk import choose_outcome
from .monitor import PositionMonitor

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CENT = Decimal("0.01")


def required_hold(
    borrow_amount_usd: Decimal,
    ltv_percent: Decimal,
    override: Decimal | None = None,
) -> Decimal:
    """Hold needed to borrow ``borrow_amount_usd`` at ``ltv_percent``.

    required = ceil(amount / (ltv / 100)), unless ``override`` is given.
    """
    if override is not None:
        if override <= 0:
            raise ValueError(f"Pre-authorization override must be positive, got {override}")
        return override
    if borrow_amount_usd <= 0:
        raise ValueError(f"Borrow amount must be positive, got {borrow_amount_usd}")
    if not (0 < ltv_percent <= 100):
        raise ValueError(f"LTV must be in (0, 100], got {ltv_percent}")
    return (borrow_amount_usd / (ltv_percent / 100)).to_integral_value(ROUND_CEILING)


def to_cents(amount: Decimal) -> int:
    return int((amount / _CENT).to_integral_value(ROUND_HALF_UP))


def _closure_outcome(raw: RawPosition | None) -> tuple[HoldOutcome, LoanStatus]:
    """How to settle a hold whose position is no longer active on-chain."""
    if raw is not None and raw.pre_auth_charged:
        return HoldOutcome.CAPTURED, LoanStatus.LIQUIDATED
    return HoldOutcome.RELEASED, LoanStatus.CLOSED


class PreAuthOrchestrator:
    """Owns the off-chain hold behind each loan.

    A hold is resolved (captured or released) exactly once. Resolution for a
    given loan is serialized by a per-loan lock; across processes the store's
    compare-and-swap status transition decides the winner.
    """

    def __init__(
        self,
        payment: PaymentClient,
        store: LoanStore,
        chain: ChainClient,
        config: HoldConfig | None = None,
        monitor: PositionMonitor | None = None,
        notifiers: Iterable[Notifier] = (),
        currency: str = "usd",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._payment = payment
        self._store = store
        self._chain = chain
        self._config = config or HoldConfig()
        self._monitor = monitor
        self._notifiers = list(notifiers)
        self._currency = currency
        self._clock = clock
        self._sleep = sleep
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------------
    # Hold creation
    # ------------------------------------------------------------------

    async def create_hold(
        self,
        borrow_amount_usd: Decimal,
        ltv_percent: Decimal,
        payment_method: PaymentMethod,
        override: Decimal | None = None,
        description: str = "",
    ) -> HoldResult:
        """Authorize (without capturing) the hold backing a borrow.

        Not retried: a retried authorization could leave two live holds.

        Raises:
            PaymentDeclined: the charge is not left capturable.
            ProcessorError: the processor could not be reached.
        """
        amount = required_hold(borrow_amount_usd, ltv_percent, override)
        ref = await self._payment.create_hold(
            to_cents(amount),
            self._currency,
            payment_method.customer_id,
            payment_method.payment_method_id,
            description,
        )
        authorized = Decimal(ref.amount_cents) * _CENT
        logger.info(
            "Hold %s authorized: requested %s, authorized %s %s",
            ref.intent_id, amount, authorized, self._currency.upper(),
        )
        return HoldResult(reference=ref, requested_amount=amount, authorized_amount=authorized)

    async def open_loan(self, request: BorrowRequest) -> OpenedLoan:
        """Authorize the hold for a borrow request and record the loan."""
        if not request.wallet_address:
            raise ValueError("Wallet address is required")

        loan_id = f"loan_{uuid.uuid4().hex[:12]}"
        duration = request.duration_minutes or self._config.default_duration_minutes
        hold = await self.create_hold(
            request.amount_usd,
            request.ltv_percent,
            request.payment_method,
            override=request.required_pre_auth,
            description=f"CreditShaft loan {loan_id}",
        )

        created_at = self._now()
        loan = await self._store.create(
            LoanRecord(
                id=loan_id,
                wallet_address=request.wallet_address,
                asset=request.asset,
                borrowed_amount=request.amount_usd,
                entry_price=request.entry_price,
                pre_auth_amount=hold.authorized_amount,
                pre_auth_duration_minutes=duration,
                status=LoanStatus.ACTIVE,
                created_at=created_at,
                expires_at=created_at + timedelta(minutes=duration),
                payment_intent_id=hold.reference.intent_id,
                customer_id=request.payment_method.customer_id,
                payment_method_id=request.payment_method.payment_method_id,
            )
        )
        params = ContractParams(
            pre_auth_amount_usd=int(hold.authorized_amount.to_integral_value(ROUND_HALF_UP)),
            pre_auth_duration_minutes=duration,
            payment_intent_id=hold.reference.intent_id,
            customer_id=request.payment_method.customer_id,
            payment_method_id=request.payment_method.payment_method_id,
        )
        return OpenedLoan(loan=loan, contract_params=params)

    async def attach_transaction(self, loan_id: str, tx_hash: str) -> LoanRecord:
        """Record the hash of the transaction that opened the position."""
        async with self._locks[loan_id]:
            loan = await self._store.get(loan_id)
            return await self._store.save(replace(loan, tx_hash=tx_hash))

    async def _adopt_expiry(self, loan_id: str, expires_at: datetime) -> bool:
        """Record the on-chain expiry unless the loan moved on meanwhile."""
        async with self._locks[loan_id]:
            current = await self._store.get(loan_id)
            if (
                current.status is not LoanStatus.ACTIVE
                or current.hold_resolved
                or current.pending_resolution is not None
                or current.expires_at == expires_at
            ):
                return False
            try:
                await self._store.save(replace(current, expires_at=expires_at))
            except Conflict as e:
                logger.debug("Expiry of %s not updated: %s", loan_id, e)
                return False
            return True

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _with_retries(self, description: str, call: Callable[[], Awaitable[T]]) -> T:
        attempts = self._config.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except ProcessorError as e:
                if not e.retryable or attempt == attempts:
                    raise
                delay = min(
                    self._config.backoff_base_seconds * 2 ** (attempt - 1),
                    self._config.backoff_max_seconds,
                )
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    description, attempt, attempts, delay, e,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    async def _finalize_status(self, loan: LoanRecord, status: LoanStatus) -> LoanRecord:
        try:
            return await self._store.update_status(loan.id, status)
        except Conflict as e:
            logger.debug("Status of %s already settled: %s", loan.id, e)
            return await self._store.get(loan.id)

    async def resolve_hold(
        self,
        loan_id: str,
        outcome: HoldOutcome,
        final_status: LoanStatus = LoanStatus.CLOSED,
    ) -> LoanRecord:
        """Capture or release the loan's hold, then settle the loan status.

        Idempotent: an already-resolved hold is left alone. A resolution that
        was started and failed is finished with its original outcome.

        Raises:
            HoldResolutionPending: the processor call kept failing; the loan
                keeps its pending-resolution marker for the reconciliation pass.
        """
        async with self._locks[loan_id]:
            loan = await self._store.get(loan_id)

            if loan.hold_resolved:
                logger.debug("Hold for %s already %s", loan.id, loan.hold_status.value)
                if loan.status is LoanStatus.ACTIVE:
                    loan = await self._finalize_status(loan, loan.pending_status or final_status)
                return loan

            if loan.pending_resolution is not None and loan.pending_resolution is not outcome:
                logger.warning(
                    "Loan %s already has a pending %s; ignoring %s",
                    loan.id, loan.pending_resolution.value, outcome.value,
                )
                outcome = loan.pending_resolution
                final_status = loan.pending_status or final_status

            loan = await self._store.save(
                replace(loan, pending_resolution=outcome, pending_status=final_status)
            )

            ref = HoldReference(
                intent_id=loan.payment_intent_id,
                amount_cents=to_cents(loan.pre_auth_amount),
                currency=self._currency,
            )
            key = f"{loan.id}-{outcome.value}"
            if outcome is HoldOutcome.CAPTURED:
                call = lambda: self._payment.capture_hold(ref, idempotency_key=key)  # noqa: E731
            else:
                call = lambda: self._payment.release_hold(ref, idempotency_key=key)  # noqa: E731

            try:
                await self._with_retries(f"{outcome.value} hold for {loan.id}", call)
            except (ProcessorError, PaymentDeclined) as e:
                attempts = loan.resolution_attempts + 1
                await self._store.save(replace(loan, resolution_attempts=attempts))
                message = (
                    f"Hold for loan {loan.id} ({loan.wallet_address}) could not be "
                    f"{outcome.value}; requires operator attention: {e}"
                )
                logger.error(message)
                await self._notify_operator(message)
                raise HoldResolutionPending(loan.id, outcome.value, attempts) from e

            loan = await self._store.save(
                replace(
                    loan,
                    hold_status=outcome.hold_status,
                    pending_resolution=None,
                    pending_status=None,
                )
            )
            logger.info("Hold for loan %s %s", loan.id, outcome.value)
            loan = await self._finalize_status(loan, final_status)

        await self._send_log(
            f"Loan {loan.id} ({loan.wallet_address}): hold {outcome.value}, "
            f"loan {loan.status.value}"
        )
        return loan

    async def on_expiry(self, loan: LoanRecord) -> LoanRecord:
        """Treat an expired, unresolved hold as a liquidation."""
        current = await self._store.get(loan.id)
        if current.status is not LoanStatus.ACTIVE or current.hold_resolved:
            logger.debug("Expiry for %s ignored: already %s", loan.id, current.status.value)
            return current
        logger.info("Hold for loan %s expired without close; liquidating", loan.id)
        return await self.resolve_hold(loan.id, HoldOutcome.CAPTURED, LoanStatus.LIQUIDATED)

    async def _notify_operator(self, message: str) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_alert(message, subject="Operator attention required")
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

    async def _send_log(self, message: str) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_log(message)
            except Exception as e:
                logger.error("Notifier send_log failed: %s", e)

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def _active_loan(self, wallet: str) -> LoanRecord | None:
        loans = [
            loan
            for loan in await self._store.get_by_wallet(wallet)
            if loan.status is LoanStatus.ACTIVE
        ]
        return max(loans, key=lambda loan: loan.created_at, default=None)

    async def close_position(self, wallet: str) -> LoanCloseResult | None:
        """Close the wallet's position on-chain, then resolve its hold.

        A close that succeeds on-chain is final even if the hold cannot be
        resolved yet; the loan then stays active with a pending marker.
        Returns None when the wallet disconnected mid-close.
        """
        if self._monitor is None:
            raise RuntimeError("close_position requires a PositionMonitor")

        close = await self._monitor.request_close(wallet)
        if close is None:
            return None

        loan = await self._active_loan(wallet)
        if loan is None:
            logger.warning("Closed position for %s has no active loan record", wallet)
            return LoanCloseResult(close=close)

        outcome = choose_outcome(close.last_risk, loan.pre_auth_amount)
        try:
            loan = await self.resolve_hold(loan.id, outcome, LoanStatus.CLOSED)
        except HoldResolutionPending as e:
            logger.warning("Close of %s final on-chain, hold pending: %s", wallet, e)
            loan = await self._store.get(loan.id)
        return LoanCloseResult(close=close, loan=loan)

    async def check_expiries(self) -> list[LoanRecord]:
        """Settle loans whose hold expired, after checking the chain.

        A position that is still open past its on-chain expiry is liquidated.
        One that is already gone is settled as a closure instead, so an
        uncharged hold is released rather than captured.
        """
        now = self._now()
        expired: list[LoanRecord] = []
        for loan in await self._store.list_by_status(LoanStatus.ACTIVE):
            if loan.hold_resolved or loan.pending_resolution or loan.expires_at > now:
                continue

            try:
                raw = await self._chain.get_position(loan.wallet_address)
            except ChainError as e:
                logger.warning("Expiry check for %s deferred: %s", loan.id, e)
                continue

            if raw is None or not raw.is_active:
                if not loan.tx_hash:
                    logger.debug("Expiry check for %s skipped: no opening transaction", loan.id)
                    continue
                outcome, status = _closure_outcome(raw)
                logger.info(
                    "Loan %s expired with its position gone; resolving hold (%s)",
                    loan.id, outcome.value,
                )
                try:
                    expired.append(await self.resolve_hold(loan.id, outcome, status))
                except HoldResolutionPending:
                    pass
                continue

            chain_expiry = datetime.fromtimestamp(raw.pre_auth_expiry, tz=timezone.utc)
            if chain_expiry > now:
                if await self._adopt_expiry(loan.id, chain_expiry):
                    logger.info("Loan %s expiry extended on-chain to %s", loan.id, chain_expiry)
                continue

            try:
                expired.append(await self.on_expiry(loan))
            except HoldResolutionPending:
                continue
        return expired

    async def reconcile(self) -> ReconcileReport:
        """Bring active loans in line with the processor and the chain.

        Retries pending resolutions, finishes loans whose position is gone
        on-chain, and adopts the on-chain pre-authorization expiry.
        """
        checked = resolved = pending = closed_on_chain = expiry_updated = read_errors = 0

        for loan in await self._store.list_by_status(LoanStatus.ACTIVE):
            checked += 1

            if loan.pending_resolution is not None or loan.hold_resolved:
                outcome = loan.pending_resolution or HoldOutcome(loan.hold_status.value)
                try:
                    await self.resolve_hold(
                        loan.id, outcome, loan.pending_status or LoanStatus.CLOSED
                    )
                    resolved += 1
                except HoldResolutionPending:
                    pending += 1
                continue

            try:
                raw = await self._chain.get_position(loan.wallet_address)
            except ChainError as e:
                logger.warning("Reconcile read for %s failed: %s", loan.id, e)
                read_errors += 1
                continue

            if raw is None or not raw.is_active:
                if not loan.tx_hash:
                    # Position not opened on-chain yet.
                    continue
                outcome, status = _closure_outcome(raw)
                logger.info("Loan %s closed on-chain; resolving hold (%s)", loan.id, outcome.value)
                closed_on_chain += 1
                try:
                    await self.resolve_hold(loan.id, outcome, status)
                    resolved += 1
                except HoldResolutionPending:
                    pending += 1
                continue

            chain_expiry = datetime.fromtimestamp(raw.pre_auth_expiry, tz=timezone.utc)
            if chain_expiry != loan.expires_at and await self._adopt_expiry(loan.id, chain_expiry):
                expiry_updated += 1

        report = ReconcileReport(
            checked=checked,
            resolved=resolved,
            still_pending=pending,
            closed_on_chain=closed_on_chain,
            expiry_updated=expiry_updated,
            read_errors=read_errors,
        )
        logger.info("Reconcile pass: %s", report)
        return report
