"""In-process loan store with atomic status transitions."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from decimal import Decimal

from ..errors import Conflict, NotFound
from ..models import CreditSummary, LoanRecord, LoanStatus

logger = logging.getLogger(__name__)


class InMemoryLoanStore:
    """Loan records keyed by id, indexed by wallet address.

    Every mutation runs under one lock, so ``update_status`` is an atomic
    compare-and-swap from ``active`` to a terminal status.
    """

    def __init__(self) -> None:
        self._records: dict[str, LoanRecord] = {}
        self._by_wallet: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _wallet_key(wallet_address: str) -> str:
        return wallet_address.lower()

    async def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held."""

    async def create(self, record: LoanRecord) -> LoanRecord:
        async with self._lock:
            if record.id in self._records:
                raise Conflict(record.id, self._records[record.id].status.value, "create")
            self._records[record.id] = record
            self._by_wallet.setdefault(self._wallet_key(record.wallet_address), []).append(
                record.id
            )
            await self._persist()
        logger.info("Loan %s created for %s", record.id, record.wallet_address)
        return record

    async def get(self, loan_id: str) -> LoanRecord:
        record = self._records.get(loan_id)
        if record is None:
            raise NotFound(loan_id)
        return record

    async def get_by_wallet(self, wallet_address: str) -> list[LoanRecord]:
        ids = self._by_wallet.get(self._wallet_key(wallet_address), [])
        return [self._records[i] for i in ids]

    async def list_by_status(self, status: LoanStatus) -> list[LoanRecord]:
        return [r for r in self._records.values() if r.status is status]

    async def save(self, record: LoanRecord) -> LoanRecord:
        async with self._lock:
            current = self._records.get(record.id)
            if current is None:
                raise NotFound(record.id)
            if current.status.is_terminal and record.status is not current.status:
                raise Conflict(record.id, current.status.value, record.status.value)
            if not current.status.is_terminal and record.status is not current.status:
                # Status moves only through update_status.
                record = replace(record, status=current.status)
            self._records[record.id] = record
            await self._persist()
        return record

    async def update_status(self, loan_id: str, new_status: LoanStatus) -> LoanRecord:
        async with self._lock:
            current = self._records.get(loan_id)
            if current is None:
                raise NotFound(loan_id)
            if current.status is not LoanStatus.ACTIVE or not new_status.is_terminal:
                raise Conflict(loan_id, current.status.value, new_status.value)
            updated = replace(current, status=new_status)
            self._records[loan_id] = updated
            await self._persist()
        logger.info("Loan %s: %s -> %s", loan_id, current.status.value, new_status.value)
        return updated


def credit_summary(loans: list[LoanRecord]) -> CreditSummary:
    """Aggregate a wallet's loans by status; totals cover active loans only."""
    counts = {status: 0 for status in LoanStatus}
    borrowed = Decimal("0")
    held = Decimal("0")
    for loan in loans:
        counts[loan.status] += 1
        if loan.status is LoanStatus.ACTIVE:
            borrowed += loan.borrowed_amount
            if not loan.hold_resolved:
                held += loan.pre_auth_amount
    return CreditSummary(
        active_loans=counts[LoanStatus.ACTIVE],
        closed_loans=counts[LoanStatus.CLOSED],
        liquidated_loans=counts[LoanStatus.LIQUIDATED],
        failed_loans=counts[LoanStatus.FAILED],
        total_borrowed=borrowed,
        total_held=held,
    )
