"""Loan store protocol — persistence boundary for loan records."""
from typing import Protocol

from ..models import LoanRecord, LoanStatus


class LoanStore(Protocol):
    """Durable loan records keyed by id and indexed by wallet.

    ``update_status`` is a compare-and-swap: only ``active`` loans may move to
    a terminal status. It raises ``NotFound`` for unknown ids and ``Conflict``
    when the loan is no longer active. ``save`` replaces a whole record but
    never changes the status of a terminal one.
    """

    async def create(self, record: LoanRecord) -> LoanRecord: ...

    async def get(self, loan_id: str) -> LoanRecord: ...

    async def get_by_wallet(self, wallet_address: str) -> list[LoanRecord]: ...

    async def list_by_status(self, status: LoanStatus) -> list[LoanRecord]: ...

    async def save(self, record: LoanRecord) -> LoanRecord: ...

    async def update_status(self, loan_id: str, new_status: LoanStatus) -> LoanRecord: ...
