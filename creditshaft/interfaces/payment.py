"""Payment client protocol — pre-authorization holds."""
from typing import Protocol

from ..models import HoldReference


class PaymentClient(Protocol):
    """Creates, captures and releases authorize-only charges.

    ``create_hold`` raises ``PaymentDeclined`` when the processor does not
    leave the charge capturable, ``ProcessorError`` on processor/transport
    failures. ``idempotency_key`` lets retried calls be deduplicated.
    """

    async def create_hold(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        description: str = "",
    ) -> HoldReference: ...

    async def capture_hold(
        self, ref: HoldReference, idempotency_key: str | None = None
    ) -> HoldReference: ...

    async def release_hold(
        self, ref: HoldReference, idempotency_key: str | None = None
    ) -> HoldReference: ...
