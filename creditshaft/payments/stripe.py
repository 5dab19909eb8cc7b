"""Stripe PaymentIntents client for authorize-only holds."""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..config import StripeConfig
from ..errors import PaymentDeclined, ProcessorError
from ..models import HoldReference

logger = logging.getLogger(__name__)

CAPTURABLE_STATUS = "requires_capture"


class StripeClient:
    """Create, capture and cancel manual-capture PaymentIntents."""

    def __init__(self, config: StripeConfig) -> None:
        self.api_key = config.api_key
        self.api_base = config.api_base.rstrip("/")
        self.timeout = config.timeout

    async def _post(
        self,
        path: str,
        form: dict[str, str],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        if not self.api_key:
            raise ProcessorError("Stripe API key not configured", retryable=False)

        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.post(
                    f"{self.api_base}{path}",
                    data=form,
                    headers=headers,
                    auth=aiohttp.BasicAuth(self.api_key, ""),
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    body = await response.json()
                    status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ProcessorError(f"Stripe request {path} failed: {e}") from e

        if status == 200:
            return body

        error = body.get("error", {}) if isinstance(body, dict) else {}
        message = error.get("message", f"HTTP {status}")
        if status == 402 or error.get("type") == "card_error":
            raise PaymentDeclined(
                f"Payment declined: {message}", status=error.get("decline_code", "")
            )
        # 409 is an idempotency-key race; retrying is what resolves it.
        retryable = status in (409, 429) or status >= 500
        raise ProcessorError(f"Stripe error ({status}): {message}", retryable=retryable)

    @staticmethod
    def _reference(body: dict[str, Any]) -> HoldReference:
        return HoldReference(
            intent_id=body["id"],
            amount_cents=int(body.get("amount_capturable") or body.get("amount", 0)),
            currency=body.get("currency", "usd"),
            status=body.get("status", ""),
        )

    async def create_hold(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        description: str = "",
    ) -> HoldReference:
        """Authorize ``amount_cents`` off-session without capturing it."""
        form = {
            "amount": str(amount_cents),
            "currency": currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "capture_method": "manual",
            "confirm": "true",
            "off_session": "true",
        }
        if description:
            form["description"] = description

        body = await self._post("/payment_intents", form)
        ref = self._reference(body)
        if ref.status != CAPTURABLE_STATUS:
            raise PaymentDeclined(f"Payment failed: {ref.status}", status=ref.status)

        logger.info("Stripe hold %s authorized for %d %s", ref.intent_id, ref.amount_cents, currency)
        return ref

    async def capture_hold(
        self, ref: HoldReference, idempotency_key: str | None = None
    ) -> HoldReference:
        body = await self._post(
            f"/payment_intents/{ref.intent_id}/capture", {}, idempotency_key
        )
        logger.info("Stripe hold %s captured", ref.intent_id)
        return self._reference(body)

    async def release_hold(
        self, ref: HoldReference, idempotency_key: str | None = None
    ) -> HoldReference:
        body = await self._post(
            f"/payment_intents/{ref.intent_id}/cancel", {}, idempotency_key
        )
        logger.info("Stripe hold %s released", ref.intent_id)
        return self._reference(body)
