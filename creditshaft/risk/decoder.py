"""Fixed-point decoding of on-chain position quantities — no I/O."""
from __future__ import annotations

import re
from decimal import Decimal, localcontext

from ..errors import MalformedQuantity
from ..models import DecodedPosition, RawPosition

COLLATERAL_DECIMALS = 18
SUPPLIED_DECIMALS = 18
BORROWED_DECIMALS = 6
PRICE_DECIMALS = 8

# field name -> decimals
SCALES: dict[str, int] = {
    "collateral": COLLATERAL_DECIMALS,
    "supplied": SUPPLIED_DECIMALS,
    "borrowed": BORROWED_DECIMALS,
    "entry_price": PRICE_DECIMALS,
}

_UINT_RE = re.compile(r"[0-9]+")

# Wide enough for any uint256.
_EXACT_PRECISION = 100


def parse_uint(field: str, value: object) -> int:
    """Parse a non-negative integer string.

    Signs, whitespace, underscores and non-ASCII digits are rejected even
    though ``int()`` would accept them.
    """
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise MalformedQuantity(field, value, "expected an integer string")
    if isinstance(value, int):
        if value < 0:
            raise MalformedQuantity(field, value, "negative")
        return value
    if not _UINT_RE.fullmatch(value):
        raise MalformedQuantity(field, value, "not a non-negative integer")
    return int(value)


def decode_quantity(field: str, value: object, decimals: int) -> Decimal:
    """Scale a raw integer quantity down by 10^decimals, exactly."""
    return Decimal(f"{parse_uint(field, value)}E-{decimals}")


def encode_quantity(field: str, value: Decimal, decimals: int) -> str:
    """Inverse of :func:`decode_quantity`."""
    if value < 0:
        raise MalformedQuantity(field, value, "negative")
    with localcontext() as ctx:
        ctx.prec = _EXACT_PRECISION
        scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise MalformedQuantity(field, value, f"finer than 10^-{decimals}")
    return str(int(scaled))


def decode_price(value: object) -> Decimal:
    """Decode an oracle price reported at 10^8 scale."""
    return decode_quantity("price", value, PRICE_DECIMALS)


def decode(raw: RawPosition) -> DecodedPosition:
    """Convert a RawPosition into decimal quantities.

    Raises:
        MalformedQuantity: a field is not a non-negative integer string, or
            an active position has a zero entry price.
    """
    values = {
        name: decode_quantity(name, getattr(raw, name), decimals)
        for name, decimals in SCALES.items()
    }
    expiry = parse_uint("pre_auth_expiry", raw.pre_auth_expiry)

    if raw.is_active and values["entry_price"] == 0:
        raise MalformedQuantity(
            "entry_price", raw.entry_price, "zero on an active position"
        )

    return DecodedPosition(
        collateral=values["collateral"],
        supplied=values["supplied"],
        borrowed=values["borrowed"],
        entry_price=values["entry_price"],
        pre_auth_expiry=expiry,
        is_active=raw.is_active,
        pre_auth_charged=raw.pre_auth_charged,
        payment_intent_id=raw.payment_intent_id,
        customer_id=raw.customer_id,
        payment_method_id=raw.payment_method_id,
    )


def encode(decoded: DecodedPosition) -> RawPosition:
    """Re-encode decoded quantities at their fixed scales."""
    return RawPosition(
        collateral=encode_quantity("collateral", decoded.collateral, COLLATERAL_DECIMALS),
        supplied=encode_quantity("supplied", decoded.supplied, SUPPLIED_DECIMALS),
        borrowed=encode_quantity("borrowed", decoded.borrowed, BORROWED_DECIMALS),
        entry_price=encode_quantity("entry_price", decoded.entry_price, PRICE_DECIMALS),
        pre_auth_expiry=decoded.pre_auth_expiry,
        is_active=decoded.is_active,
        pre_auth_charged=decoded.pre_auth_charged,
        payment_intent_id=decoded.payment_intent_id,
        customer_id=decoded.customer_id,
        payment_method_id=decoded.payment_method_id,
    )
