"""Pure ABI helpers for the position contract — no I/O.

The position getter returns a single tuple:

    (uint256 collateral, uint256 leverageRatio, uint256 borrowed,
     uint256 supplied, uint256 entryPrice, uint256 preAuthAmount,
     uint256 openTimestamp, uint256 preAuthExpiryTime, bool isActive,
     bool preAuthCharged, string paymentIntentId, string customerId,
     string paymentMethodId)
"""
from __future__ import annotations

from ...errors import ChainError
from ...models import RawPosition

WORD = 32
_HEAD_WORDS = 13


def encode_address(address: str) -> str:
    """Left-pad a 20-byte hex address to one ABI word (hex, no 0x)."""
    body = address[2:] if address.lower().startswith("0x") else address
    if len(body) != 40:
        raise ValueError(f"Invalid address: {address}")
    int(body, 16)
    return body.lower().rjust(WORD * 2, "0")


def encode_call(selector: str, *args: str) -> str:
    return "0x" + selector.removeprefix("0x").lower() + "".join(args)


def _word(data: bytes, offset: int) -> int:
    end = offset + WORD
    if end > len(data):
        raise ChainError(f"ABI data truncated at byte {offset}")
    return int.from_bytes(data[offset:end], "big")


def _string(data: bytes, offset: int) -> str:
    length = _word(data, offset)
    start = offset + WORD
    if start + length > len(data):
        raise ChainError(f"ABI string truncated at byte {offset}")
    return data[start:start + length].decode("utf-8")


def decode_position(result: str) -> RawPosition | None:
    """Decode the getter's return data; None when the call returned nothing."""
    body = result[2:] if result.startswith("0x") else result
    if not body:
        return None
    try:
        data = bytes.fromhex(body)
    except ValueError as e:
        raise ChainError(f"Invalid hex in call result: {e}") from e

    base = _word(data, 0)
    head = [_word(data, base + i * WORD) for i in range(_HEAD_WORDS)]

    try:
        intent_id = _string(data, base + head[10])
        customer_id = _string(data, base + head[11])
        method_id = _string(data, base + head[12])
    except UnicodeDecodeError as e:
        raise ChainError(f"Invalid string in position tuple: {e}") from e

    # Quantities stay integer strings; scaling is the decoder's job.
    return RawPosition(
        collateral=str(head[0]),
        borrowed=str(head[2]),
        supplied=str(head[3]),
        entry_price=str(head[4]),
        pre_auth_expiry=head[7],
        is_active=bool(head[8]),
        pre_auth_charged=bool(head[9]),
        payment_intent_id=intent_id,
        customer_id=customer_id,
        payment_method_id=method_id,
    )
