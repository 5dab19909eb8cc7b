"""Fixed-point decoding and risk calculation."""
from .calculator import (
    AT_RISK_HEALTH_FACTOR,
    LIQUIDATION_THRESHOLD,
    choose_outcome,
    compute_risk,
)
from .decoder import decode, decode_price, encode

__all__ = [
    "AT_RISK_HEALTH_FACTOR",
    "LIQUIDATION_THRESHOLD",
    "choose_outcome",
    "compute_risk",
    "decode",
    "decode_price",
    "encode",
]
