"""CreditShaft leveraged-position risk & lifecycle engine."""

__version__ = "0.1.0"
