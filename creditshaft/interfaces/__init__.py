"""Protocol interfaces for the risk & lifecycle engine."""
from .chain import ChainClient
from .loan_store import LoanStore
from .notifier import Notifier
from .payment import PaymentClient
from .price_oracle import PriceOracle

__all__ = ["ChainClient", "LoanStore", "Notifier", "PaymentClient", "PriceOracle"]
