"""Payment processor clients."""
from .stripe import StripeClient

__all__ = ["StripeClient"]
