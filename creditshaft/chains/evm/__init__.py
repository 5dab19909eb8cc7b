"""EVM JSON-RPC chain client."""
from .client import EvmClient

__all__ = ["EvmClient"]
