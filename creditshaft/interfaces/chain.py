"""Chain client protocol — position contract abstraction."""
from typing import Protocol

from ..models import RawPosition, TxReceipt


class ChainClient(Protocol):
    """Reads a wallet's position and submits its close transaction.

    Implementations raise ``ChainError`` on transport or contract failures.
    """

    async def get_position(self, wallet_address: str) -> RawPosition | None: ...

    async def close_position(self, wallet_address: str) -> TxReceipt: ...
