"""Price oracle protocol — price feed abstraction."""
from typing import Protocol


class PriceOracle(Protocol):
    """Abstract interface for fetching asset prices.

    ``get_price`` returns an integer string at 10^8 scale and raises
    ``OracleError`` when no usable price is available.
    """

    async def get_price(self, asset: str) -> str: ...
