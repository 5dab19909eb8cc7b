"""Pyth Network price oracle service."""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..config import PythConfig
from ..errors import OracleError
from ..risk.decoder import PRICE_DECIMALS

logger = logging.getLogger(__name__)


def scale_price(price_raw: int, expo: int, decimals: int = PRICE_DECIMALS) -> str:
    """Rescale a Pyth ``price * 10^expo`` pair to an integer at 10^decimals.

    Digits finer than 10^-decimals are truncated.
    """
    if price_raw < 0:
        raise OracleError(f"Negative price reported: {price_raw}e{expo}")
    shift = expo + decimals
    if shift >= 0:
        return str(price_raw * 10**shift)
    return str(price_raw // 10**-shift)


class PythOracle:
    """Fetch prices from Pyth Network oracle."""

    def __init__(self, config: PythConfig, timeout: int = 30) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self.timeout = timeout

    async def _fetch_parsed(self, feed_id: str) -> list[dict[str, Any]]:
        url = f"{self.hermes_url}?ids[]={feed_id}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        raise OracleError(
                            f"Error fetching prices from Pyth: HTTP {response.status}"
                        )
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise OracleError(f"Error fetching prices from Pyth: {e}") from e

        return data.get("parsed", [])

    async def get_price(self, asset: str) -> str:
        """Current price of ``asset`` as an integer string at 10^8 scale."""
        feed_id = self.price_feeds.get(asset)
        if not feed_id:
            raise OracleError(f"No Pyth feed configured for {asset}")

        parsed = await self._fetch_parsed(feed_id)

        # Hermes echoes ids without the 0x prefix.
        wanted = feed_id.lower().removeprefix("0x")
        for item in parsed:
            if str(item.get("id", "")).lower().removeprefix("0x") != wanted:
                continue
            price_data = item.get("price", {})
            try:
                price_raw = int(price_data.get("price", 0))
                expo = int(price_data.get("expo", 0))
            except (TypeError, ValueError) as e:
                raise OracleError(f"Malformed Pyth price for {asset}: {e}") from e

            price = scale_price(price_raw, expo)
            logger.debug("Pyth price %s: %s (1e-%d)", asset, price, PRICE_DECIMALS)
            return price

        raise OracleError(f"Pyth returned no price for {asset}")
