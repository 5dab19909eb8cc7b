"""EVM JSON-RPC client for the leveraged position contract."""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ...config import ChainConfig
from ...errors import ChainError
from ...models import RawPosition, TxReceipt
from . import abi

logger = logging.getLogger(__name__)


class EvmClient:
    """Position contract client with automatic RPC endpoint fallback.

    Closing relies on ``eth_sendTransaction``, so the node (or relayer) behind
    the endpoints must manage the signing key for the wallet.
    """

    def __init__(self, config: ChainConfig) -> None:
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.contract_address = config.contract_address
        self.get_position_selector = config.get_position_selector
        self.close_position_selector = config.close_position_selector
        self.receipt_poll_interval = config.receipt_poll_interval_seconds
        self.receipt_timeout = config.receipt_timeout_seconds
        self.current_rpc_index = 0

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Make RPC call with fallback to alternative endpoints."""
        if not self.endpoints:
            raise ChainError("No RPC endpoints configured")

        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            rpc_url = self.endpoints[rpc_index]

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.post(
                        rpc_url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        result = await response.json()
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                logger.warning("RPC endpoint %s failed: %s", rpc_url, e)
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")
                continue

            if not isinstance(result, dict):
                last_error = ChainError(f"Malformed response to {method}: {result!r}")
                logger.warning("RPC endpoint %s returned a malformed response", rpc_url)
                continue

            if "error" in result:
                # The node answered; another endpoint would give the same answer.
                raise ChainError(f"RPC Error in {method}: {result['error']}")

            if rpc_index != self.current_rpc_index:
                logger.info("Switched to RPC endpoint: %s", rpc_url)
                self.current_rpc_index = rpc_index

            return result.get("result")

        raise ChainError(f"All RPC endpoints failed. Last error: {last_error}")

    async def get_position(self, wallet_address: str) -> RawPosition | None:
        """Read the wallet's position; None when the contract has none."""
        try:
            address_word = abi.encode_address(wallet_address)
        except ValueError as e:
            raise ChainError(str(e)) from e
        data = abi.encode_call(self.get_position_selector, address_word)
        result = await self.rpc_call(
            "eth_call", [{"to": self.contract_address, "data": data}, "latest"]
        )
        if not isinstance(result, str):
            raise ChainError(f"Unexpected eth_call result: {result!r}")
        return abi.decode_position(result)

    async def close_position(self, wallet_address: str) -> TxReceipt:
        """Submit the close transaction and wait for its receipt."""
        tx = {
            "from": wallet_address,
            "to": self.contract_address,
            "data": abi.encode_call(self.close_position_selector),
        }
        tx_hash = await self.rpc_call("eth_sendTransaction", [tx])
        if not isinstance(tx_hash, str) or not tx_hash:
            raise ChainError(f"Unexpected eth_sendTransaction result: {tx_hash!r}")
        logger.info("Close transaction submitted for %s: %s", wallet_address, tx_hash)

        receipt = await self._wait_for_receipt(tx_hash)
        if not receipt.status:
            raise ChainError(f"Close transaction {tx_hash} reverted")
        return receipt

    async def _wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout

        while True:
            raw = await self.rpc_call("eth_getTransactionReceipt", [tx_hash])
            if raw:
                return _parse_receipt(tx_hash, raw)
            if loop.time() >= deadline:
                raise ChainError(f"Timed out waiting for receipt of {tx_hash}")
            await asyncio.sleep(self.receipt_poll_interval)


def _parse_receipt(tx_hash: str, raw: Any) -> TxReceipt:
    if not isinstance(raw, dict):
        raise ChainError(f"Malformed receipt for {tx_hash}: {raw!r}")
    try:
        block_number = int(raw.get("blockNumber") or "0x0", 16)
    except (TypeError, ValueError) as e:
        raise ChainError(f"Malformed receipt for {tx_hash}: {e}") from e
    return TxReceipt(tx_hash=tx_hash, status=raw.get("status") == "0x1", block_number=block_number)
