"""
KAIJU TRADER — Chain Executor
Builds, signs and sends contract transactions through an EVM JSON-RPC node.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, Web3Exception

from kaiju_trader.config.settings import BlockchainSettings, get_settings
from kaiju_trader.defi.abis import ERC20_ABI
from kaiju_trader.utils.errors import ConfigurationError, ExecutionError
from kaiju_trader.utils.logger import get_logger

logger = get_logger("chain_executor")


class ChainExecutor(ABC):
    """Signing account plus contract read/write access."""

    address: str = ""

    @abstractmethod
    async def call(self, contract: str, abi: List[Dict[str, Any]], fn_name: str, *args) -> Any:
        """Read-only contract call."""

    @abstractmethod
    async def build_transaction(
        self, contract: str, abi: List[Dict[str, Any]], fn_name: str, *args, value: int = 0
    ) -> Dict[str, Any]:
        """Unsigned transaction for a contract write from this account."""

    @abstractmethod
    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    async def sign_and_send(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        """Sign, broadcast and wait for the receipt. Returns tx_hash/status/gas_used."""

    async def get_balance(self, token: Optional[str] = None) -> int:
        """Raw balance of an ERC20 token, or of the native coin when token is None."""
        return int(await self.call(token, ERC20_ABI, "balanceOf", self.address))

    async def close(self) -> None:
        pass


def chain_error(e: Exception) -> ExecutionError:
    """Map a web3/RPC failure onto an execution reason code."""
    text = str(e)
    upper = text.upper()
    if "INSUFFICIENT_OUTPUT_AMOUNT" in upper or "SLIPPAGE" in upper:
        return ExecutionError(ExecutionError.SLIPPAGE_EXCEEDED, text)
    if ("INSUFFICIENT FUNDS" in upper or "TRANSFER_FROM_FAILED" in upper
            or "EXCEEDS BALANCE" in upper or "INSUFFICIENT_COLLATERAL" in upper):
        return ExecutionError(ExecutionError.INSUFFICIENT_BALANCE, text)
    if isinstance(e, (aiohttp.ClientError, asyncio.TimeoutError, TimeExhausted, ConnectionError)):
        return ExecutionError(ExecutionError.NETWORK_ERROR, text)
    return ExecutionError(ExecutionError.REJECTED, text)


_CHAIN_FAILURES = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, ValueError)


class Web3ChainExecutor(ChainExecutor):
    """AsyncWeb3 over HTTP with a local private key."""

    def __init__(self, rpc_url: str, private_key: str, chain_id: int = 1,
                 tx_timeout_seconds: float = 120.0):
        if not rpc_url or not private_key:
            raise ConfigurationError("RPC URL and private key are required for on-chain execution")
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.account = self.w3.eth.account.from_key(private_key)
        self.address = self.account.address
        self.chain_id = chain_id
        self.tx_timeout_seconds = tx_timeout_seconds
        logger.info("chain_executor_ready", address=self.address, chain_id=chain_id)

    @classmethod
    def from_settings(cls, settings: Optional[BlockchainSettings] = None) -> "Web3ChainExecutor":
        s = settings or get_settings().blockchain
        return cls(s.rpc_url, s.private_key, s.chain_id, s.tx_timeout_seconds)

    def _contract(self, address: str, abi: List[Dict[str, Any]]):
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def call(self, contract: str, abi: List[Dict[str, Any]], fn_name: str, *args) -> Any:
        fn = getattr(self._contract(contract, abi).functions, fn_name)(*args)
        try:
            return await fn.call()
        except _CHAIN_FAILURES as e:
            raise chain_error(e) from e

    async def build_transaction(
        self, contract: str, abi: List[Dict[str, Any]], fn_name: str, *args, value: int = 0
    ) -> Dict[str, Any]:
        fn = getattr(self._contract(contract, abi).functions, fn_name)(*args)
        try:
            nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
            return dict(await fn.build_transaction({
                "from": self.address,
                "nonce": nonce,
                "chainId": self.chain_id,
                "value": value,
            }))
        except _CHAIN_FAILURES as e:
            raise chain_error(e) from e

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        params = {k: v for k, v in tx.items() if k != "gas"}
        try:
            return int(await self.w3.eth.estimate_gas(params))
        except _CHAIN_FAILURES as e:
            raise chain_error(e) from e

    async def sign_and_send(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        signed = self.account.sign_transaction(tx)
        try:
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.tx_timeout_seconds
            )
        except _CHAIN_FAILURES as e:
            raise chain_error(e) from e

        result = {
            "tx_hash": AsyncWeb3.to_hex(tx_hash),
            "status": receipt["status"],
            "gas_used": receipt["gasUsed"],
            "block_number": receipt["blockNumber"],
        }
        if receipt["status"] != 1:
            logger.warning("chain_tx_reverted", **result)
            raise ExecutionError(ExecutionError.REJECTED, f"transaction {result['tx_hash']} reverted")
        logger.info("chain_tx_confirmed", **result)
        return result

    async def get_balance(self, token: Optional[str] = None) -> int:
        if token is None:
            try:
                return int(await self.w3.eth.get_balance(self.address))
            except _CHAIN_FAILURES as e:
                raise chain_error(e) from e
        return await super().get_balance(token)

    async def close(self) -> None:
        await self.w3.provider.disconnect()
