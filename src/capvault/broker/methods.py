"""Method policy and execution for capability invocations.

Read-only queries on the auto-execute list run without prompting once the
capability checks pass. Everything else waits for the user, and
fund-transfer methods always do.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import aiohttp

from ..core import defaults
from ..errors import MethodExecutionError
from ..registry.models import Capability, Connection

logger = logging.getLogger(__name__)

AUTO_EXECUTE_METHODS = frozenset({
    "get_balance",
    "get_quote",
    "get_intent_status",
})

FUND_TRANSFER_METHODS = frozenset({
    "send_transaction",
    "send_evm_transaction",
    "submit_intent",
})

USDC_CONTRACT = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
USDC_DECIMALS = 6
WEI_PER_ETH = 10 ** 18


def requires_approval(method: str) -> bool:
    """Whether invoking ``method`` must go through a user prompt."""
    if method in FUND_TRANSFER_METHODS:
        return True
    return method not in AUTO_EXECUTE_METHODS


@dataclass
class InvocationContext:
    """What an executor knows about the caller of a method."""

    origin: str
    capability: Capability
    connection: Connection
    nonce: int


class MethodExecutor(Protocol):
    """Runs an authorized method and returns its JSON-serializable result."""

    async def execute(self, method: str, params: Dict[str, Any], context: InvocationContext) -> Any:
        ...


class BalanceProvider(Protocol):
    async def get_balances(self, address: str, evm_address: Optional[str]) -> Dict[str, float]:
        ...


MethodHandler = Callable[[Dict[str, Any], InvocationContext], Awaitable[Any]]


class RpcBalanceProvider:
    """Fetches balances over HTTP.

    OCT comes from ``GET {rpc_url}/address/{address}``; ETH and USDC come
    from an EVM JSON-RPC endpoint when one is configured. A failed lookup
    reports a zero balance.
    """

    def __init__(
        self,
        rpc_url: str = defaults.RPC_URL,
        evm_rpc_url: Optional[str] = None,
        request_timeout: float = defaults.RPC_TIMEOUT_S,
    ) -> None:
        self.rpc_url = rpc_url.rstrip("/")
        self.evm_rpc_url = evm_rpc_url
        self.request_timeout = request_timeout

    async def _get_json(self, session: aiohttp.ClientSession, url: str) -> Optional[Dict[str, Any]]:
        async with session.get(url) as resp:
            if resp.status != 200:
                logger.warning(f"Balance lookup returned HTTP {resp.status} for {url}")
                return None
            return await resp.json()

    async def _evm_call(
        self, session: aiohttp.ClientSession, method: str, params: list, call_id: int
    ) -> Optional[str]:
        body = {"jsonrpc": "2.0", "method": method, "params": params, "id": call_id}
        async with session.post(self.evm_rpc_url, json=body) as resp:
            if resp.status != 200:
                logger.warning(f"EVM RPC {method} returned HTTP {resp.status}")
                return None
            data = await resp.json()
        result = data.get("result")
        if not result or result == "0x":
            return None
        return result

    async def get_balances(self, address: str, evm_address: Optional[str]) -> Dict[str, float]:
        balances = {"octBalance": 0.0, "ethBalance": 0.0, "usdcBalance": 0.0}
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            try:
                data = await self._get_json(session, f"{self.rpc_url}/address/{address}")
                if data:
                    balances["octBalance"] = float(data.get("balance") or 0)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.warning(f"OCT balance lookup failed for {address}: {e}")

            if evm_address and self.evm_rpc_url:
                try:
                    wei = await self._evm_call(session, "eth_getBalance", [evm_address, "latest"], 1)
                    if wei:
                        balances["ethBalance"] = int(wei, 16) / WEI_PER_ETH
                    call_data = "0x70a08231" + evm_address[2:].lower().rjust(64, "0")
                    raw = await self._evm_call(
                        session, "eth_call", [{"to": USDC_CONTRACT, "data": call_data}, "latest"], 2
                    )
                    if raw:
                        balances["usdcBalance"] = int(raw, 16) / (10 ** USDC_DECIMALS)
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                    logger.warning(f"EVM balance lookup failed for {evm_address}: {e}")
        return balances


class WalletMethodExecutor:
    """Default executor: built-in ``get_balance`` plus registered handlers."""

    def __init__(
        self,
        balance_provider: Optional[BalanceProvider] = None,
        handlers: Optional[Dict[str, MethodHandler]] = None,
    ) -> None:
        self.balance_provider = balance_provider or RpcBalanceProvider()
        self.handlers: Dict[str, MethodHandler] = dict(handlers or {})

    def register(self, method: str, handler: MethodHandler) -> None:
        self.handlers[method] = handler

    async def execute(self, method: str, params: Dict[str, Any], context: InvocationContext) -> Any:
        if method == "get_balance" and "get_balance" not in self.handlers:
            return await self._get_balance(context)

        handler = self.handlers.get(method)
        if handler is None:
            raise MethodExecutionError(f"Method {method} is not supported by this wallet")
        try:
            return await handler(params, context)
        except MethodExecutionError:
            raise
        except Exception as e:
            logger.exception(f"Method {method} failed for {context.origin}")
            raise MethodExecutionError(f"Method {method} failed") from e

    async def _get_balance(self, context: InvocationContext) -> Dict[str, Any]:
        connection = context.connection
        balances = await self.balance_provider.get_balances(
            connection.wallet_public_key, connection.evm_address
        )
        return {
            "octAddress": connection.wallet_public_key,
            "evmAddress": connection.evm_address or "",
            **balances,
            "network": connection.network,
        }
