"""
Async EVM JSON-RPC client, contract-call helpers and a local-key transactor.

Only the handful of methods the solver needs are wrapped. Calldata is
built with eth_abi; transactions are signed locally with eth_account and
submitted with eth_sendRawTransaction.

Usage:
    client = EvmRpcClient("http://localhost:8545", timeout=10.0)
    head = await client.block_number()
    balance = await erc20_balance(client, token, owner)

    tx = EvmTransactor(client, Account.from_key(key), chain_id=84532)
    receipt = await tx.transact(settler, encode_call("settle(bytes32[])", ["bytes32[]"], [[oid]]))
"""

from __future__ import annotations

import asyncio
import itertools
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address


class RPCError(Exception):
    def __init__(self, message: str, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


def _hex_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


def _hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def encode_call(signature: str, arg_types: Sequence[str], args: Sequence[Any]) -> bytes:
    """4-byte selector of ``signature`` followed by the ABI-encoded ``args``."""
    return function_signature_to_4byte_selector(signature) + abi_encode(list(arg_types), list(args))


class EvmRpcClient:
    def __init__(self, rpc_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.rpc_url = rpc_url
        # A shared client passed in is not closed by close()
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(timeout=timeout)
            self._owns_client = True
        self._ids = itertools.count(1)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def request(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self.client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise RPCError(f"{method} transport error: {exc}") from exc
        except ValueError as exc:
            raise RPCError(f"{method} returned invalid JSON: {exc}") from exc
        if data.get("error"):
            err = data["error"]
            raise RPCError(f"{method} failed: {err.get('message')}", code=err.get("code"), data=err.get("data"))
        return data.get("result")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def chain_id(self) -> int:
        return _hex_int(await self.request("eth_chainId", []))

    async def block_number(self) -> int:
        return _hex_int(await self.request("eth_blockNumber", []))

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return _hex_int(await self.request("eth_getBalance", [address, block]))

    async def get_logs(
        self,
        address: str,
        topics: List[Optional[str]],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        params = {
            "address": address,
            "topics": topics,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }
        return await self.request("eth_getLogs", [params]) or []

    async def call(self, to: str, data: bytes, block: str = "latest") -> bytes:
        result = await self.request("eth_call", [{"to": to, "data": _hex(data)}, block])
        return bytes.fromhex(result[2:]) if result else b""

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _hex_int(await self.request("eth_getTransactionCount", [address, block]))

    async def gas_price(self) -> int:
        return _hex_int(await self.request("eth_gasPrice", []))

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return _hex_int(await self.request("eth_estimateGas", [tx]))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def send_raw_transaction(self, raw: bytes) -> str:
        return await self.request("eth_sendRawTransaction", [_hex(raw)])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.request("eth_getTransactionReceipt", [tx_hash])

    async def wait_for_receipt(self, tx_hash: str, timeout: float = 120.0, poll_interval: float = 1.0) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        while True:
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline:
                raise RPCError(f"timed out waiting for receipt of {tx_hash}")
            await asyncio.sleep(poll_interval)


async def erc20_balance(client: EvmRpcClient, token: str, owner: str) -> int:
    raw = await client.call(token, encode_call("balanceOf(address)", ["address"], [owner]))
    return abi_decode(["uint256"], raw)[0]


async def erc20_allowance(client: EvmRpcClient, token: str, owner: str, spender: str) -> int:
    raw = await client.call(token, encode_call("allowance(address,address)", ["address", "address"], [owner, spender]))
    return abi_decode(["uint256"], raw)[0]


def receipt_succeeded(receipt: Dict[str, Any]) -> bool:
    return _hex_int(receipt.get("status", "0x0")) == 1


class EvmTransactor:
    """
    Signs and submits transactions for one account on one chain.

    Not safe for concurrent use: callers serialize sends (ChainHandler
    holds a lock) so pending nonces stay contiguous.
    """

    def __init__(
        self,
        client: EvmRpcClient,
        account,
        chain_id: int,
        gas_multiplier: float = 1.2,
        receipt_timeout: float = 120.0,
    ) -> None:
        self.client = client
        self.account = account
        self.chain_id = chain_id
        self.gas_multiplier = gas_multiplier
        self.receipt_timeout = receipt_timeout

    @property
    def address(self) -> str:
        return to_checksum_address(self.account.address)

    async def send(self, to: str, data: bytes, value: int = 0) -> str:
        call = {"from": self.address, "to": to, "data": _hex(data), "value": hex(value)}
        gas = await self.client.estimate_gas(call)
        tx = {
            "nonce": await self.client.get_transaction_count(self.address),
            "gasPrice": await self.client.gas_price(),
            "gas": int(gas * self.gas_multiplier),
            "to": to_checksum_address(to),
            "value": value,
            "data": data,
            "chainId": self.chain_id,
        }
        signed = self.account.sign_transaction(tx)
        return await self.client.send_raw_transaction(signed.raw_transaction)

    async def transact(self, to: str, data: bytes, value: int = 0) -> Dict[str, Any]:
        tx_hash = await self.send(to, data, value)
        return await self.client.wait_for_receipt(tx_hash, timeout=self.receipt_timeout)
