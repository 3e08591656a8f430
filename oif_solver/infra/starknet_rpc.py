"""
Async Starknet JSON-RPC client and felt helpers.

Reads (starknet_call, starknet_getEvents, receipts) go over plain JSON-RPC.
Writes need an account signer; they are delegated to an injected
StarknetAccount, which turns a list of calls into one invoke transaction
and returns its hash.

Felt conventions used across the solver:
    u256      -> two felts (low 128 bits, high 128 bits)
    bytes     -> Cairo ``Bytes``: size, word count, big-endian u128 words,
                 last word right-padded with zeros
    selector  -> starknet_keccak(name) = keccak256(name) & (2**250 - 1)
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx
from eth_utils import keccak

from oif_solver.infra.evm_rpc import RPCError

MASK_250 = 2**250 - 1
U128_MASK = 2**128 - 1
U128_BYTES = 16

# starknet_getTransactionReceipt error for an unknown (not yet seen) hash
TXN_HASH_NOT_FOUND = 29


def starknet_keccak(data: bytes) -> int:
    return int.from_bytes(keccak(data), "big") & MASK_250


def get_selector_from_name(name: str) -> int:
    return starknet_keccak(name.encode("ascii"))


def to_felt(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    return int(value, 16) if str(value).startswith("0x") else int(value)


def felt_hex(value: int) -> str:
    return hex(value)


def split_u256(value: int) -> Tuple[int, int]:
    return value & U128_MASK, value >> 128


def join_u256(low: int, high: int) -> int:
    return (high << 128) | low


def bytes_to_u128_words(data: bytes) -> List[int]:
    words = []
    for i in range(0, len(data), U128_BYTES):
        chunk = data[i:i + U128_BYTES].ljust(U128_BYTES, b"\x00")
        words.append(int.from_bytes(chunk, "big"))
    return words


def u128_words_to_bytes(words: Sequence[int], size: int) -> bytes:
    raw = b"".join(int(w).to_bytes(U128_BYTES, "big") for w in words)
    if size > len(raw):
        raise ValueError(f"Bytes size {size} exceeds {len(words)} words")
    return raw[:size]


def encode_cairo_bytes(data: bytes) -> List[int]:
    words = bytes_to_u128_words(data)
    return [len(data), len(words), *words]


@dataclass(frozen=True)
class StarknetCall:
    to: int
    selector: int
    calldata: List[int]


class StarknetAccount(Protocol):
    """Signs and submits invoke transactions for the solver's account."""

    address: int

    async def execute(self, calls: Sequence[StarknetCall]) -> str: ...


class StarknetRpcClient:
    def __init__(self, rpc_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.rpc_url = rpc_url
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

    async def request(self, method: str, params: Any) -> Any:
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

    async def block_number(self) -> int:
        return int(await self.request("starknet_blockNumber", []))

    async def chain_id(self) -> int:
        return int(await self.request("starknet_chainId", []), 16)

    async def call(self, contract: Any, selector: int, calldata: Sequence[int], block_id: Any = "latest") -> List[int]:
        request = {
            "contract_address": felt_hex(to_felt(contract)),
            "entry_point_selector": felt_hex(selector),
            "calldata": [felt_hex(to_felt(c)) for c in calldata],
        }
        result = await self.request("starknet_call", [request, block_id])
        return [int(x, 16) for x in result or []]

    async def get_events(
        self,
        address: Any,
        keys: List[List[int]],
        from_block: int,
        to_block: int,
        chunk_size: int = 100,
    ) -> List[Dict[str, Any]]:
        """All events in ``[from_block, to_block]``, following continuation tokens."""
        events: List[Dict[str, Any]] = []
        token: Optional[str] = None
        while True:
            flt: Dict[str, Any] = {
                "from_block": {"block_number": from_block},
                "to_block": {"block_number": to_block},
                "address": felt_hex(to_felt(address)),
                "keys": [[felt_hex(k) for k in group] for group in keys],
                "chunk_size": chunk_size,
            }
            if token:
                flt["continuation_token"] = token
            page = await self.request("starknet_getEvents", {"filter": flt}) or {}
            events.extend(page.get("events", []))
            token = page.get("continuation_token")
            if not token:
                return events

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.request("starknet_getTransactionReceipt", [tx_hash])
        except RPCError as exc:
            if exc.code == TXN_HASH_NOT_FOUND:
                return None
            raise

    async def wait_for_receipt(self, tx_hash: str, timeout: float = 120.0, poll_interval: float = 2.0) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        while True:
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt is not None and receipt.get("finality_status") in ("ACCEPTED_ON_L2", "ACCEPTED_ON_L1"):
                return receipt
            if time.monotonic() >= deadline:
                raise RPCError(f"timed out waiting for receipt of {tx_hash}")
            await asyncio.sleep(poll_interval)

    async def erc20_balance(self, token: Any, owner: Any) -> int:
        low, high = (await self.call(token, get_selector_from_name("balance_of"), [to_felt(owner)]))[:2]
        return join_u256(low, high)

    async def erc20_allowance(self, token: Any, owner: Any, spender: Any) -> int:
        result = await self.call(token, get_selector_from_name("allowance"), [to_felt(owner), to_felt(spender)])
        return join_u256(result[0], result[1])


def receipt_succeeded(receipt: Dict[str, Any]) -> bool:
    return receipt.get("execution_status") == "SUCCEEDED"
