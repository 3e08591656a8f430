"""
StarknetListener: Open events from the Cairo Hyperlane7683 settler.

Events come from starknet_getEvents filtered by the Open selector as the
first key. The event data is the Cairo serialization of the resolved
order, read sequentially:

    user                    felt (address)
    origin_chain_id         u32
    open_deadline           u64
    fill_deadline           u64
    order_id                u256 (low, high)
    max_spent               len, then (token, amount u256, recipient, domain u32)*
    min_received            same as max_spent
    fill_instructions       len, then (domain u32, settler, origin_data Bytes)*

Cairo ``Bytes`` is (size, word_count, u128 words...). Output and fill
instruction domains are Hyperlane domains and are mapped to chain ids
through the network registry.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Sequence

from oif_solver.infra.starknet_rpc import StarknetRpcClient, join_u256, to_felt, u128_words_to_bytes
from oif_solver.listener.base import BaseListener, ListenerConfig, OpenEvent
from oif_solver.types import FillInstruction, Output, ParsedArgs, Recipient, ResolvedCrossChainOrder

# sn_keccak("Open")
OPEN_EVENT_SELECTOR = 0x35D8BA7F4BF26B6E2E2060E5BD28107042BE35460FBD828C9D29A2D8AF14445

U32_MAX = (1 << 32) - 1
U64_MAX = (1 << 64) - 1


class FeltDecoder:
    """Sequential reader over an event's data felts."""

    def __init__(self, felts: Sequence[Any]) -> None:
        self._felts = [to_felt(f) for f in felts]
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._felts) - self._pos

    def felt(self) -> int:
        if self._pos >= len(self._felts):
            raise ValueError(f"event data truncated at felt {self._pos}")
        value = self._felts[self._pos]
        self._pos += 1
        return value

    def _bounded(self, limit: int, kind: str) -> int:
        value = self.felt()
        if value > limit:
            raise ValueError(f"{kind} out of range: {value}")
        return value

    def u32(self) -> int:
        return self._bounded(U32_MAX, "u32")

    def u64(self) -> int:
        return self._bounded(U64_MAX, "u64")

    def u256(self) -> int:
        low = self.felt()
        high = self.felt()
        return join_u256(low, high)

    def address(self) -> str:
        return "0x" + self.felt().to_bytes(32, "big").hex()

    def length(self) -> int:
        n = self.felt()
        if n > self.remaining:
            raise ValueError(f"array length {n} exceeds remaining data")
        return n

    def cairo_bytes(self) -> bytes:
        size = self.felt()
        count = self.length()
        words = [self.felt() for _ in range(count)]
        return u128_words_to_bytes(words, size)


def decode_open_event(data: Sequence[Any], resolve_domain: Callable[[int], int]) -> ResolvedCrossChainOrder:
    """Decode an Open event's data felts; raises ValueError on malformed data."""
    r = FeltDecoder(data)

    def outputs() -> List[Output]:
        out = []
        for _ in range(r.length()):
            token = r.address()
            amount = r.u256()
            recipient = r.address()
            out.append(Output(token=token, amount=amount, recipient=recipient, chain_id=resolve_domain(r.u32())))
        return out

    user = r.address()
    origin_chain_id = r.u32()
    open_deadline = r.u64()
    fill_deadline = r.u64()
    order_id = r.u256()
    max_spent = outputs()
    min_received = outputs()
    fills = []
    for _ in range(r.length()):
        chain_id = resolve_domain(r.u32())
        settler = r.address()
        fills.append(
            FillInstruction(destination_chain_id=chain_id, destination_settler=settler, origin_data=r.cairo_bytes())
        )
    return ResolvedCrossChainOrder(
        user=user,
        origin_chain_id=origin_chain_id,
        open_deadline=open_deadline,
        fill_deadline=fill_deadline,
        order_id=order_id.to_bytes(32, "big"),
        max_spent=max_spent,
        min_received=min_received,
        fill_instructions=fills,
    )


class StarknetListener(BaseListener):
    network_type = "starknet"

    def __init__(self, config: ListenerConfig, client: StarknetRpcClient, state, networks, **kwargs) -> None:
        super().__init__(config, state, networks, **kwargs)
        self.client = client

    async def block_number(self) -> int:
        return await self.client.block_number()

    def _is_open(self, event: Dict[str, Any]) -> bool:
        keys = event.get("keys") or []
        return bool(keys) and to_felt(keys[0]) == OPEN_EVENT_SELECTOR

    async def fetch_open_events(self, from_block: int, to_block: int) -> List[OpenEvent]:
        raw = await self.client.get_events(
            self.config.contract_address,
            [[OPEN_EVENT_SELECTOR]],
            from_block,
            to_block,
            chunk_size=max(self.config.max_block_range, 100),
        )
        events: List[OpenEvent] = []
        for entry in raw:
            if not self._is_open(entry):
                continue
            block = entry.get("block_number", to_block)
            try:
                order = decode_open_event(entry.get("data") or [], self.resolve_domain)
            except ValueError as exc:
                self._log("event_decode_failed", block=block, tx=entry.get("transaction_hash"), error=str(exc))
                continue
            args = ParsedArgs(
                order_id="0x" + order.order_id.hex(),
                sender_address=order.user,
                recipients=[Recipient(destination_chain_name=self.config.chain_name, recipient_address="*")],
                resolved_order=order,
            )
            events.append(OpenEvent(args=args, block_number=int(block)))
        return events
