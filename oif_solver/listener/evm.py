"""
EVMListener: Open events from a Hyperlane7683 settler over eth_getLogs.

Open(bytes32 indexed orderId, ResolvedCrossChainOrder resolvedOrder)
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from eth_abi import decode as abi_decode
from eth_utils import to_checksum_address

from oif_solver.infra.evm_rpc import EvmRpcClient
from oif_solver.listener.base import BaseListener, ListenerConfig, OpenEvent
from oif_solver.types import FillInstruction, Output, ParsedArgs, Recipient, ResolvedCrossChainOrder

OPEN_EVENT_TOPIC = "0x3448bbc2203c608599ad448eeb1007cea04b788ac631f9f558e8dd01a3c27b3d"

_OUTPUT = "(bytes32,uint256,bytes32,uint256)"
RESOLVED_ORDER_ABI = (
    f"(address,uint256,uint32,uint32,bytes32,{_OUTPUT}[],{_OUTPUT}[],(uint256,bytes32,bytes)[])"
)


def _hex32(raw: bytes) -> str:
    return "0x" + bytes(raw).hex()


def _outputs(raw: List[tuple], resolve: Callable[[int], int]) -> List[Output]:
    return [
        Output(token=_hex32(token), amount=amount, recipient=_hex32(recipient), chain_id=resolve(chain_id))
        for token, amount, recipient, chain_id in raw
    ]


def decode_open_log(
    log: Dict[str, Any],
    chain_name: str,
    resolve_domain: Optional[Callable[[int], int]] = None,
) -> ParsedArgs:
    """
    Decode one eth_getLogs entry for the Open event; raises ValueError on
    malformed logs. Output and fill instruction chain ids are Hyperlane
    domains on chain and go through ``resolve_domain`` when given.
    """
    resolve = resolve_domain or (lambda domain: domain)
    topics = log.get("topics") or []
    if len(topics) < 2 or topics[0].lower() != OPEN_EVENT_TOPIC:
        raise ValueError("not an Open event")
    data = log.get("data") or "0x"
    try:
        (decoded,) = abi_decode([RESOLVED_ORDER_ABI], bytes.fromhex(data[2:]))
    except Exception as exc:
        raise ValueError(f"failed to decode Open event data: {exc}") from exc

    user, origin_chain_id, open_deadline, fill_deadline, order_id, max_spent, min_received, fills = decoded
    order = ResolvedCrossChainOrder(
        user=to_checksum_address(user),
        origin_chain_id=origin_chain_id,
        open_deadline=open_deadline,
        fill_deadline=fill_deadline,
        order_id=bytes(order_id),
        max_spent=_outputs(max_spent, resolve),
        min_received=_outputs(min_received, resolve),
        fill_instructions=[
            FillInstruction(
                destination_chain_id=resolve(chain_id),
                destination_settler=_hex32(settler),
                origin_data=bytes(origin_data),
            )
            for chain_id, settler, origin_data in fills
        ],
    )
    return ParsedArgs(
        order_id=topics[1].lower(),
        sender_address=order.user,
        recipients=[Recipient(destination_chain_name=chain_name, recipient_address="*")],
        resolved_order=order,
    )


class EVMListener(BaseListener):
    network_type = "evm"

    def __init__(self, config: ListenerConfig, client: EvmRpcClient, state, networks, **kwargs) -> None:
        super().__init__(config, state, networks, **kwargs)
        self.client = client

    async def block_number(self) -> int:
        return await self.client.block_number()

    async def fetch_open_events(self, from_block: int, to_block: int) -> List[OpenEvent]:
        logs = await self.client.get_logs(
            self.config.contract_address, [OPEN_EVENT_TOPIC], from_block, to_block
        )
        events: List[OpenEvent] = []
        for entry in logs:
            block = _block_of(entry)
            try:
                args = decode_open_log(entry, self.config.chain_name, self.resolve_domain)
            except ValueError as exc:
                self._log("event_decode_failed", block=block, tx=entry.get("transactionHash"), error=str(exc))
                continue
            events.append(OpenEvent(args=args, block_number=block if block is not None else to_block))
        return events


def _block_of(entry: Dict[str, Any]) -> Optional[int]:
    raw = entry.get("blockNumber")
    if raw is None:
        return None
    return int(raw, 16) if isinstance(raw, str) else int(raw)
