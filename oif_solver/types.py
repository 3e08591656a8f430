"""
Shared order views exchanged between the protocol model, listeners,
rules and chain handlers.

Addresses and tokens are carried as 0x-prefixed hex strings (bytes32 for
protocol-level values, 20-byte for EVM users); amounts and chain ids are
plain ints. An empty token string means the chain's native asset.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


@dataclass(frozen=True)
class Output:
    token: str
    amount: int
    recipient: str
    chain_id: int


@dataclass(frozen=True)
class FillInstruction:
    destination_chain_id: int
    destination_settler: str
    origin_data: bytes


@dataclass(frozen=True)
class ResolvedCrossChainOrder:
    user: str
    origin_chain_id: int
    open_deadline: int
    fill_deadline: int
    order_id: bytes
    max_spent: List[Output] = field(default_factory=list)
    min_received: List[Output] = field(default_factory=list)
    fill_instructions: List[FillInstruction] = field(default_factory=list)


@dataclass(frozen=True)
class Recipient:
    destination_chain_name: str
    recipient_address: str


@dataclass
class ParsedArgs:
    """An Open event as seen by the solver."""
    order_id: str
    sender_address: str
    recipients: List[Recipient]
    resolved_order: ResolvedCrossChainOrder


@dataclass(frozen=True)
class AllowBlockListItem:
    sender_address: str = "*"
    destination_domain: str = "*"
    recipient_address: str = "*"


@dataclass
class AllowBlockLists:
    allow_list: List[AllowBlockListItem] = field(default_factory=list)
    block_list: List[AllowBlockListItem] = field(default_factory=list)


def is_native_token(token: str) -> bool:
    """True for the empty/zero token address used to denote the native asset."""
    if not token or token in ("0x", "0x0"):
        return True
    try:
        return int(token, 16) == 0
    except ValueError:
        return False
