"""
Protocol-level records: order payloads, order envelopes and status.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


BYTES32_ZERO = b"\x00" * 32


class OrderStatus(Enum):
    """
    Order lifecycle status.

    The value is the on-chain bytes32 representation: the ASCII status
    name right-padded with zeros, or 32 zero bytes for UNKNOWN.
    """
    UNKNOWN = BYTES32_ZERO
    OPENED = b"OPENED".ljust(32, b"\x00")
    FILLED = b"FILLED".ljust(32, b"\x00")
    SETTLED = b"SETTLED".ljust(32, b"\x00")
    REFUNDED = b"REFUNDED".ljust(32, b"\x00")

    @classmethod
    def from_bytes32(cls, raw: bytes) -> "OrderStatus":
        return cls(bytes(raw).ljust(32, b"\x00")[:32])

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.SETTLED, OrderStatus.REFUNDED)


@dataclass(frozen=True)
class OrderData:
    """
    Hyperlane 7683 order payload. Address-like fields are bytes32
    (EVM addresses left-padded, Starknet felts as-is).
    """
    sender: bytes
    recipient: bytes
    input_token: bytes
    output_token: bytes
    amount_in: int
    amount_out: int
    sender_nonce: int
    origin_domain: int
    destination_domain: int
    destination_settler: bytes
    fill_deadline: int
    data: bytes = b""


@dataclass(frozen=True)
class OnchainCrossChainOrder:
    fill_deadline: int
    order_data_type: bytes
    order_data: bytes


@dataclass(frozen=True)
class GaslessCrossChainOrder:
    origin_settler: bytes
    user: bytes
    nonce: int
    origin_chain_id: int
    open_deadline: int
    fill_deadline: int
    order_data_type: bytes
    order_data: bytes


@dataclass(frozen=True)
class FilledOrder:
    origin_data: bytes
    filler_data: bytes
