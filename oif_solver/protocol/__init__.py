"""
Protocol model: order lifecycle, message codec and settlement dispatch.

Pure Python and VM-independent; the registry doubles as an in-process
settler for tests and local simulation.
"""

from oif_solver.protocol.codec import (
    ORDER_DATA_TYPE,
    ORDER_DATA_TYPE_HASH,
    decode_filler_data,
    decode_message,
    decode_order_data,
    encode_filler_data,
    encode_message,
    encode_order_data,
    order_id,
)
from oif_solver.protocol.dispatcher import InMemoryMailbox, Mailbox, SettlementDispatcher
from oif_solver.protocol.errors import DispatchError, MessageDecodeError, ProtocolError
from oif_solver.protocol.registry import OrderRegistry
from oif_solver.protocol.tokens import TokenLedger
from oif_solver.protocol.types import (
    FilledOrder,
    GaslessCrossChainOrder,
    OnchainCrossChainOrder,
    OrderData,
    OrderStatus,
)

__all__ = [
    "DispatchError",
    "FilledOrder",
    "GaslessCrossChainOrder",
    "InMemoryMailbox",
    "Mailbox",
    "MessageDecodeError",
    "ORDER_DATA_TYPE",
    "ORDER_DATA_TYPE_HASH",
    "OnchainCrossChainOrder",
    "OrderData",
    "OrderRegistry",
    "OrderStatus",
    "ProtocolError",
    "SettlementDispatcher",
    "TokenLedger",
    "decode_filler_data",
    "decode_message",
    "decode_order_data",
    "encode_filler_data",
    "encode_message",
    "encode_order_data",
    "order_id",
]
