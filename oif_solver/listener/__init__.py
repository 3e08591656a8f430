from oif_solver.listener.base import BaseListener, EventHandler, ListenerConfig, OpenEvent
from oif_solver.listener.evm import OPEN_EVENT_TOPIC, EVMListener, decode_open_log
from oif_solver.listener.starknet import OPEN_EVENT_SELECTOR, FeltDecoder, StarknetListener, decode_open_event

__all__ = [
    "BaseListener",
    "EVMListener",
    "EventHandler",
    "FeltDecoder",
    "ListenerConfig",
    "OPEN_EVENT_SELECTOR",
    "OPEN_EVENT_TOPIC",
    "OpenEvent",
    "StarknetListener",
    "decode_open_event",
    "decode_open_log",
]
