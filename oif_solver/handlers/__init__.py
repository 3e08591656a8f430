"""
Chain handlers: per-chain-family fill/settle implementations.
"""

from oif_solver.handlers.base import ChainHandler, ChainHandlerError, ChainHandlerFactory, OrderAction
from oif_solver.handlers.evm import EVMChainHandler, EVMHandlerFactory
from oif_solver.handlers.starknet import StarknetChainHandler, StarknetHandlerFactory

__all__ = [
    "ChainHandler",
    "ChainHandlerError",
    "ChainHandlerFactory",
    "EVMChainHandler",
    "EVMHandlerFactory",
    "OrderAction",
    "StarknetChainHandler",
    "StarknetHandlerFactory",
]
