"""
Infrastructure package.

Logging setup and the JSON-RPC clients for EVM and Starknet chains.
"""

from oif_solver.infra.evm_rpc import EvmRpcClient, EvmTransactor, RPCError
from oif_solver.infra.logging_cfg import build_logger
from oif_solver.infra.starknet_rpc import StarknetAccount, StarknetCall, StarknetRpcClient

__all__ = [
    "EvmRpcClient",
    "EvmTransactor",
    "RPCError",
    "StarknetAccount",
    "StarknetCall",
    "StarknetRpcClient",
    "build_logger",
]
