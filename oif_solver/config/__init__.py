"""
Configuration: environment settings, network registry, allow/block lists.
"""

from oif_solver.config.allow_block import load_allow_block_lists, parse_allow_block_lists
from oif_solver.config.networks import NetworkConfig, NetworkRegistry
from oif_solver.config.settings import Settings, env_bool

__all__ = [
    "NetworkConfig",
    "NetworkRegistry",
    "Settings",
    "env_bool",
    "load_allow_block_lists",
    "parse_allow_block_lists",
]
