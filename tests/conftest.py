"""
Pytest configuration and fixtures.
Adds the repo root to the Python path so tests can import oif_solver
without an editable install.
"""

import sys
from pathlib import Path

import pytest

# Add the repo root to sys.path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from oif_solver.config.networks import NetworkConfig, NetworkRegistry  # noqa: E402


@pytest.fixture
def networks():
    """Two EVM chains and one Starknet chain with distinct domains."""
    return NetworkRegistry([
        NetworkConfig(name="Base", rpc_url="http://base", chain_id=8453, hyperlane_address="0x" + "11" * 20, domain=8453),
        NetworkConfig(name="Optimism", rpc_url="http://op", chain_id=10, hyperlane_address="0x" + "22" * 20, domain=10),
        NetworkConfig(
            name="Starknet",
            rpc_url="http://sn",
            chain_id=23448594291968334,
            hyperlane_address="0x" + "33" * 32,
            domain=23448591,
            poll_interval_ms=2000,
            max_block_range=100,
        ),
    ])
