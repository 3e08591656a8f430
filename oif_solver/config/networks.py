"""
Network registry: one entry per chain the solver watches and fills on.

Built once at startup from the environment and passed by reference to
listeners, handlers and rules. Hyperlane domain ids default to the chain
id; the domain -> chain id lookup is used when decoding Open events whose
outputs carry domains instead of chain ids.

Usage:
    networks = NetworkRegistry.from_env()
    base = networks.get("Base")
    networks.domain_to_chain_id(84532)      # -> 84532
    networks.is_starknet(23448591)          # -> True
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Dict, Iterator, List, Optional

log = logging.getLogger("oifsolver")

DEFAULT_EVM_HYPERLANE_ADDRESS = "0xf614c6bF94b022E16BEF7dBecF7614FFD2b201d3"

# Watched in this order by the manager
NETWORK_ORDER = ["Base", "Optimism", "Arbitrum", "Ethereum", "Starknet", "Ztarknet"]


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    rpc_url: str
    chain_id: int
    hyperlane_address: str
    domain: int
    solver_start_block: int = 0   # 0 = head at startup, -N = head - N
    poll_interval_ms: int = 1000
    confirmation_blocks: int = 0
    max_block_range: int = 10

    @property
    def is_starknet(self) -> bool:
        # Ztarknet is a Starknet-stack chain
        name = self.name.lower()
        return "starknet" in name or "ztarknet" in name


def _env(key: str, default: str) -> str:
    raw = os.getenv(key)
    return raw if raw not in (None, "") else default


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw, 0)


def _int_env_any(keys: List[str], default: int) -> int:
    for key in keys:
        raw = os.getenv(key)
        if raw:
            return int(raw, 0)
    return default


class NetworkRegistry:
    """Immutable set of NetworkConfig entries indexed by name, chain id and domain."""

    def __init__(self, networks: List[NetworkConfig]) -> None:
        self._by_name: Dict[str, NetworkConfig] = {}
        self._by_chain: Dict[int, NetworkConfig] = {}
        self._by_domain: Dict[int, NetworkConfig] = {}
        for net in networks:
            if net.name in self._by_name:
                raise ValueError(f"duplicate network name {net.name}")
            if net.chain_id in self._by_chain:
                raise ValueError(f"duplicate chain id {net.chain_id} ({net.name})")
            self._by_name[net.name] = net
            self._by_chain[net.chain_id] = net
            self._by_domain[net.domain] = net

    @classmethod
    def from_env(cls) -> "NetworkRegistry":
        """
        Build the default network set, applying ``<NET>_*`` overrides.

        Per-network keys: ``<NET>_RPC_URL``, ``<NET>_CHAIN_ID``,
        ``<NET>_DOMAIN``, ``<NET>_HYPERLANE_ADDRESS``,
        ``<NET>_SOLVER_START_BLOCK``, ``<NET>_POLL_INTERVAL_MS``,
        ``<NET>_CONFIRMATION_BLOCKS``, ``<NET>_MAX_BLOCK_RANGE``.
        Global fallbacks: ``POLL_INTERVAL_MS``, ``CONFIRMATION_BLOCKS``,
        ``MAX_BLOCK_RANGE``, ``EVM_HYPERLANE_ADDRESS``.
        """
        poll_ms = _int_env("POLL_INTERVAL_MS", 1000)
        confirmations = _int_env("CONFIRMATION_BLOCKS", 0)
        block_range = _int_env("MAX_BLOCK_RANGE", 10)
        evm_hyperlane = _env("EVM_HYPERLANE_ADDRESS", DEFAULT_EVM_HYPERLANE_ADDRESS)

        defaults = [
            ("Ethereum", "http://localhost:8545", _int_env_any(["ETHEREUM_CHAIN_ID", "SEPOLIA_CHAIN_ID"], 11155111)),
            ("Optimism", "http://localhost:8546", 11155420),
            ("Arbitrum", "http://localhost:8547", 421614),
            ("Base", "http://localhost:8548", 84532),
            ("Starknet", "http://localhost:5050", 23448591),
            ("Ztarknet", "https://ztarknet-madara.d.karnot.xyz", 10066329),
        ]

        networks = []
        for name, rpc_default, chain_default in defaults:
            prefix = name.upper()
            starknet_like = name in ("Starknet", "Ztarknet")
            chain_id = _int_env(f"{prefix}_CHAIN_ID", chain_default)
            networks.append(
                NetworkConfig(
                    name=name,
                    rpc_url=_env(f"{prefix}_RPC_URL", rpc_default),
                    chain_id=chain_id,
                    hyperlane_address=_env(
                        f"{prefix}_HYPERLANE_ADDRESS", "" if starknet_like else evm_hyperlane
                    ),
                    domain=_int_env(f"{prefix}_DOMAIN", chain_id),
                    solver_start_block=_int_env(f"{prefix}_SOLVER_START_BLOCK", 0),
                    poll_interval_ms=_int_env(
                        f"{prefix}_POLL_INTERVAL_MS", 2000 if starknet_like else poll_ms
                    ),
                    confirmation_blocks=_int_env(f"{prefix}_CONFIRMATION_BLOCKS", confirmations),
                    max_block_range=_int_env(
                        f"{prefix}_MAX_BLOCK_RANGE", 100 if starknet_like else block_range
                    ),
                )
            )
        registry = cls(networks)
        registry._validate()
        return registry

    def _validate(self) -> None:
        for net in self:
            if net.max_block_range <= 0:
                raise ValueError(f"{net.name.upper()}_MAX_BLOCK_RANGE must be > 0")
            if net.poll_interval_ms <= 0:
                raise ValueError(f"{net.name.upper()}_POLL_INTERVAL_MS must be > 0")
            if net.confirmation_blocks < 0:
                raise ValueError(f"{net.name.upper()}_CONFIRMATION_BLOCKS must be >= 0")
            if not net.hyperlane_address:
                log.warning(f"{net.name}: no Hyperlane7683 address configured, listener will be skipped")

    def __iter__(self) -> Iterator[NetworkConfig]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def names(self) -> List[str]:
        ordered = [n for n in NETWORK_ORDER if n in self._by_name]
        return ordered + [n for n in self._by_name if n not in ordered]

    def get(self, name: str) -> Optional[NetworkConfig]:
        return self._by_name.get(name)

    def by_chain_id(self, chain_id: int) -> Optional[NetworkConfig]:
        return self._by_chain.get(chain_id)

    def by_domain(self, domain: int) -> Optional[NetworkConfig]:
        return self._by_domain.get(domain)

    def domain_to_chain_id(self, domain: int) -> Optional[int]:
        net = self._by_domain.get(domain)
        return net.chain_id if net else None

    def chain_id_to_domain(self, chain_id: int) -> Optional[int]:
        net = self._by_chain.get(chain_id)
        return net.domain if net else None

    def is_starknet(self, chain_id: int) -> bool:
        net = self._by_chain.get(chain_id)
        return bool(net and net.is_starknet)

    def is_evm(self, chain_id: int) -> bool:
        net = self._by_chain.get(chain_id)
        return bool(net and not net.is_starknet)

    def with_overrides(self, name: str, **changes) -> "NetworkRegistry":
        """Copy of the registry with one network's fields replaced."""
        return NetworkRegistry([replace(n, **changes) if n.name == name else n for n in self])
