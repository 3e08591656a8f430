"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Tuple

from dotenv import load_dotenv

from oif_solver.config.networks import NetworkRegistry

load_dotenv()

VALID_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}
VALID_LOG_FORMATS = {"text", "json"}

KNOWN_SOLVERS = ["hyperlane7683"]


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def is_devnet() -> bool:
    return env_bool("IS_DEVNET", False)


def account_env(key: str, default: str = "") -> str:
    """Read an account key, preferring ``LOCAL_<key>`` when IS_DEVNET is set."""
    target = f"LOCAL_{key}" if is_devnet() else key
    return os.getenv(target) or default


@dataclass(frozen=True)
class Settings:
    log_level: str
    log_format: str
    log_file: str | None
    max_retries: int
    solvers: Dict[str, bool]
    state_file: str
    metrics_port: int
    metrics_token: str | None
    http_timeout: float
    private_key: str | None
    solver_address: str | None
    starknet_solver_address: str | None
    ztarknet_solver_address: str | None
    expected_fees: int
    min_profit_threshold: int
    settle_delay_sec: float
    settle_retry_delay_sec: float
    allow_block_file: str | None
    seed_missing_networks: bool
    skip_settle_networks: Tuple[str, ...]
    networks: NetworkRegistry = field(repr=False)

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging (no secrets)."""
        data = self.__dict__.copy()
        data.pop("networks", None)
        if data.get("private_key"):
            data["private_key"] = "***"
        if data.get("metrics_token"):
            data["metrics_token"] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        cfg = cls(
            log_level=os.getenv("LOG_LEVEL", "info").lower(),
            log_format=os.getenv("LOG_FORMAT", "text").lower(),
            log_file=os.getenv("LOG_FILE", "oifsolver.log") or None,
            max_retries=_int_env("MAX_RETRIES", 5),
            solvers={name: env_bool(f"SOLVER_{name.upper()}_ENABLED", True) for name in KNOWN_SOLVERS},
            state_file=os.getenv("SOLVER_STATE_FILE", "state/solver_state/solver-state.json"),
            metrics_port=_int_env("METRICS_PORT", 9095),
            metrics_token=os.getenv("METRICS_TOKEN"),
            http_timeout=_float_env("HTTP_TIMEOUT", 10.0),
            private_key=account_env("SOLVER_PRIVATE_KEY") or None,
            solver_address=account_env("SOLVER_PUB_KEY") or None,
            starknet_solver_address=account_env(
                "STARKNET_SOLVER_ADDRESS",
                "0x2af9427c5a277474c079a1283c880ee8a6f0f8fbf73ce969c08d88befec1bba",
            ),
            ztarknet_solver_address=os.getenv("ZTARKNET_SOLVER_ADDRESS") or None,
            expected_fees=_int_env("EXPECTED_FEES", 0),
            min_profit_threshold=_int_env("MIN_PROFIT_THRESHOLD", 0),
            settle_delay_sec=_float_env("SETTLE_DELAY_SEC", 2.0),
            settle_retry_delay_sec=_float_env("SETTLE_RETRY_DELAY_SEC", 2.0),
            allow_block_file=os.getenv("ALLOW_BLOCK_LIST_FILE") or None,
            seed_missing_networks=env_bool("SOLVER_SEED_MISSING_NETWORKS", False),
            skip_settle_networks=tuple(
                n.strip() for n in os.getenv("SKIP_SETTLE_NETWORKS", "").split(",") if n.strip()
            ),
            networks=NetworkRegistry.from_env(),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    @property
    def log_level_int(self) -> int:
        return getattr(logging, self.log_level.upper())

    def solver_enabled(self, name: str) -> bool:
        return self.solvers.get(name, False)

    def resolve_account(self) -> str:
        if self.private_key:
            from eth_account import Account

            return Account.from_key(self.private_key).address
        if self.solver_address:
            return self.solver_address
        raise RuntimeError("Missing SOLVER_PUB_KEY or SOLVER_PRIVATE_KEY")

    def resolve_signer(self):
        from eth_account import Account

        if self.private_key:
            return Account.from_key(self.private_key)
        raise RuntimeError("Missing credentials: set SOLVER_PRIVATE_KEY")

    def _validate(self) -> None:
        if self.log_level not in VALID_LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(VALID_LOG_LEVELS)}")
        if self.log_format not in VALID_LOG_FORMATS:
            raise ValueError(f"LOG_FORMAT must be one of {sorted(VALID_LOG_FORMATS)}")
        if self.max_retries < 0:
            raise ValueError("MAX_RETRIES must be >= 0")
        if self.expected_fees < 0:
            raise ValueError("EXPECTED_FEES must be >= 0")
        if self.min_profit_threshold < 0:
            raise ValueError("MIN_PROFIT_THRESHOLD must be >= 0")
        if self.settle_delay_sec < 0 or self.settle_retry_delay_sec < 0:
            raise ValueError("Settle delays must be >= 0")
        if self.http_timeout <= 0:
            raise ValueError("HTTP_TIMEOUT must be > 0")
        if not 0 <= self.metrics_port <= 65535:
            raise ValueError("METRICS_PORT must be in [0, 65535]")
        for name in self.skip_settle_networks:
            if name not in self.networks:
                raise ValueError(f"SKIP_SETTLE_NETWORKS: unknown network {name}")

        if not self.private_key:
            logging.getLogger("oifsolver").warning(
                "WARNING: SOLVER_PRIVATE_KEY not set. "
                "EVM fills and settlements will fail until a signer is configured."
            )
        if self.expected_fees == 0 and self.min_profit_threshold == 0:
            logging.getLogger("oifsolver").warning(
                "WARNING: EXPECTED_FEES and MIN_PROFIT_THRESHOLD are both 0. "
                "Any order with MinReceived > MaxSpent will be filled."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("oifsolver")
    payload = {
        "event": "config_loaded",
        "log_level": cfg.log_level,
        "solvers": cfg.solvers,
        "state_file": cfg.state_file,
        "networks": [
            {"name": n.name, "chain_id": n.chain_id, "start_block": n.solver_start_block}
            for n in cfg.networks
        ],
    }
    logger.info(json.dumps(payload))
