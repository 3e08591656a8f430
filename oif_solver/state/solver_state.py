"""
SolverStateStore: persisted indexing progress per network.

File layout:

    {"networks": {"Base": {"lastIndexedBlock": 123, "lastUpdated": "2025-01-01T00:00:00Z"}}}

Architecture:
    The store is the only mutable resource shared by the per-network
    listeners. Every write replaces the whole file atomically (temp file in
    the same directory, fsync, os.replace) so a reader sees either the old
    or the new complete state. Write failures are raised as StateError;
    losing track of lastIndexedBlock would mean skipped or replayed blocks.

    A network missing from an existing state file is an error, not a
    default: new networks must be added with seed_network(). A state file
    that does not exist yet is created by initialize() with every
    configured network seeded.

Thread Safety:
    SolverStateStore serializes access with a threading.Lock.
    AtomicSolverStateStore adds an asyncio.Lock and runs file I/O in the
    default executor so listeners never block the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import orjson

from oif_solver.core.json_utils import dumps_pretty

log = logging.getLogger("oifsolver")


class StateError(Exception):
    """Solver state could not be read, written, or has no entry for a network."""


def _rfc3339_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SolverStateStore:
    def __init__(self, path: str, clock: Optional[Callable[[], str]] = None) -> None:
        self.path = Path(path)
        self._now = clock or _rfc3339_now
        self._lock = threading.Lock()
        self._state: Optional[Dict[str, Any]] = None

    # -------------------------------------------------------------------------
    # File I/O
    # -------------------------------------------------------------------------

    def _read_locked(self) -> Dict[str, Any]:
        if self._state is not None:
            return self._state
        if not self.path.exists():
            self._state = {"networks": {}}
            return self._state
        try:
            data = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            raise StateError(f"failed to read solver state {self.path}: {exc}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("networks"), dict):
            raise StateError(f"malformed solver state {self.path}: missing 'networks' object")
        self._state = data
        return data

    def _write_locked(self, state: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(dumps_pretty(state))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StateError(f"failed to write solver state {self.path}: {exc}") from exc
        self._state = state

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def initialize(self, start_blocks: Mapping[str, int]) -> Dict[str, Any]:
        """
        Create the state file seeded with ``start_blocks`` if it does not exist.

        Negative start blocks ("N blocks before head") are stored as 0; the
        listener resolves them against the live head and keeps the larger.
        An existing file is loaded unchanged.
        """
        with self._lock:
            if self.path.exists():
                return self._copy(self._read_locked())
            now = self._now()
            state = {
                "networks": {
                    name: {"lastIndexedBlock": max(0, int(block)), "lastUpdated": now}
                    for name, block in start_blocks.items()
                }
            }
            self._write_locked(state)
            log.info(f"Created solver state {self.path} with {len(start_blocks)} networks")
            return self._copy(state)

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return self._copy(self._read_locked())

    def has_network(self, name: str) -> bool:
        with self._lock:
            return name in self._read_locked()["networks"]

    def get_last_indexed_block(self, name: str) -> int:
        with self._lock:
            entry = self._read_locked()["networks"].get(name)
            if entry is None:
                raise StateError(f"network {name} not found in solver state")
            return int(entry["lastIndexedBlock"])

    def seed_network(self, name: str, block: int, overwrite: bool = False) -> None:
        with self._lock:
            state = self._copy(self._read_locked())
            if name in state["networks"] and not overwrite:
                raise StateError(f"network {name} already present in solver state")
            state["networks"][name] = {"lastIndexedBlock": max(0, int(block)), "lastUpdated": self._now()}
            self._write_locked(state)

    def update_last_indexed_block(self, name: str, block: int) -> None:
        if block < 0:
            raise ValueError("block must be >= 0")
        with self._lock:
            state = self._copy(self._read_locked())
            if name not in state["networks"]:
                raise StateError(f"network {name} not found in solver state")
            state["networks"][name] = {"lastIndexedBlock": int(block), "lastUpdated": self._now()}
            self._write_locked(state)

    @staticmethod
    def _copy(state: Dict[str, Any]) -> Dict[str, Any]:
        return {"networks": {k: dict(v) for k, v in state["networks"].items()}}


class AtomicSolverStateStore:
    """Async wrapper: file I/O off the event loop, one writer at a time."""

    def __init__(self, path: str, clock: Optional[Callable[[], str]] = None) -> None:
        self._store = SolverStateStore(path, clock=clock)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._store.path

    @property
    def sync(self) -> SolverStateStore:
        return self._store

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, lambda: fn(*args))

    async def initialize(self, start_blocks: Mapping[str, int]) -> Dict[str, Any]:
        return await self._run(self._store.initialize, start_blocks)

    async def get_state(self) -> Dict[str, Any]:
        return await self._run(self._store.get_state)

    async def has_network(self, name: str) -> bool:
        return await self._run(self._store.has_network, name)

    async def get_last_indexed_block(self, name: str) -> int:
        return await self._run(self._store.get_last_indexed_block, name)

    async def seed_network(self, name: str, block: int, overwrite: bool = False) -> None:
        await self._run(self._store.seed_network, name, block, overwrite)

    async def update_last_indexed_block(self, name: str, block: int) -> None:
        await self._run(self._store.update_last_indexed_block, name, block)
