"""
BaseListener: per-chain Open event indexer with backfill then poll.

Architecture:
    start block  = max(persisted lastIndexedBlock, resolved configured start)
                   where configured 0 = head at startup, -N = head - N
                   (clamped at 0), N > 0 = N
    safe head    = head - confirmation_blocks (when head > confirmations)
    backfill     = process [last+1, min(last+chunk, safe)] until caught up,
                   persisting lastIndexedBlock after every chunk
    poll         = every poll_interval, the same catch-up against a fresh
                   safe head

    Events in a chunk are grouped by block and handed to the event handler
    in block order. A handler failure is logged and the event skipped; a
    fetch failure aborts the chunk without persisting it, so the range is
    retried on the next poll. Persistence failures (StateError) propagate
    and stop the listener.

    Subclasses supply block_number() and fetch_open_events(); everything
    else is shared between EVM and Starknet.

Thread Safety:
    One listener runs as one asyncio task. Stop is cooperative and checked
    between chunks, so an in-flight chunk always finishes.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from oif_solver.config.networks import NetworkConfig, NetworkRegistry
from oif_solver.core.json_utils import dumps
from oif_solver.state.solver_state import AtomicSolverStateStore, StateError
from oif_solver.types import ParsedArgs

log = logging.getLogger("oifsolver")

# (args, origin chain name, block number) -> handled
EventHandler = Callable[[ParsedArgs, str, int], Awaitable[bool]]


@dataclass(frozen=True)
class ListenerConfig:
    chain_name: str
    contract_address: str
    start_block: int
    poll_interval_ms: int = 1000
    confirmation_blocks: int = 0
    max_block_range: int = 10

    @classmethod
    def from_network(cls, net: NetworkConfig) -> "ListenerConfig":
        return cls(
            chain_name=net.name,
            contract_address=net.hyperlane_address,
            start_block=net.solver_start_block,
            poll_interval_ms=net.poll_interval_ms,
            confirmation_blocks=net.confirmation_blocks,
            max_block_range=net.max_block_range,
        )


@dataclass(frozen=True)
class OpenEvent:
    args: ParsedArgs
    block_number: int


class BaseListener(ABC):
    network_type = "base"

    def __init__(
        self,
        config: ListenerConfig,
        state: AtomicSolverStateStore,
        networks: NetworkRegistry,
        metrics=None,
        log_event: Optional[Callable[..., None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if config.max_block_range <= 0:
            raise ValueError("max_block_range must be > 0")
        self.config = config
        self.state = state
        self.networks = networks
        self.metrics = metrics
        self._sleep = sleep
        self._log = log_event or self._default_log
        self._stop = asyncio.Event()
        self._last_processed: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    def _default_log(self, event: str, **kwargs) -> None:
        log.info(dumps({"event": event, "network": self.config.chain_name, **kwargs}))

    # -------------------------------------------------------------------------
    # Chain-specific
    # -------------------------------------------------------------------------

    @abstractmethod
    async def block_number(self) -> int:
        """Current chain head."""

    @abstractmethod
    async def fetch_open_events(self, from_block: int, to_block: int) -> List[OpenEvent]:
        """Decoded Open events in ``[from_block, to_block]``; undecodable ones are logged and dropped."""

    # -------------------------------------------------------------------------
    # Start block resolution
    # -------------------------------------------------------------------------

    @property
    def last_processed_block(self) -> Optional[int]:
        return self._last_processed

    async def resolve_start_block(self) -> int:
        configured = self.config.start_block
        if configured > 0:
            return configured
        head = await self.block_number()
        if configured == 0:
            return head
        return max(0, head + configured)

    async def initialize(self) -> int:
        """Load persisted progress; StateError if this network was never seeded."""
        resolved = await self.resolve_start_block()
        persisted = await self.state.get_last_indexed_block(self.config.chain_name)
        self._last_processed = max(persisted, resolved)
        self._log(
            "listener_initialized",
            configured_start=self.config.start_block,
            resolved_start=resolved,
            persisted=persisted,
            last_processed=self._last_processed,
        )
        return self._last_processed

    def safe_head(self, head: int) -> int:
        conf = self.config.confirmation_blocks
        if conf > 0 and head > conf:
            return head - conf
        return head

    # -------------------------------------------------------------------------
    # Block processing
    # -------------------------------------------------------------------------

    async def process_range(self, from_block: int, to_block: int, handler: EventHandler) -> int:
        """Deliver every Open event in the range in block order; returns ``to_block``."""
        events = await self.fetch_open_events(from_block, to_block)
        by_block: Dict[int, List[OpenEvent]] = {}
        for ev in events:
            if from_block <= ev.block_number <= to_block:
                by_block.setdefault(ev.block_number, []).append(ev)

        for block in sorted(by_block):
            for ev in by_block[block]:
                if self.metrics is not None:
                    self.metrics.events_seen.labels(network=self.config.chain_name).inc()
                try:
                    await handler(ev.args, self.config.chain_name, block)
                except Exception as exc:
                    self._log(
                        "event_handler_failed",
                        order_id=ev.args.order_id,
                        block=block,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
            self._log("block_processed", block=block, events=len(by_block[block]))
        return to_block

    async def catch_up(self, handler: EventHandler) -> int:
        """
        Process ``(last, safe_head]`` in chunks of max_block_range blocks.

        Returns the number of chunks processed. Progress is persisted after
        every chunk before moving on.
        """
        if self._last_processed is None:
            await self.initialize()
        safe = self.safe_head(await self.block_number())
        chunks = 0
        while self._last_processed < safe and not self._stop.is_set():
            start = self._last_processed + 1
            end = min(self._last_processed + self.config.max_block_range, safe)
            await self.process_range(start, end, handler)
            await self.state.update_last_indexed_block(self.config.chain_name, end)
            self._last_processed = end
            chunks += 1
            if self.metrics is not None:
                self.metrics.last_indexed_block.labels(network=self.config.chain_name).set(end)
        return chunks

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def run(self, handler: EventHandler) -> None:
        """Backfill, then poll until stop() or cancellation."""
        await self.initialize()
        self._log("backfill_started", from_block=self._last_processed + 1)
        try:
            await self.catch_up(handler)
            self._log("backfill_complete", last_processed=self._last_processed)
        except StateError:
            raise
        except Exception as exc:
            self._log("backfill_failed", error=str(exc), error_type=type(exc).__name__)

        interval = self.config.poll_interval_ms / 1000.0
        while not self._stop.is_set():
            try:
                await self.catch_up(handler)
            except StateError:
                raise
            except Exception as exc:
                if self.metrics is not None:
                    self.metrics.listener_errors.labels(network=self.config.chain_name).inc()
                self._log("listener_poll_error", error=str(exc), error_type=type(exc).__name__)
            if self._stop.is_set():
                break
            await self._sleep(interval)
        self._log("listener_stopped", last_processed=self._last_processed)

    def start(self, handler: EventHandler) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(handler), name=f"listener-{self.config.chain_name}")
        return self._task

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # -------------------------------------------------------------------------
    # Decoding helpers
    # -------------------------------------------------------------------------

    def resolve_domain(self, domain: int) -> int:
        """Hyperlane domain -> chain id; unknown domains are kept as-is with a warning."""
        chain_id = self.networks.domain_to_chain_id(domain)
        if chain_id is None:
            self._log("domain_lookup_miss", domain=domain)
            return domain
        return chain_id
