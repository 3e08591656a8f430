"""
ChainHandler: the per-chain-family fill/settle capability.

Architecture:
    The orchestrator never talks to a chain directly. For every fill
    instruction it asks the registered ChainHandlerFactory objects which
    one supports the destination chain id, gets (and caches) a handler
    for that chain, and calls fill/settle on it. Handlers raise
    ChainHandlerError on any failure; the orchestrator logs it and moves
    on to the next intent.

    OrderAction tells the orchestrator what to do after fill():
        SETTLE   - fill landed (or was already there), settle next
        COMPLETE - nothing left to do on this chain
        ERROR    - fill did not happen

Thread Safety:
    Each handler serializes its own transactions with an asyncio.Lock so
    account nonces never interleave. Handlers for different chains run
    concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum, auto
from typing import Awaitable, Callable, Dict, Optional

from oif_solver.core.json_utils import dumps
from oif_solver.types import FillInstruction, ParsedArgs

log = logging.getLogger("oifsolver")

STATUS_UNKNOWN = "UNKNOWN"
STATUS_FILLED = "FILLED"
STATUS_SETTLED = "SETTLED"


class OrderAction(Enum):
    SETTLE = auto()
    COMPLETE = auto()
    ERROR = auto()


class ChainHandlerError(Exception):
    """A fill, settle or status call could not be completed on chain."""


class ChainHandler(ABC):
    """Fill/settle/status operations for one destination chain."""

    chain_type: str = "unknown"

    def __init__(
        self,
        chain_id: int,
        settle_retries: int = 5,
        settle_retry_delay: float = 2.0,
        log_event: Optional[Callable[..., None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.chain_id = chain_id
        self.settle_retries = settle_retries
        self.settle_retry_delay = settle_retry_delay
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs) -> None:
        log.info(dumps({"event": event, "chain_id": self.chain_id, **kwargs}))

    @abstractmethod
    async def fill(self, args: ParsedArgs) -> OrderAction:
        """Fill the order on this chain."""

    @abstractmethod
    async def settle(self, args: ParsedArgs) -> None:
        """Trigger settlement of a filled order back to its origin."""

    @abstractmethod
    async def get_order_status(self, args: ParsedArgs) -> str:
        """UNKNOWN, FILLED, SETTLED or the raw status value."""

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _instruction(args: ParsedArgs) -> FillInstruction:
        if not args.resolved_order.fill_instructions:
            raise ChainHandlerError("no fill instructions found")
        return args.resolved_order.fill_instructions[0]

    @staticmethod
    def _order_id_bytes(args: ParsedArgs) -> bytes:
        raw = args.order_id[2:] if args.order_id.startswith("0x") else args.order_id
        try:
            value = bytes.fromhex(raw)
        except ValueError as exc:
            raise ChainHandlerError(f"invalid order id {args.order_id}") from exc
        if len(value) > 32:
            raise ChainHandlerError(f"order id longer than 32 bytes: {args.order_id}")
        return value.rjust(32, b"\x00")

    async def wait_for_order_status(self, args: ParsedArgs, expected: str) -> str:
        """
        Poll get_order_status until it returns ``expected``.

        Up to ``settle_retries`` attempts, sleeping ``settle_retry_delay``
        doubled after each miss. Returns the last status seen; status read
        errors count as misses.
        """
        delay = self.settle_retry_delay
        status = STATUS_UNKNOWN
        for attempt in range(1, self.settle_retries + 1):
            try:
                status = await self.get_order_status(args)
            except ChainHandlerError as exc:
                self._log("order_status_retry", order_id=args.order_id, attempt=attempt, error=str(exc))
            else:
                if status == expected:
                    return status
            if attempt < self.settle_retries:
                await self._sleep(delay)
                delay *= 2
        return status


class ChainHandlerFactory(ABC):
    """Creates handlers for the chains of one family and caches them per chain id."""

    chain_type: str = "unknown"

    def __init__(self) -> None:
        self._handlers: Dict[int, ChainHandler] = {}

    @abstractmethod
    def supports_chain(self, chain_id: int) -> bool:
        """True when this factory can build a handler for ``chain_id``."""

    @abstractmethod
    def _build(self, chain_id: int) -> ChainHandler:
        """Construct a new handler for ``chain_id``."""

    def create_handler(self, chain_id: int) -> ChainHandler:
        handler = self._handlers.get(chain_id)
        if handler is None:
            if not self.supports_chain(chain_id):
                raise ChainHandlerError(f"{self.chain_type} factory does not support chain {chain_id}")
            handler = self._build(chain_id)
            self._handlers[chain_id] = handler
        return handler
