"""
Hyperlane7683Solver: listener -> rules -> handler -> settle.

Architecture:
    process_intent(args)
        1. RulesEngine.evaluate_all (allow/block list, balance,
           profitability); a failure rejects the intent
        2. for every fill instruction, the handler whose factory supports
           the destination chain fills it
        3. SETTLE  -> wait settle_delay, then settle each instruction
           COMPLETE -> done, nothing to settle
        4. returns True only when the intent ended settled or complete

    Handler exceptions never escape: they are logged, counted, published
    as INTENT_FAILED and reported as False so the listener moves on to the
    next event.

Usage:
    solver = Hyperlane7683Solver([evm_factory, sn_factory], engine)
    ok = await solver.process_intent(args, "Base", 123)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Sequence

from oif_solver.core.event_bus import EventBus, EventType
from oif_solver.core.json_utils import dumps
from oif_solver.handlers.base import ChainHandler, ChainHandlerError, ChainHandlerFactory, OrderAction
from oif_solver.rules.engine import RulesEngine
from oif_solver.types import ParsedArgs

log = logging.getLogger("oifsolver")

SOLVER_NAME = "hyperlane7683"


class Hyperlane7683Solver:
    def __init__(
        self,
        factories: Sequence[ChainHandlerFactory],
        rules_engine: RulesEngine,
        settle_delay: float = 2.0,
        event_bus: Optional[EventBus] = None,
        metrics=None,
        log_event: Optional[Callable[..., None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.factories: List[ChainHandlerFactory] = list(factories)
        self.rules_engine = rules_engine
        self.settle_delay = settle_delay
        self.event_bus = event_bus
        self.metrics = metrics
        self._sleep = sleep
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs) -> None:
        log.info(dumps({"event": event, "solver": SOLVER_NAME, **kwargs}))

    def _emit(self, event_type: EventType, source: Optional[str], **data) -> None:
        if self.event_bus is not None:
            self.event_bus.emit_sync(event_type, source=source, **data)

    def _count(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.intents.labels(result=result).inc()

    def handler_for(self, chain_id: int) -> ChainHandler:
        for factory in self.factories:
            if factory.supports_chain(chain_id):
                return factory.create_handler(chain_id)
        raise ChainHandlerError(f"no handler supports chain {chain_id}")

    async def _timed(self, operation: str, handler: ChainHandler, call: Awaitable):
        start = time.monotonic()
        try:
            return await call
        finally:
            if self.metrics is not None:
                self.metrics.handler_latency.labels(operation=operation, chain_type=handler.chain_type).observe(
                    time.monotonic() - start
                )

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def process_intent(self, args: ParsedArgs, origin_chain: Optional[str] = None, block: Optional[int] = None) -> bool:
        self._log("intent_received", order_id=args.order_id, origin=origin_chain, block=block)

        result = await self.rules_engine.evaluate_all(args)
        if not result.passed:
            if self.metrics is not None:
                self.metrics.rule_failures.labels(rule=result.rule or "unknown").inc()
            self._count("rejected")
            self._log("intent_rejected", order_id=args.order_id, rule=result.rule, reason=result.reason)
            self._emit(EventType.INTENT_REJECTED, origin_chain, order_id=args.order_id, rule=result.rule, reason=result.reason)
            return False

        try:
            action = await self.fill(args)
            if action == OrderAction.ERROR:
                raise ChainHandlerError("fill returned ERROR")
            if action == OrderAction.SETTLE:
                await self._sleep(self.settle_delay)
                await self.settle_order(args)
        except Exception as exc:
            self._count("failed")
            self._log("intent_failed", order_id=args.order_id, error=str(exc), error_type=type(exc).__name__)
            self._emit(EventType.INTENT_FAILED, origin_chain, order_id=args.order_id, error=str(exc))
            return False

        outcome = "settled" if action == OrderAction.SETTLE else "complete"
        self._count(outcome)
        self._log("intent_processed", order_id=args.order_id, outcome=outcome)
        return True

    async def fill(self, args: ParsedArgs) -> OrderAction:
        """
        Fill every instruction on its destination chain.

        Returns SETTLE as soon as an instruction's handler asks for
        settlement, COMPLETE when none did.
        """
        instructions = args.resolved_order.fill_instructions
        if not instructions:
            raise ChainHandlerError("no fill instructions found")
        for index, instruction in enumerate(instructions):
            handler = self.handler_for(instruction.destination_chain_id)
            self._log(
                "fill_instruction",
                order_id=args.order_id,
                index=index,
                chain_id=instruction.destination_chain_id,
                settler=instruction.destination_settler,
            )
            action = await self._timed("fill", handler, handler.fill(args))
            if action == OrderAction.ERROR:
                return action
            self._emit(EventType.INTENT_FILLED, handler.chain_type, order_id=args.order_id, chain_id=handler.chain_id)
            if action == OrderAction.SETTLE:
                return action
        return OrderAction.COMPLETE

    async def settle_order(self, args: ParsedArgs) -> None:
        instructions = args.resolved_order.fill_instructions
        if not instructions:
            raise ChainHandlerError("no fill instructions found for settlement")
        for instruction in instructions:
            handler = self.handler_for(instruction.destination_chain_id)
            await self._timed("settle", handler, handler.settle(args))
            self._emit(EventType.INTENT_SETTLED, handler.chain_type, order_id=args.order_id, chain_id=handler.chain_id)
