"""
Tests for the intent pipeline (Hyperlane7683Solver) and SolverManager wiring.
"""

from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from oif_solver.config.settings import Settings
from oif_solver.core.event_bus import EventBus, EventType
from oif_solver.handlers.base import ChainHandlerError, ChainHandlerFactory, OrderAction
from oif_solver.handlers.evm import EVMChainHandler, EVMHandlerFactory
from oif_solver.handlers.starknet import StarknetHandlerFactory
from oif_solver.listener.evm import EVMListener
from oif_solver.listener.starknet import StarknetListener
from oif_solver.monitoring.metrics import HealthChecker, SolverMetrics
from oif_solver.orchestrator.manager import SolverManager
from oif_solver.orchestrator.solver import Hyperlane7683Solver
from oif_solver.rules.engine import Rule, RuleResult, RulesEngine
from oif_solver.state.solver_state import AtomicSolverStateStore
from oif_solver.types import FillInstruction, ParsedArgs, Recipient, ResolvedCrossChainOrder


def make_args(*destinations) -> ParsedArgs:
    order = ResolvedCrossChainOrder(
        user="0x" + "aa" * 20,
        origin_chain_id=8453,
        open_deadline=0,
        fill_deadline=2000,
        order_id=b"\x07" * 32,
        max_spent=[],
        min_received=[],
        fill_instructions=[FillInstruction(d, "0x" + "0c" * 32, b"") for d in destinations],
    )
    return ParsedArgs(
        order_id="0x" + "07" * 32,
        sender_address=order.user,
        recipients=[Recipient("Base", "*")],
        resolved_order=order,
    )


class FakeHandler:
    chain_type = "EVM"

    def __init__(self, chain_id, action=OrderAction.SETTLE):
        self.chain_id = chain_id
        self.fill = AsyncMock(return_value=action)
        self.settle = AsyncMock(return_value=None)


class FakeFactory(ChainHandlerFactory):
    chain_type = "EVM"

    def __init__(self, *handlers):
        super().__init__()
        self.prebuilt = {h.chain_id: h for h in handlers}

    def supports_chain(self, chain_id):
        return chain_id in self.prebuilt

    def _build(self, chain_id):
        return self.prebuilt[chain_id]


class FixedRule(Rule):
    def __init__(self, name, passed):
        self.name = name
        self.passed = passed

    async def evaluate(self, args):
        return RuleResult(self.passed, "fixed")


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def quiet(*args, **kwargs):
    pass


@pytest.fixture
def metrics():
    return SolverMetrics(registry=CollectorRegistry())


def sample(metrics, name, **labels):
    return metrics.registry.get_sample_value(name, labels) or 0


def make_solver(handlers, metrics, bus, passed=True, sleep=None):
    engine = RulesEngine([FixedRule("Gate", passed)], log_event=quiet)
    return Hyperlane7683Solver(
        [FakeFactory(*handlers)],
        engine,
        settle_delay=3.0,
        event_bus=bus,
        metrics=metrics,
        log_event=quiet,
        sleep=sleep or SleepRecorder(),
    )


class TestProcessIntent:
    @pytest.mark.asyncio
    async def test_rule_failure_rejects(self, metrics):
        bus = EventBus(log_event=quiet)
        handler = FakeHandler(10)
        solver = make_solver([handler], metrics, bus, passed=False)

        assert await solver.process_intent(make_args(10), "Base", 5) is False

        handler.fill.assert_not_awaited()
        assert sample(metrics, "intents_total", result="rejected") == 1
        assert sample(metrics, "rule_failures_total", rule="Gate") == 1
        (event,) = bus.get_history(EventType.INTENT_REJECTED)
        assert event.data["rule"] == "Gate"
        assert event.source == "Base"

    @pytest.mark.asyncio
    async def test_fill_then_settle(self, metrics):
        bus = EventBus(log_event=quiet)
        sleep = SleepRecorder()
        handler = FakeHandler(10, OrderAction.SETTLE)
        solver = make_solver([handler], metrics, bus, sleep=sleep)
        args = make_args(10)

        assert await solver.process_intent(args, "Base", 5) is True

        handler.fill.assert_awaited_once_with(args)
        handler.settle.assert_awaited_once_with(args)
        assert sleep.calls == [3.0]
        assert sample(metrics, "intents_total", result="settled") == 1
        assert len(bus.get_history(EventType.INTENT_FILLED)) == 1
        assert len(bus.get_history(EventType.INTENT_SETTLED)) == 1
        count = sample(metrics, "handler_latency_seconds_count", operation="fill", chain_type="EVM")
        assert count == 1

    @pytest.mark.asyncio
    async def test_complete_skips_settle(self, metrics):
        sleep = SleepRecorder()
        handler = FakeHandler(10, OrderAction.COMPLETE)
        solver = make_solver([handler], metrics, EventBus(log_event=quiet), sleep=sleep)

        assert await solver.process_intent(make_args(10)) is True

        handler.settle.assert_not_awaited()
        assert sleep.calls == []
        assert sample(metrics, "intents_total", result="complete") == 1

    @pytest.mark.asyncio
    async def test_error_action_fails(self, metrics):
        handler = FakeHandler(10, OrderAction.ERROR)
        solver = make_solver([handler], metrics, EventBus(log_event=quiet))

        assert await solver.process_intent(make_args(10)) is False

        handler.settle.assert_not_awaited()
        assert sample(metrics, "intents_total", result="failed") == 1

    @pytest.mark.asyncio
    async def test_handler_exception_is_contained(self, metrics):
        bus = EventBus(log_event=quiet)
        handler = FakeHandler(10)
        handler.fill = AsyncMock(side_effect=ChainHandlerError("fill transaction reverted"))
        solver = make_solver([handler], metrics, bus)

        assert await solver.process_intent(make_args(10), "Base") is False

        (event,) = bus.get_history(EventType.INTENT_FAILED)
        assert "reverted" in event.data["error"]

    @pytest.mark.asyncio
    async def test_settle_failure_is_contained(self, metrics):
        handler = FakeHandler(10)
        handler.settle = AsyncMock(side_effect=ChainHandlerError("order status must be FILLED"))
        solver = make_solver([handler], metrics, EventBus(log_event=quiet))

        assert await solver.process_intent(make_args(10)) is False
        assert sample(metrics, "intents_total", result="failed") == 1

    @pytest.mark.asyncio
    async def test_no_fill_instructions(self, metrics):
        solver = make_solver([FakeHandler(10)], metrics, EventBus(log_event=quiet))
        assert await solver.process_intent(make_args()) is False

    @pytest.mark.asyncio
    async def test_unsupported_destination(self, metrics):
        solver = make_solver([FakeHandler(10)], metrics, EventBus(log_event=quiet))
        assert await solver.process_intent(make_args(999)) is False
        with pytest.raises(ChainHandlerError):
            solver.handler_for(999)

    @pytest.mark.asyncio
    async def test_every_instruction_filled_and_settled(self, metrics):
        first = FakeHandler(10, OrderAction.COMPLETE)
        second = FakeHandler(8453, OrderAction.SETTLE)
        solver = make_solver([first, second], metrics, EventBus(log_event=quiet))

        assert await solver.process_intent(make_args(10, 8453)) is True

        first.fill.assert_awaited_once()
        second.fill.assert_awaited_once()
        first.settle.assert_awaited_once()
        second.settle.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_without_bus_or_metrics(self):
        handler = FakeHandler(10, OrderAction.COMPLETE)
        engine = RulesEngine([FixedRule("Gate", True)], log_event=quiet)
        solver = Hyperlane7683Solver([FakeFactory(handler)], engine, log_event=quiet)
        assert await solver.process_intent(make_args(10)) is True


def make_settings(networks, **overrides) -> Settings:
    fields = dict(
        log_level="info",
        log_format="text",
        log_file=None,
        max_retries=3,
        solvers={"hyperlane7683": True},
        state_file="unused.json",
        metrics_port=0,
        metrics_token=None,
        http_timeout=5.0,
        private_key=None,
        solver_address="0x" + "99" * 20,
        starknet_solver_address="0x123",
        ztarknet_solver_address=None,
        expected_fees=0,
        min_profit_threshold=0,
        settle_delay_sec=1.0,
        settle_retry_delay_sec=0.5,
        allow_block_file=None,
        seed_missing_networks=False,
        skip_settle_networks=(),
        networks=networks,
    )
    fields.update(overrides)
    return Settings(**fields)


class TestSolverManager:
    @pytest.mark.asyncio
    async def test_prepare_state_creates_file(self, tmp_path, networks):
        state = AtomicSolverStateStore(str(tmp_path / "state.json"))
        manager = SolverManager(make_settings(networks), state, log_event=quiet)

        await manager.prepare_state()

        for name in ("Base", "Optimism", "Starknet"):
            assert await state.get_last_indexed_block(name) == 0

    @pytest.mark.asyncio
    async def test_prepare_state_seeds_new_networks_when_allowed(self, tmp_path, networks):
        state = AtomicSolverStateStore(str(tmp_path / "state.json"))
        await state.initialize({"Base": 42})
        manager = SolverManager(make_settings(networks, seed_missing_networks=True), state, log_event=quiet)

        await manager.prepare_state()

        assert await state.get_last_indexed_block("Base") == 42
        assert await state.has_network("Optimism")
        assert await state.has_network("Starknet")

    @pytest.mark.asyncio
    async def test_prepare_state_leaves_missing_networks_by_default(self, tmp_path, networks):
        state = AtomicSolverStateStore(str(tmp_path / "state.json"))
        await state.initialize({"Base": 42})
        manager = SolverManager(make_settings(networks), state, log_event=quiet)

        await manager.prepare_state()

        assert not await state.has_network("Optimism")

    @pytest.mark.asyncio
    async def test_build_solver_wires_factories(self, tmp_path, networks):
        state = AtomicSolverStateStore(str(tmp_path / "state.json"))
        manager = SolverManager(
            make_settings(networks, skip_settle_networks=("Starknet",)), state, log_event=quiet
        )
        solver = manager.build_solver()
        try:
            assert isinstance(solver.factories[0], EVMHandlerFactory)
            assert isinstance(solver.factories[1], StarknetHandlerFactory)
            assert [r.name for r in solver.rules_engine.rules] == [
                "AllowBlockList", "BalanceCheck", "ProfitabilityCheck",
            ]
            assert solver.settle_delay == 1.0
            handler = solver.handler_for(10)
            assert isinstance(handler, EVMChainHandler)
            assert handler.skip_settle_origin_domains == {23448591}
            assert handler.settle_retries == 3
            assert handler.transactor is None
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_build_listener_by_chain_family(self, tmp_path, networks):
        state = AtomicSolverStateStore(str(tmp_path / "state.json"))
        manager = SolverManager(make_settings(networks), state, log_event=quiet)
        try:
            assert isinstance(manager.build_listener("Base"), EVMListener)
            starknet = manager.build_listener("Starknet")
            assert isinstance(starknet, StarknetListener)
            assert starknet.config.max_block_range == 100
            with pytest.raises(KeyError):
                manager.build_listener("Polygon")
        finally:
            await manager.close()

    @pytest.mark.asyncio
    async def test_disabled_solver_starts_nothing(self, tmp_path, networks):
        state = AtomicSolverStateStore(str(tmp_path / "state.json"))
        health = HealthChecker()
        manager = SolverManager(
            make_settings(networks, solvers={"hyperlane7683": False}), state, health=health, log_event=quiet
        )

        await manager.start()
        await manager.wait()
        await manager.stop()

        assert manager.listeners == []
        assert not health.is_ready()
