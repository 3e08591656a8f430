"""
SolverManager: wires settings into clients, handlers, rules and listeners.

Architecture:
    Settings / NetworkRegistry
        -> one RPC client per network (EVM or Starknet JSON-RPC)
        -> EVM + Starknet handler factories (handlers cached per chain)
        -> RulesEngine [AllowBlockList, BalanceCheck, ProfitabilityCheck]
        -> Hyperlane7683Solver
        -> one listener task per network with a settler address

    Listener tasks share only the solver state store. A listener that
    dies with an exception is reported through the HealthChecker; the
    other listeners keep running.

Usage:
    manager = SolverManager(settings, state, metrics=metrics)
    await manager.start()
    ...
    await manager.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Mapping, Optional

from oif_solver.config.settings import Settings
from oif_solver.core.event_bus import EventBus
from oif_solver.core.json_utils import dumps
from oif_solver.handlers.evm import EVMHandlerFactory
from oif_solver.handlers.starknet import StarknetHandlerFactory
from oif_solver.infra.evm_rpc import EvmRpcClient, EvmTransactor
from oif_solver.infra.starknet_rpc import StarknetAccount, StarknetRpcClient
from oif_solver.listener.base import BaseListener, ListenerConfig
from oif_solver.listener.evm import EVMListener
from oif_solver.listener.starknet import StarknetListener
from oif_solver.monitoring.metrics import HealthChecker
from oif_solver.orchestrator.solver import SOLVER_NAME, Hyperlane7683Solver
from oif_solver.rules.allow_block import AllowBlockListRule
from oif_solver.rules.balance import BalanceRule, ChainBalanceReader
from oif_solver.rules.engine import RulesEngine
from oif_solver.rules.profitability import ProfitabilityRule
from oif_solver.state.solver_state import AtomicSolverStateStore
from oif_solver.types import AllowBlockLists

log = logging.getLogger("oifsolver")


class SolverManager:
    def __init__(
        self,
        settings: Settings,
        state: AtomicSolverStateStore,
        allow_block_lists: Optional[AllowBlockLists] = None,
        metrics=None,
        event_bus: Optional[EventBus] = None,
        health: Optional[HealthChecker] = None,
        starknet_accounts: Optional[Mapping[int, StarknetAccount]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.settings = settings
        self.networks = settings.networks
        self.state = state
        self.allow_block_lists = allow_block_lists or AllowBlockLists()
        self.metrics = metrics
        self.event_bus = event_bus
        self.health = health
        self.starknet_accounts: Dict[int, StarknetAccount] = dict(starknet_accounts or {})
        self._log = log_event or self._default_log

        self.evm_clients: Dict[int, EvmRpcClient] = {}
        self.starknet_clients: Dict[int, StarknetRpcClient] = {}
        self.transactors: Dict[int, EvmTransactor] = {}
        self.listeners: List[BaseListener] = []
        self._tasks: Dict[str, asyncio.Task] = {}
        self._signer = self._load_signer()
        self.solvers: Dict[str, Hyperlane7683Solver] = {}

    def _default_log(self, event: str, **kwargs) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def _load_signer(self):
        try:
            return self.settings.resolve_signer()
        except RuntimeError:
            return None

    # -------------------------------------------------------------------------
    # Clients
    # -------------------------------------------------------------------------

    def evm_client(self, chain_id: int) -> EvmRpcClient:
        client = self.evm_clients.get(chain_id)
        if client is None:
            net = self.networks.by_chain_id(chain_id)
            if net is None:
                raise KeyError(f"no network config for chain id {chain_id}")
            client = EvmRpcClient(net.rpc_url, timeout=self.settings.http_timeout)
            self.evm_clients[chain_id] = client
        return client

    def starknet_client(self, chain_id: int) -> StarknetRpcClient:
        client = self.starknet_clients.get(chain_id)
        if client is None:
            net = self.networks.by_chain_id(chain_id)
            if net is None:
                raise KeyError(f"no network config for chain id {chain_id}")
            client = StarknetRpcClient(net.rpc_url, timeout=self.settings.http_timeout)
            self.starknet_clients[chain_id] = client
        return client

    def evm_transactor(self, chain_id: int) -> Optional[EvmTransactor]:
        if self._signer is None:
            return None
        transactor = self.transactors.get(chain_id)
        if transactor is None:
            transactor = EvmTransactor(self.evm_client(chain_id), self._signer, chain_id)
            self.transactors[chain_id] = transactor
        return transactor

    def starknet_account(self, chain_id: int) -> Optional[StarknetAccount]:
        return self.starknet_accounts.get(chain_id)

    def _starknet_owners(self) -> Dict[int, str]:
        owners: Dict[int, str] = {}
        for net in self.networks:
            if not net.is_starknet:
                continue
            address = (
                self.settings.ztarknet_solver_address
                if "ztarknet" in net.name.lower()
                else self.settings.starknet_solver_address
            )
            if address:
                owners[net.chain_id] = address
        return owners

    # -------------------------------------------------------------------------
    # Solver assembly
    # -------------------------------------------------------------------------

    def build_rules_engine(self) -> RulesEngine:
        evm_owner = self._signer.address if self._signer is not None else self.settings.solver_address
        reader = ChainBalanceReader(
            self.networks,
            evm_client_for=self.evm_client,
            starknet_client_for=self.starknet_client,
            evm_owner=evm_owner,
            starknet_owners=self._starknet_owners(),
        )
        return RulesEngine([
            AllowBlockListRule(self.allow_block_lists),
            BalanceRule(reader),
            ProfitabilityRule(self.settings.expected_fees, self.settings.min_profit_threshold),
        ])

    def build_solver(self) -> Hyperlane7683Solver:
        skip_domains = [self.networks.get(name).domain for name in self.settings.skip_settle_networks]
        handler_kwargs = dict(
            settle_retries=self.settings.max_retries,
            settle_retry_delay=self.settings.settle_retry_delay_sec,
            skip_settle_origin_domains=skip_domains,
        )
        factories = [
            EVMHandlerFactory(self.networks, self.evm_client, self.evm_transactor, **handler_kwargs),
            StarknetHandlerFactory(self.networks, self.starknet_client, self.starknet_account, **handler_kwargs),
        ]
        return Hyperlane7683Solver(
            factories,
            self.build_rules_engine(),
            settle_delay=self.settings.settle_delay_sec,
            event_bus=self.event_bus,
            metrics=self.metrics,
        )

    def build_listener(self, name: str) -> BaseListener:
        net = self.networks.get(name)
        if net is None:
            raise KeyError(f"unknown network {name}")
        config = ListenerConfig.from_network(net)
        if net.is_starknet:
            return StarknetListener(config, self.starknet_client(net.chain_id), self.state, self.networks, metrics=self.metrics)
        return EVMListener(config, self.evm_client(net.chain_id), self.state, self.networks, metrics=self.metrics)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def prepare_state(self) -> None:
        """Create the state file on first run; seed networks added since when allowed."""
        start_blocks = {net.name: net.solver_start_block for net in self.networks}
        await self.state.initialize(start_blocks)
        if not self.settings.seed_missing_networks:
            return
        for name, block in start_blocks.items():
            if not await self.state.has_network(name):
                await self.state.seed_network(name, max(0, block))
                self._log("network_seeded", network=name, block=max(0, block))

    def _on_listener_done(self, name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(dumps({"event": "listener_crashed", "network": name, "error": str(exc)}))
            if self.health is not None:
                self.health.set_component_health(f"listener:{name}", False, str(exc))

    async def start(self) -> None:
        await self.prepare_state()
        for solver_name, enabled in self.settings.solvers.items():
            if not enabled:
                self._log("solver_disabled", solver=solver_name)
                continue
            if solver_name != SOLVER_NAME:
                raise ValueError(f"unknown solver {solver_name}")
            solver = self.build_solver()
            self.solvers[solver_name] = solver
            for name in self.networks.names():
                net = self.networks.get(name)
                if not net.hyperlane_address:
                    self._log("listener_skipped", network=name, reason="no settler address")
                    continue
                listener = self.build_listener(name)
                self.listeners.append(listener)
                task = listener.start(solver.process_intent)
                task.add_done_callback(lambda t, n=name: self._on_listener_done(n, t))
                self._tasks[name] = task
                if self.health is not None:
                    self.health.set_component_health(f"listener:{name}", True)
                self._log("listener_started", solver=solver_name, network=name, chain_id=net.chain_id)
        self._log("solver_manager_started", listeners=len(self._tasks))

    async def wait(self) -> None:
        """Block until every listener task has ended."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def stop(self, timeout: float = 30.0) -> None:
        for listener in self.listeners:
            listener.stop()
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await self.close()
        self._log("solver_manager_stopped")

    async def close(self) -> None:
        for client in list(self.evm_clients.values()) + list(self.starknet_clients.values()):
            await client.close()
        self.evm_clients.clear()
        self.starknet_clients.clear()
        self.transactors.clear()
