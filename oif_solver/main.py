"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from oif_solver.config.allow_block import load_allow_block_lists
from oif_solver.config.settings import Settings
from oif_solver.core.event_bus import EventBus
from oif_solver.core.json_utils import dumps
from oif_solver.infra.logging_cfg import build_logger
from oif_solver.monitoring.metrics import HealthChecker, SolverMetrics, start_metrics_server
from oif_solver.orchestrator.manager import SolverManager
from oif_solver.state.solver_state import AtomicSolverStateStore

log = build_logger("oifsolver")


async def main() -> None:
    cfg = Settings.load()
    build_logger(
        "oifsolver",
        level=cfg.log_level_int,
        file_path=cfg.log_file,
        json_console=cfg.log_format == "json",
    )

    lists = load_allow_block_lists(cfg.allow_block_file)
    health = HealthChecker()
    metrics = SolverMetrics()
    event_bus = EventBus()
    state = AtomicSolverStateStore(cfg.state_file)

    srv = await start_metrics_server(metrics, cfg.metrics_port, auth_token=cfg.metrics_token, health_checker=health)
    bus_task = asyncio.create_task(event_bus.start())
    manager = SolverManager(cfg, state, lists, metrics=metrics, event_bus=event_bus, health=health)

    log.info(dumps({"event": "startup", "networks": cfg.networks.names(), "solvers": cfg.solvers}))

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        await manager.start()
        wait_task = asyncio.create_task(manager.wait())
        stop_task = asyncio.create_task(stop_event.wait())
        await asyncio.wait({wait_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        stop_task.cancel()
        log.info("Shutdown signal received, cleaning up...")
    finally:
        log.info("Stopping listeners and closing connections...")
        await manager.stop()
        event_bus.stop()
        bus_task.cancel()
        try:
            await bus_task
        except asyncio.CancelledError:
            pass
        srv.close()
        await srv.wait_closed()
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nSolver stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
