"""
State persistence package.
"""

from oif_solver.state.solver_state import AtomicSolverStateStore, SolverStateStore, StateError

__all__ = [
    "AtomicSolverStateStore",
    "SolverStateStore",
    "StateError",
]
