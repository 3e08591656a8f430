from oif_solver.orchestrator.manager import SolverManager
from oif_solver.orchestrator.solver import Hyperlane7683Solver

__all__ = ["Hyperlane7683Solver", "SolverManager"]
