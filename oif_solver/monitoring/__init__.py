from oif_solver.monitoring.metrics import HealthChecker, SolverMetrics, start_metrics_server

__all__ = ["HealthChecker", "SolverMetrics", "start_metrics_server"]
