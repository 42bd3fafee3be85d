"""Orchestration Package"""

from .test_orchestrator import (
    ConnectivityTestOrchestrator,
    RunComponents,
    outcome_report,
    save_report
)

__all__ = [
    "ConnectivityTestOrchestrator",
    "RunComponents",
    "outcome_report",
    "save_report"
]
