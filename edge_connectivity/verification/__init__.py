"""Verification Package"""

from .report_receiver import REPORT_PATH, DeliveryReport, ReportReceiver, ReportRejected
from .result_coordinator import (
    TestResultCoordinator,
    fault_intervals,
    reconcile,
    reconcile_module
)

__all__ = [
    "REPORT_PATH",
    "DeliveryReport",
    "ReportReceiver",
    "ReportRejected",
    "TestResultCoordinator",
    "fault_intervals",
    "reconcile",
    "reconcile_module"
]
