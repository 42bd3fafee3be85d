"""Network Fault Injection

Scheduled network impairment of the target host during a TestRun.
"""

from .fault_schedule import FaultSchedule, FaultWindow
from .actuator import NetworkActuator, TrafficControlActuator, TC_PROFILES
from .controller import NetworkFaultController, Transition

__all__ = [
    "FaultSchedule",
    "FaultWindow",
    "NetworkActuator",
    "TrafficControlActuator",
    "TC_PROFILES",
    "NetworkFaultController",
    "Transition"
]
