"""Connectivity Test Data Models

Shared data models for TestRuns, telemetry samples, test evidence, and
verification results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UpstreamProtocol(Enum):
    """Protocol the edge hub uses to reach the cloud"""
    MQTT = "Mqtt"
    AMQP = "Amqp"
    MQTT_WS = "MqttWs"
    AMQP_WS = "AmqpWs"


class ControllerState(Enum):
    """Network fault controller states"""
    IDLE = "idle"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    DEGRADED = "degraded"


class NetworkProfile(Enum):
    """Network conditions the fault controller can apply"""
    ONLINE = "Online"
    OFFLINE = "Offline"
    RESTRICT_BANDWIDTH = "RestrictBandwidth"
    SATELLITE_LATENCY = "SatelliteLatency"
    CELLULAR_3G = "Cellular3G"

    @property
    def state(self) -> ControllerState:
        """Controller state reached by applying this profile"""
        if self is NetworkProfile.ONLINE:
            return ControllerState.CONNECTED
        if self is NetworkProfile.OFFLINE:
            return ControllerState.DISCONNECTED
        return ControllerState.DEGRADED


class FaultMode(Enum):
    """Universe of transitions available to the fault controller"""
    ALL = "All"
    OFFLINE = "Offline"
    DEGRADED = "Degraded"

    @property
    def allowed_states(self) -> FrozenSet[ControllerState]:
        if self is FaultMode.OFFLINE:
            return frozenset({ControllerState.CONNECTED, ControllerState.DISCONNECTED})
        if self is FaultMode.DEGRADED:
            return frozenset({ControllerState.CONNECTED, ControllerState.DEGRADED})
        return frozenset({
            ControllerState.CONNECTED,
            ControllerState.DISCONNECTED,
            ControllerState.DEGRADED
        })

    @property
    def fault_profiles(self) -> List[NetworkProfile]:
        """Profiles cycled through when expanding a frequency schedule"""
        if self is FaultMode.OFFLINE:
            return [NetworkProfile.OFFLINE]
        if self is FaultMode.DEGRADED:
            return [
                NetworkProfile.RESTRICT_BANDWIDTH,
                NetworkProfile.SATELLITE_LATENCY,
                NetworkProfile.CELLULAR_3G
            ]
        return [
            NetworkProfile.OFFLINE,
            NetworkProfile.RESTRICT_BANDWIDTH,
            NetworkProfile.SATELLITE_LATENCY,
            NetworkProfile.CELLULAR_3G
        ]


class UploadTarget(Enum):
    """Destinations for scraped metrics"""
    AZURE_LOG_ANALYTICS = "AzureLogAnalytics"
    STORE = "Store"


class RunStatus(Enum):
    """TestRun lifecycle"""
    PENDING = "pending"
    DEPLOYING = "deploying"
    RUNNING = "running"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    ABORTED = "aborted"


class EventKind(Enum):
    """Kinds of evidence recorded for a TestRun"""
    SENT = "sent"
    RECEIVED = "received"
    FAULT_START = "fault_start"
    FAULT_END = "fault_end"


class Verdict(Enum):
    """Final verification outcome"""
    PASS = "pass"
    FAIL = "fail"
    INCOMPLETE_EVIDENCE = "incomplete_evidence"


class TestRun(BaseModel):
    """One end-to-end execution of the connectivity test"""
    __test__ = False

    run_id: str
    release_label: str
    build_number: str
    architecture: str
    protocol: UpstreamProtocol
    test_duration: float
    test_start_delay: float
    verification_delay: float
    created_at: datetime
    started_at: Optional[datetime] = None
    status: RunStatus = RunStatus.PENDING

    @property
    def evaluation_offset(self) -> float:
        """Seconds after run start before evidence may be scored"""
        return self.test_start_delay + self.test_duration + self.verification_delay


class MetricSample(BaseModel):
    """Metrics scraped from one endpoint at one point in time"""
    endpoint: str
    timestamp: datetime
    payload: List[Dict[str, Any]] = Field(default_factory=list)


class TestEvent(BaseModel):
    """A piece of evidence tagged with its run id"""
    __test__ = False

    run_id: str
    module: str
    kind: EventKind
    timestamp: datetime
    sequence: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ModuleVerification(BaseModel):
    """Per-module reconciliation evidence"""
    model_config = ConfigDict(frozen=True)

    module: str
    passed: bool
    sent: int = 0
    received: int = 0
    duplicates: int = 0
    missing: int = 0
    missing_in_fault_windows: int = 0
    unexpected: int = 0
    first_event_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    reasons: List[str] = Field(default_factory=list)


class VerificationResult(BaseModel):
    """Final verdict for a TestRun"""
    model_config = ConfigDict(frozen=True)

    run_id: str
    architecture: str
    verdict: Verdict
    evaluated_at: datetime
    modules: List[ModuleVerification] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.verdict == Verdict.PASS


@dataclass
class RunOutcome:
    """Terminal outcome of a TestRun: Completed(result) or Aborted(error)"""
    run: TestRun
    result: Optional[VerificationResult] = None
    error: Optional[BaseException] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.error is None and self.result is not None

    @property
    def aborted(self) -> bool:
        return not self.completed

    @property
    def verdict(self) -> Optional[Verdict]:
        return self.result.verdict if self.result else None
