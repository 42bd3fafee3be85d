"""Connectivity Test Exceptions

Error taxonomy shared by every component of the orchestrator. Fatal errors
(deployment, driver, teardown) abort a TestRun; the others are recorded as
run warnings by the ErrorHandler.
"""

from enum import Enum
from typing import Any, Optional


class ConnectivityTestError(Exception):
    """Base exception for connectivity test errors"""
    pass


class ConfigurationError(ConnectivityTestError, ValueError):
    """Raised when configuration is missing or invalid"""
    pass


class DeployErrorKind(Enum):
    """Reasons a deployment can fail"""
    IMAGE_PULL_FAILED = "image_pull_failed"
    REGISTRY_AUTH_FAILED = "registry_auth_failed"
    MANIFEST_INVALID = "manifest_invalid"
    TIMEOUT = "timeout"


class DeployError(ConnectivityTestError):
    """Raised when the edge runtime or its modules cannot be deployed"""

    def __init__(self, kind: DeployErrorKind, message: str):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind


class DriverErrorKind(Enum):
    """Reasons the load generator driver can fail"""
    MODULE_UNREACHABLE = "module_unreachable"
    SEND_REJECTED = "send_rejected"


class DriverError(ConnectivityTestError):
    """Raised when load generation cannot be started"""

    def __init__(self, kind: DriverErrorKind, message: str):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind


class FaultApplyError(ConnectivityTestError):
    """Raised when a network condition cannot be applied"""
    pass


class TeardownError(ConnectivityTestError):
    """Raised when the host network could not be restored"""
    pass


class RunAbortedError(ConnectivityTestError):
    """Raised when a TestRun is aborted on request"""
    pass


class MetricsScrapeError(ConnectivityTestError):
    """Raised when a metrics endpoint cannot be scraped"""
    pass


class MetricsUploadError(ConnectivityTestError):
    """Raised when a metrics batch cannot be uploaded"""
    pass


class EvaluationErrorKind(Enum):
    """Reasons an evaluation can fail"""
    STORE_UNREACHABLE = "store_unreachable"
    INCOMPLETE_EVIDENCE = "incomplete_evidence"


class EvaluationError(ConnectivityTestError):
    """Raised when a TestRun cannot be scored

    For INCOMPLETE_EVIDENCE the persisted result is attached so callers can
    report it without treating it as a pass or a fail.
    """

    def __init__(self, kind: EvaluationErrorKind, message: str, result: Optional[Any] = None):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.result = result
