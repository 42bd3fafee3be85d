"""Error Handling Package

Error taxonomy, run-scoped error tracking, and retry helpers for the
connectivity test orchestrator.
"""

from .error_manager import (
    ErrorHandler,
    ErrorRecord,
    ErrorContext,
    ErrorSeverity,
    ErrorCategory,
    RetryConfig,
    retry_async
)
from .exceptions import (
    ConnectivityTestError,
    ConfigurationError,
    DeployError,
    DeployErrorKind,
    DriverError,
    DriverErrorKind,
    FaultApplyError,
    TeardownError,
    RunAbortedError,
    MetricsScrapeError,
    MetricsUploadError,
    EvaluationError,
    EvaluationErrorKind
)

__all__ = [
    "ErrorHandler",
    "ErrorRecord",
    "ErrorContext",
    "ErrorSeverity",
    "ErrorCategory",
    "RetryConfig",
    "retry_async",
    "ConnectivityTestError",
    "ConfigurationError",
    "DeployError",
    "DeployErrorKind",
    "DriverError",
    "DriverErrorKind",
    "FaultApplyError",
    "TeardownError",
    "RunAbortedError",
    "MetricsScrapeError",
    "MetricsUploadError",
    "EvaluationError",
    "EvaluationErrorKind"
]
