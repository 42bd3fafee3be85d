"""Error Handling Manager

Structured error tracking and retry logic for a connectivity TestRun. Every
non-fatal failure (a skipped fault injection, an unreachable metrics endpoint,
a dropped metrics batch) becomes an ErrorRecord; the records make up the
run-level warning log reported alongside the verification result.
"""

import asyncio
import hashlib
import logging
import random
import traceback
from datetime import datetime
from typing import Dict, Any, Optional, Callable, Awaitable, List, Tuple, Type, TypeVar
from enum import Enum
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """Error severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification"""
    CONFIGURATION = "configuration"
    DEPLOYMENT = "deployment"
    NETWORK_FAULT = "network_fault"
    LOAD_GENERATION = "load_generation"
    METRICS = "metrics"
    STORAGE = "storage"
    EVALUATION = "evaluation"
    TEARDOWN = "teardown"


@dataclass
class ErrorContext:
    """Context information for error tracking"""
    component: str
    operation: str
    timestamp: datetime = field(default_factory=datetime.now)
    run_id: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorRecord:
    """Comprehensive error record"""
    error_id: str
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    context: ErrorContext
    exception_type: str
    traceback_info: Optional[str] = None
    occurrence_count: int = 1
    first_occurred: datetime = field(default_factory=datetime.now)
    last_occurred: datetime = field(default_factory=datetime.now)

    def describe(self) -> str:
        """One-line description used in run warning logs"""
        text = (
            f"[{self.category.value}] {self.context.component}.{self.context.operation}: "
            f"{self.message}"
        )
        if self.occurrence_count > 1:
            text += f" (x{self.occurrence_count})"
        return text


class RetryConfig:
    """Configuration for retry logic"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_backoff: bool = True,
        jitter: bool = True
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_backoff = exponential_backoff
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry following the given zero-based attempt"""
        if self.exponential_backoff:
            delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        else:
            delay = self.base_delay

        if self.jitter:
            delay *= (0.5 + random.random())

        return delay


class ErrorHandler:
    """Run-scoped error log

    Repeated occurrences of the same error are folded into one record so a
    permanently failing endpoint produces a single warning instead of one per
    scrape. At most `max_records` distinct errors are kept; the least recently
    seen are dropped first.
    """

    def __init__(self, max_records: int = 1000):
        self.max_records = max_records
        self.error_records: Dict[str, ErrorRecord] = {}

    def handle_error(
        self,
        error: Exception,
        context: ErrorContext,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM
    ) -> ErrorRecord:
        """Record a non-fatal failure and log it once

        Args:
            error: The exception that occurred
            context: Component, operation, and run the failure belongs to
            category: Category of the error
            severity: Log level of the first occurrence

        Returns:
            The record the failure was folded into
        """
        error_id = self._generate_error_id(error, context)
        record = self.error_records.get(error_id)

        if record is None:
            record = ErrorRecord(
                error_id=error_id,
                category=category,
                severity=severity,
                message=str(error),
                context=context,
                exception_type=type(error).__name__,
                traceback_info=traceback.format_exc() if logger.isEnabledFor(logging.DEBUG) else None
            )
            self.error_records[error_id] = record
            self._evict_oldest()
        else:
            record.occurrence_count += 1
            record.last_occurred = datetime.now()
            # most recently seen last
            self.error_records[error_id] = self.error_records.pop(error_id)

        self._log_error(record)
        return record

    def _generate_error_id(self, error: Exception, context: ErrorContext) -> str:
        """Stable id: same exception type and message from the same operation"""
        signature = f"{type(error).__name__}:{error}:{context.component}:{context.operation}"
        digest = hashlib.sha1(signature.encode("utf-8")).hexdigest()
        return f"err_{digest[:8]}"

    def _log_error(self, record: ErrorRecord):
        message = (
            f"[{record.error_id}] {record.category.value.upper()}: "
            f"{record.message} in {record.context.component}.{record.context.operation}"
        )

        if record.occurrence_count > 1:
            logger.debug(f"{message} (occurrence #{record.occurrence_count})")
            return

        if record.context.additional_data:
            message += f" - Context: {record.context.additional_data}"

        level = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.HIGH: logging.ERROR,
            ErrorSeverity.MEDIUM: logging.WARNING,
        }.get(record.severity, logging.INFO)
        logger.log(level, message)

        if record.traceback_info:
            logger.debug(f"Traceback for {record.error_id}:\n{record.traceback_info}")

    def _evict_oldest(self):
        overflow = len(self.error_records) - self.max_records
        if overflow <= 0:
            return
        for error_id in list(self.error_records)[:overflow]:
            del self.error_records[error_id]

    def get_warnings(self) -> List[str]:
        """Run warning log in order of first occurrence"""
        return [
            record.describe()
            for record in sorted(self.error_records.values(), key=lambda r: r.first_occurred)
        ]


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    retry_config: Optional[RetryConfig] = None,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    description: str = "operation"
) -> T:
    """Run an async operation with exponential backoff

    Args:
        operation: Zero-argument coroutine factory
        retry_config: Retry configuration
        retryable_exceptions: Exceptions that should trigger a retry
        sleep: Sleep function used between attempts
        description: Name used in log messages

    Raises:
        The last exception once all attempts are exhausted
    """
    config = retry_config or RetryConfig()
    sleep = sleep or asyncio.sleep

    for attempt in range(config.max_attempts):
        try:
            return await operation()
        except retryable_exceptions as e:
            if attempt == config.max_attempts - 1:
                raise

            delay = config.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt + 1}/{config.max_attempts} failed for "
                f"{description}: {e}. Retrying in {delay:.2f}s"
            )
            await sleep(delay)

    raise RuntimeError(f"{description} was not attempted (max_attempts={config.max_attempts})")
