"""Tests for Error Handling System"""

import logging
from unittest.mock import AsyncMock

import pytest

from edge_connectivity.error_handling import (
    ConfigurationError,
    DeployError,
    DeployErrorKind,
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    EvaluationError,
    EvaluationErrorKind,
    RetryConfig,
    retry_async
)


class TestErrorHandler:
    """Test cases for error handler"""

    def setup_method(self):
        """Set up test fixtures"""
        self.error_handler = ErrorHandler()

    def test_error_handler_initialization(self):
        """Test error handler initialization"""
        assert len(self.error_handler.error_records) == 0
        assert self.error_handler.max_records == 1000
        assert self.error_handler.get_warnings() == []

    def test_handle_basic_error(self):
        """Test basic error handling"""
        error = ValueError("Test error")
        context = ErrorContext(component="metrics_collector", operation="scrape", run_id="run-1")

        record = self.error_handler.handle_error(
            error, context, ErrorCategory.METRICS, ErrorSeverity.MEDIUM
        )

        assert record.category == ErrorCategory.METRICS
        assert record.severity == ErrorSeverity.MEDIUM
        assert record.message == "Test error"
        assert record.exception_type == "ValueError"
        assert record.occurrence_count == 1
        assert record.error_id.startswith("err_")

    def test_repeated_errors_fold_into_one_record(self):
        """Test the same failure is recorded once with a count"""
        context = ErrorContext(component="metrics_collector", operation="scrape")

        for _ in range(5):
            self.error_handler.handle_error(
                ConnectionError("Failed to scrape http://host:9600/metrics"),
                context,
                ErrorCategory.METRICS
            )

        assert len(self.error_handler.error_records) == 1
        record = next(iter(self.error_handler.error_records.values()))
        assert record.occurrence_count == 5

        warnings = self.error_handler.get_warnings()
        assert warnings == [
            "[metrics] metrics_collector.scrape: Failed to scrape http://host:9600/metrics (x5)"
        ]

    def test_warnings_keep_first_occurrence_order(self):
        """Test warnings are listed in the order they first happened"""
        self.error_handler.handle_error(
            ValueError("first"), ErrorContext("load_generator", "send"), ErrorCategory.LOAD_GENERATION
        )
        self.error_handler.handle_error(
            ValueError("second"), ErrorContext("network_controller", "apply"), ErrorCategory.NETWORK_FAULT
        )

        warnings = self.error_handler.get_warnings()
        assert len(warnings) == 2
        assert warnings[0].startswith("[load_generation]")
        assert warnings[1].startswith("[network_fault]")

    def test_severity_sets_log_level(self, caplog):
        """Test the first occurrence is logged at the severity's level, repeats only at debug"""
        context = ErrorContext(component="orchestrator", operation="restore_network", run_id="run-1")

        with caplog.at_level(logging.DEBUG, logger="edge_connectivity.error_handling.error_manager"):
            for _ in range(2):
                self.error_handler.handle_error(
                    TimeoutError("restore timed out"), context, ErrorCategory.TEARDOWN, ErrorSeverity.CRITICAL
                )

        levels = [record.levelno for record in caplog.records if "restore timed out" in record.getMessage()]
        assert levels == [logging.CRITICAL, logging.DEBUG]

    def test_record_limit(self):
        """Test the least recently seen records are dropped past the limit"""
        handler = ErrorHandler(max_records=3)
        for index in range(5):
            handler.handle_error(
                ValueError(f"error {index}"), ErrorContext("collector", "scrape"), ErrorCategory.METRICS
            )

        assert len(handler.error_records) == 3
        messages = {record.message for record in handler.error_records.values()}
        assert messages == {"error 2", "error 3", "error 4"}

    def test_recurring_error_survives_eviction(self):
        """Test an error that keeps happening is not evicted by newer ones"""
        handler = ErrorHandler(max_records=2)
        recurring = ConnectionError("Failed to scrape http://host:9600/metrics")
        context = ErrorContext("metrics_collector", "scrape")

        handler.handle_error(recurring, context, ErrorCategory.METRICS)
        handler.handle_error(ValueError("batch dropped"), ErrorContext("collector", "upload"), ErrorCategory.METRICS)
        handler.handle_error(recurring, context, ErrorCategory.METRICS)
        handler.handle_error(ValueError("skipped fault"), ErrorContext("controller", "apply"), ErrorCategory.NETWORK_FAULT)

        messages = {record.message for record in handler.error_records.values()}
        assert messages == {"Failed to scrape http://host:9600/metrics", "skipped fault"}


class TestRetryConfig:
    """Test cases for retry configuration"""

    def test_exponential_backoff(self):
        """Test delays double up to the cap"""
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [config.delay_for(attempt) for attempt in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_fixed_delay(self):
        """Test fixed delays without backoff"""
        config = RetryConfig(base_delay=2.0, exponential_backoff=False, jitter=False)
        assert config.delay_for(0) == config.delay_for(3) == 2.0

    def test_jitter_bounds(self):
        """Test jitter stays within half to one and a half times the delay"""
        config = RetryConfig(base_delay=2.0, exponential_backoff=False, jitter=True)
        for _ in range(20):
            assert 1.0 <= config.delay_for(0) <= 3.0


class TestRetryAsync:
    """Test cases for the async retry helper"""

    @pytest.mark.asyncio
    async def test_success_after_retries(self):
        """Test an operation that succeeds on the third attempt"""
        operation = AsyncMock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])
        sleep = AsyncMock()

        result = await retry_async(operation, RetryConfig(max_attempts=3, base_delay=1.0, jitter=False), sleep=sleep)

        assert result == "ok"
        assert operation.call_count == 3
        assert [call.args[0] for call in sleep.call_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_last_error(self):
        """Test the last exception propagates once attempts run out"""
        operation = AsyncMock(side_effect=[ConnectionError("first"), ConnectionError("last")])

        with pytest.raises(ConnectionError, match="last"):
            await retry_async(operation, RetryConfig(max_attempts=2, jitter=False), sleep=AsyncMock())

    @pytest.mark.asyncio
    async def test_non_retryable_exception(self):
        """Test exceptions outside the retryable set are not retried"""
        operation = AsyncMock(side_effect=KeyError("nope"))

        with pytest.raises(KeyError):
            await retry_async(
                operation,
                RetryConfig(max_attempts=5),
                retryable_exceptions=(ConnectionError,),
                sleep=AsyncMock()
            )
        assert operation.call_count == 1


class TestExceptions:
    """Test cases for the error taxonomy"""

    def test_deploy_error_kind(self):
        """Test deploy errors carry their kind"""
        error = DeployError(DeployErrorKind.IMAGE_PULL_FAILED, "manifest unknown")
        assert error.kind == DeployErrorKind.IMAGE_PULL_FAILED
        assert str(error) == "image_pull_failed: manifest unknown"

    def test_configuration_error_is_value_error(self):
        """Test configuration errors can be caught as ValueError"""
        assert isinstance(ConfigurationError("bad"), ValueError)

    def test_evaluation_error_carries_result(self):
        """Test incomplete evidence errors keep the persisted result"""
        result = object()
        error = EvaluationError(EvaluationErrorKind.INCOMPLETE_EVIDENCE, "incomplete", result=result)
        assert error.result is result
        assert error.kind == EvaluationErrorKind.INCOMPLETE_EVIDENCE
