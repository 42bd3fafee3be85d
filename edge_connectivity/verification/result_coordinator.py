"""Test Result Coordinator

Scores a TestRun once its evidence has settled. The coordinator waits until
the start delay, the test duration, and the verification delay have all
elapsed, reconciles Sent and Received evidence per sender module, and writes
exactly one VerificationResult for the run.

Received events name the module that sent the message, so both sides of a
message reconcile under the sender's name. Messages that went missing while a
fault window was open (plus a grace period) are expected losses. A sender
with no Received evidence at all means the receiving side never reported, so
the run cannot be scored.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..clock import Clock
from ..error_handling.error_manager import (
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity
)
from ..error_handling.exceptions import EvaluationError, EvaluationErrorKind
from ..models import (
    EventKind,
    ModuleVerification,
    TestEvent,
    TestRun,
    Verdict,
    VerificationResult
)
from ..storage.result_store import StorageError

logger = logging.getLogger(__name__)

FaultInterval = Tuple[datetime, Optional[datetime]]


def fault_intervals(events: Iterable[TestEvent]) -> List[FaultInterval]:
    """Pair FaultStart/FaultEnd events into intervals; an unclosed window stays open"""
    intervals: List[FaultInterval] = []
    open_since: Optional[datetime] = None

    for event in sorted(events, key=lambda e: e.timestamp):
        if event.kind == EventKind.FAULT_START and open_since is None:
            open_since = event.timestamp
        elif event.kind == EventKind.FAULT_END and open_since is not None:
            intervals.append((open_since, event.timestamp))
            open_since = None

    if open_since is not None:
        intervals.append((open_since, None))
    return intervals


def in_fault_window(timestamp: datetime, intervals: Sequence[FaultInterval], grace: timedelta) -> bool:
    for start, end in intervals:
        if timestamp < start:
            continue
        if end is None or timestamp <= end + grace:
            return True
    return False


def reconcile_module(
    module: str,
    sent: List[TestEvent],
    received: List[TestEvent],
    intervals: Sequence[FaultInterval],
    tolerance: float,
    grace: timedelta
) -> ModuleVerification:
    """Reconcile one sender module's Sent and Received evidence"""
    sent_times: Dict[int, datetime] = {}
    for event in sent:
        if event.sequence is not None:
            sent_times.setdefault(event.sequence, event.timestamp)

    received_counts = Counter(event.sequence for event in received if event.sequence is not None)

    duplicates = sum(count - 1 for count in received_counts.values())
    unexpected = sorted(set(received_counts) - set(sent_times))
    missing = sorted(set(sent_times) - set(received_counts))
    missing_in_faults = [seq for seq in missing if in_fault_window(sent_times[seq], intervals, grace)]
    missing_outside = len(missing) - len(missing_in_faults)
    allowed_losses = tolerance * len(sent_times)

    reasons = []
    if unexpected:
        reasons.append(f"{len(unexpected)} received messages were never sent")
    if missing_outside > allowed_losses:
        reasons.append(
            f"{missing_outside} messages lost outside fault windows "
            f"(tolerance {allowed_losses:.1f} of {len(sent_times)})"
        )

    timestamps = [event.timestamp for event in list(sent) + list(received)]
    return ModuleVerification(
        module=module,
        passed=not reasons,
        sent=len(sent_times),
        received=len(received_counts),
        duplicates=duplicates,
        missing=len(missing),
        missing_in_fault_windows=len(missing_in_faults),
        unexpected=len(unexpected),
        first_event_at=min(timestamps) if timestamps else None,
        last_event_at=max(timestamps) if timestamps else None,
        reasons=reasons
    )


def reconcile(
    run: TestRun,
    events: Sequence[TestEvent],
    evaluated_at: datetime,
    expected_modules: Sequence[str] = (),
    tolerance: float = 0.01,
    grace_seconds: float = 5.0,
    warnings: Sequence[str] = ()
) -> Tuple[VerificationResult, List[str]]:
    """Score a run's evidence

    Returns:
        The verification result and the reasons the evidence is incomplete
        (empty unless the verdict is INCOMPLETE_EVIDENCE)
    """
    sent: Dict[str, List[TestEvent]] = defaultdict(list)
    received: Dict[str, List[TestEvent]] = defaultdict(list)
    fault_events = []
    for event in events:
        if event.kind == EventKind.SENT:
            sent[event.module].append(event)
        elif event.kind == EventKind.RECEIVED:
            received[event.module].append(event)
        else:
            fault_events.append(event)

    incomplete = []
    if not sent and not received:
        incomplete.append("no message evidence recorded")
    for module in expected_modules:
        if module not in sent:
            incomplete.append(f"no Sent evidence from {module}")
    for module in sorted(set(received) - set(sent)):
        incomplete.append(f"Received evidence for {module} without Sent evidence")
    for module in sorted(set(sent) - set(received)):
        incomplete.append(f"no Received evidence for {module}")

    intervals = fault_intervals(fault_events)
    grace = timedelta(seconds=grace_seconds)
    modules = [
        reconcile_module(module, sent[module], received.get(module, []), intervals, tolerance, grace)
        for module in sorted(sent)
    ]

    if incomplete:
        verdict = Verdict.INCOMPLETE_EVIDENCE
    elif all(module.passed for module in modules):
        verdict = Verdict.PASS
    else:
        verdict = Verdict.FAIL

    result = VerificationResult(
        run_id=run.run_id,
        architecture=run.architecture,
        verdict=verdict,
        evaluated_at=evaluated_at,
        modules=modules,
        warnings=list(warnings) + incomplete
    )
    return result, incomplete


class TestResultCoordinator:
    """Produces the single verdict of a TestRun"""
    __test__ = False

    def __init__(
        self,
        store,
        clock: Optional[Clock] = None,
        log_client=None,
        log_type: str = "connectivity",
        expected_modules: Sequence[str] = (),
        message_loss_tolerance: float = 0.01,
        fault_window_grace_seconds: float = 5.0,
        error_handler: Optional[ErrorHandler] = None
    ):
        """Initialize coordinator

        Args:
            store: Durable result store holding the evidence
            clock: Time source
            log_client: Log analytics client receiving the verdict (optional)
            log_type: Log analytics table for verdicts
            expected_modules: Sender modules that must have produced evidence
            message_loss_tolerance: Fraction of messages allowed to go missing outside fault windows
            fault_window_grace_seconds: Slack after a fault window closes
            error_handler: Run error log; its warnings are attached to the result
        """
        self.store = store
        self.clock = clock or Clock()
        self.log_client = log_client
        self.log_type = log_type
        self.expected_modules = list(expected_modules)
        self.message_loss_tolerance = message_loss_tolerance
        self.fault_window_grace_seconds = fault_window_grace_seconds
        self.error_handler = error_handler or ErrorHandler()

    async def evaluate(self, run: TestRun, started_at: float) -> VerificationResult:
        """Wait for the evidence to settle, then score the run

        Args:
            run: The TestRun to score
            started_at: Monotonic clock reading when the run started

        Returns:
            The run's VerificationResult (the stored one if already evaluated)

        Raises:
            EvaluationError: STORE_UNREACHABLE if the store cannot be read or
                written, INCOMPLETE_EVIDENCE (with the persisted result) if
                the evidence cannot support a verdict
        """
        deadline = started_at + run.evaluation_offset
        remaining = deadline - self.clock.monotonic()
        if remaining > 0:
            logger.info(f"Evaluation of run {run.run_id} waits {remaining:.0f}s for evidence to settle")
        await self.clock.sleep_until(deadline)

        events: List[TestEvent] = []
        try:
            if not self.store.connected:
                await self.store.connect()
            existing = await self.store.get_verification_result(run.run_id)
            if existing is None:
                events = await self.store.get_events(run.run_id)
        except StorageError as e:
            raise EvaluationError(EvaluationErrorKind.STORE_UNREACHABLE, str(e))

        if existing is not None:
            logger.info(f"Run {run.run_id} already evaluated: {existing.verdict.value}")
            return self._checked(existing)

        result, incomplete = reconcile(
            run,
            events,
            evaluated_at=self.clock.now(),
            expected_modules=self.expected_modules,
            tolerance=self.message_loss_tolerance,
            grace_seconds=self.fault_window_grace_seconds,
            warnings=self.error_handler.get_warnings()
        )

        try:
            written = await self.store.save_verification_result(result)
            if not written:
                result = await self.store.get_verification_result(run.run_id)
        except StorageError as e:
            raise EvaluationError(EvaluationErrorKind.STORE_UNREACHABLE, str(e))

        logger.info(
            f"Run {run.run_id} verdict: {result.verdict.value} "
            f"({len(result.modules)} modules, {len(result.warnings)} warnings)"
        )
        if written:
            await self._publish(result)
        return self._checked(result)

    def _checked(self, result: VerificationResult) -> VerificationResult:
        if result.verdict == Verdict.INCOMPLETE_EVIDENCE:
            raise EvaluationError(
                EvaluationErrorKind.INCOMPLETE_EVIDENCE,
                f"Evidence for run {result.run_id} is incomplete",
                result=result
            )
        return result

    async def _publish(self, result: VerificationResult) -> None:
        """Post the verdict to log analytics; failures only produce a warning"""
        if self.log_client is None:
            logger.debug("No log analytics workspace configured, verdict not posted")
            return

        record = {
            "RunId": result.run_id,
            "Architecture": result.architecture,
            "Verdict": result.verdict.value,
            "EvaluatedAtUtc": result.evaluated_at.isoformat(),
            "Modules": [module.model_dump(mode="json") for module in result.modules],
            "Warnings": result.warnings,
        }
        try:
            await self.log_client.post([record], self.log_type)
        except Exception as e:
            self.error_handler.handle_error(
                e,
                ErrorContext(component="result_coordinator", operation="publish", run_id=result.run_id),
                ErrorCategory.EVALUATION,
                ErrorSeverity.MEDIUM
            )
