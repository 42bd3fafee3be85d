"""Network Fault Controller

State machine that walks a FaultSchedule, applying each window's network
profile to the target host. Whatever happens to the TestRun, the controller
ends by restoring the network (CONNECTED) and then parking in IDLE.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from ..clock import Clock
from ..error_handling.error_manager import (
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    RetryConfig,
    retry_async
)
from ..error_handling.exceptions import ConfigurationError, TeardownError
from ..models import ControllerState, EventKind, NetworkProfile, TestEvent
from .actuator import NetworkActuator
from .fault_schedule import FaultSchedule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """A network state the controller reached"""
    timestamp: datetime
    state: ControllerState
    profile: NetworkProfile


class NetworkFaultController:
    """Drives scheduled network faults for one TestRun"""

    def __init__(
        self,
        schedule: FaultSchedule,
        actuator: NetworkActuator,
        run_id: str,
        clock: Optional[Clock] = None,
        store=None,
        error_handler: Optional[ErrorHandler] = None,
        teardown_timeout: float = 60.0,
        apply_retry_delay: float = 1.0,
        restore_retry: Optional[RetryConfig] = None,
        module_name: str = "networkController"
    ):
        """Initialize controller

        Args:
            schedule: Fault windows to apply in order
            actuator: Applies network profiles to the host
            run_id: TestRun the fault events are tagged with
            clock: Time source
            store: Result store receiving fault window events
            error_handler: Run error log for skipped transitions
            teardown_timeout: Upper bound on the restoring teardown
            apply_retry_delay: Pause before retrying a failed transition
            restore_retry: Retry policy for restoring the network

        Raises:
            ConfigurationError: If the schedule leaves the mode's transitions
        """
        try:
            schedule.validate()
        except ValueError as e:
            raise ConfigurationError(str(e))

        self.schedule = schedule
        self.actuator = actuator
        self.run_id = run_id
        self.clock = clock or Clock()
        self.store = store
        self.error_handler = error_handler or ErrorHandler()
        self.teardown_timeout = teardown_timeout
        self.apply_retry_delay = apply_retry_delay
        self.restore_retry = restore_retry or RetryConfig(max_attempts=3, base_delay=1.0, jitter=False)
        self.module_name = module_name

        self.state = ControllerState.IDLE
        self.network_state: Optional[ControllerState] = None
        self.transitions: List[Transition] = []
        self.skipped_transitions = 0
        self._open_fault: Optional[NetworkProfile] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start walking the schedule in a background task"""
        if self.is_running:
            raise RuntimeError("Network fault controller already running")
        self._task = asyncio.create_task(self.run(), name=f"network-controller-{self.run_id}")
        return self._task

    async def run(self) -> None:
        """Apply every window in order, then hold the network connected"""
        logger.info(
            f"Starting fault schedule for run {self.run_id}: {len(self.schedule)} windows, "
            f"mode {self.schedule.mode.value}"
        )

        for window in self.schedule:
            await self._transition(window.profile)
            await self.clock.sleep(window.duration)

        if self.network_state != ControllerState.CONNECTED:
            await self._transition(NetworkProfile.ONLINE)

        logger.info(f"Fault schedule for run {self.run_id} exhausted, network held connected")

    async def _transition(self, profile: NetworkProfile) -> bool:
        """Apply a profile, retrying once before skipping it"""
        if profile.state not in self.schedule.mode.allowed_states:
            raise ConfigurationError(
                f"Mode {self.schedule.mode.value} does not allow {profile.value}"
            )

        try:
            await self.actuator.apply(profile)
        except Exception as first_error:
            logger.warning(f"Applying {profile.value} failed ({first_error}), retrying once")
            await self.clock.sleep(self.apply_retry_delay)
            try:
                await self.actuator.apply(profile)
            except Exception as e:
                self.skipped_transitions += 1
                self.error_handler.handle_error(
                    e,
                    ErrorContext(
                        component="network_controller",
                        operation="apply",
                        run_id=self.run_id,
                        additional_data={"profile": profile.value}
                    ),
                    ErrorCategory.NETWORK_FAULT,
                    ErrorSeverity.MEDIUM
                )
                return False

        await self._record(profile)
        return True

    async def _record(self, profile: NetworkProfile) -> None:
        """Record a reached state and publish fault window boundaries"""
        now = self.clock.now()
        state = profile.state
        self.state = state
        self.network_state = state
        self.transitions.append(Transition(timestamp=now, state=state, profile=profile))
        logger.info(f"Network state for run {self.run_id}: {state.value} ({profile.value})")

        if self._open_fault is not None and self._open_fault != profile:
            await self._publish(EventKind.FAULT_END, self._open_fault, now)
            self._open_fault = None

        if state != ControllerState.CONNECTED and self._open_fault is None:
            self._open_fault = profile
            await self._publish(EventKind.FAULT_START, profile, now)

    async def _publish(self, kind: EventKind, profile: NetworkProfile, timestamp: datetime) -> None:
        if self.store is None:
            return

        event = TestEvent(
            run_id=self.run_id,
            module=self.module_name,
            kind=kind,
            timestamp=timestamp,
            payload={"profile": profile.value}
        )
        try:
            await self.store.record_event(event)
        except Exception as e:
            self.error_handler.handle_error(
                e,
                ErrorContext(component="network_controller", operation="publish", run_id=self.run_id),
                ErrorCategory.STORAGE,
                ErrorSeverity.MEDIUM
            )

    async def stop(self) -> None:
        """Cancel the schedule and restore the network"""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Network fault controller for run {self.run_id} failed: {e}")
        elif self._task is not None and not self._task.cancelled() and self._task.exception():
            logger.error(
                f"Network fault controller for run {self.run_id} failed: {self._task.exception()}"
            )

        await self.restore()

    async def restore(self) -> None:
        """Force the network back to CONNECTED, then go IDLE

        Raises:
            TeardownError: If the network could not be restored
        """
        try:
            await retry_async(
                self.actuator.restore,
                self.restore_retry,
                sleep=self.clock.sleep,
                description="network restore"
            )
        except Exception as e:
            logger.critical(f"Failed to restore network for run {self.run_id}: {e}")
            raise TeardownError(f"Failed to restore network for run {self.run_id}: {e}") from e

        await self._record(NetworkProfile.ONLINE)
        self.state = ControllerState.IDLE
        logger.info(f"Network restored for run {self.run_id}")

    async def shutdown(self) -> None:
        """Stop and restore within the teardown timeout

        Raises:
            TeardownError: If restoring did not finish in time or failed
        """
        try:
            await asyncio.wait_for(self.stop(), timeout=self.teardown_timeout)
        except asyncio.TimeoutError:
            logger.critical(
                f"Network teardown for run {self.run_id} exceeded {self.teardown_timeout}s; "
                f"host network may still be impaired"
            )
            raise TeardownError(
                f"Network teardown exceeded {self.teardown_timeout}s for run {self.run_id}"
            )
