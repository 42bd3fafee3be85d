"""Load Generator Driver

Drives the load-generation module: probes it once at start, then sends
sequenced synthetic messages on an absolute schedule and records every
accepted message as evidence for the result coordinator.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..clock import Clock
from ..error_handling.error_manager import (
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    RetryConfig,
    retry_async
)
from ..error_handling.exceptions import DriverError, DriverErrorKind
from ..models import EventKind, TestEvent

logger = logging.getLogger(__name__)


class LoadGenClient:
    """HTTP client for the load-generation module"""

    def __init__(self, endpoint: str, request_timeout: float = 10.0):
        self.endpoint = endpoint.rstrip("/")
        self._timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session"""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        """Close the HTTP session"""
        if self._session and not self._session.closed:
            await self._session.close()

    async def check_reachable(self) -> None:
        """Probe the module's status endpoint

        Raises:
            DriverError: MODULE_UNREACHABLE if the module does not answer
        """
        session = await self._get_session()
        try:
            async with session.get(f"{self.endpoint}/status") as response:
                if response.status >= 400:
                    raise DriverError(
                        DriverErrorKind.MODULE_UNREACHABLE,
                        f"Load generator answered HTTP {response.status}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DriverError(DriverErrorKind.MODULE_UNREACHABLE, f"Load generator unreachable: {e}")

    async def send(self, message: Dict[str, Any]) -> None:
        """Ask the module to send one message upstream

        Raises:
            DriverError: SEND_REJECTED if the module did not accept the message
        """
        session = await self._get_session()
        try:
            async with session.post(f"{self.endpoint}/messages", json=message) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise DriverError(
                        DriverErrorKind.SEND_REJECTED,
                        f"HTTP {response.status}: {error_text.strip()[:200]}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DriverError(DriverErrorKind.SEND_REJECTED, f"Request failed: {type(e).__name__}")


class LoadGeneratorDriver:
    """Sends sequenced messages through the load-generation module"""

    def __init__(
        self,
        client,
        run_id: str,
        store=None,
        clock: Optional[Clock] = None,
        error_handler: Optional[ErrorHandler] = None,
        module_name: str = "loadGen1",
        probe_retry: Optional[RetryConfig] = None
    ):
        """Initialize driver

        Args:
            client: Load-gen module client (check_reachable/send)
            run_id: TestRun the messages belong to
            store: Result store receiving Sent events
            clock: Time source
            error_handler: Run error log for failed sends
            module_name: Sender module name recorded with the evidence
            probe_retry: Retry policy for the reachability probe
        """
        self.client = client
        self.run_id = run_id
        self.store = store
        self.clock = clock or Clock()
        self.error_handler = error_handler or ErrorHandler()
        self.module_name = module_name
        self.probe_retry = probe_retry or RetryConfig(max_attempts=3, base_delay=2.0, jitter=False)

        self.message_interval: Optional[float] = None
        self.sent_count = 0
        self.failed_count = 0
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Future] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, message_interval: float) -> asyncio.Task:
        """Probe the module, then start sending in a background task

        Args:
            message_interval: Seconds between messages

        Raises:
            DriverError: MODULE_UNREACHABLE if the module cannot be reached
        """
        if message_interval <= 0:
            raise ValueError("Message interval must be positive")
        if self.is_running:
            raise RuntimeError("Load generator driver already running")

        try:
            await retry_async(
                self.client.check_reachable,
                self.probe_retry,
                sleep=self.clock.sleep,
                description=f"{self.module_name} probe"
            )
        except DriverError:
            raise
        except Exception as e:
            raise DriverError(DriverErrorKind.MODULE_UNREACHABLE, f"Load generator unreachable: {e}")

        self.message_interval = message_interval
        self._task = asyncio.create_task(self._send_loop(message_interval), name=f"load-gen-{self.run_id}")
        logger.info(f"Load generation started for run {self.run_id}: one message every {message_interval}s")
        return self._task

    async def _send_loop(self, interval: float) -> None:
        started = self.clock.monotonic()
        sequence = 0

        while True:
            await self.clock.sleep_until(started + sequence * interval)
            # A message the module accepted is always recorded, even when stopping.
            self._in_flight = asyncio.ensure_future(self._send(sequence))
            await asyncio.shield(self._in_flight)
            sequence += 1

    async def _send(self, sequence: int) -> None:
        timestamp = self.clock.now()
        message = {
            "runId": self.run_id,
            "module": self.module_name,
            "sequence": sequence,
            "timestamp": timestamp.isoformat()
        }

        try:
            await self.client.send(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed_count += 1
            self.error_handler.handle_error(
                e,
                ErrorContext(component="load_generator", operation="send", run_id=self.run_id),
                ErrorCategory.LOAD_GENERATION,
                ErrorSeverity.MEDIUM
            )
            return

        self.sent_count += 1
        if self.store is None:
            return

        try:
            await self.store.record_event(TestEvent(
                run_id=self.run_id,
                module=self.module_name,
                kind=EventKind.SENT,
                timestamp=timestamp,
                sequence=sequence
            ))
        except Exception as e:
            self.error_handler.handle_error(
                e,
                ErrorContext(component="load_generator", operation="record", run_id=self.run_id),
                ErrorCategory.STORAGE,
                ErrorSeverity.MEDIUM
            )

    async def stop(self) -> None:
        """Stop sending"""
        if self._task is None:
            return

        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Load generation for run {self.run_id} failed: {e}")
        finally:
            if self._in_flight is not None and not self._in_flight.done():
                await asyncio.gather(self._in_flight, return_exceptions=True)
            logger.info(
                f"Load generation stopped for run {self.run_id}: "
                f"{self.sent_count} sent, {self.failed_count} failed"
            )
