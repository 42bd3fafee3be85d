"""Shared fixtures: a virtual clock and fake collaborators"""

import asyncio
import heapq
import itertools
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from edge_connectivity.clock import Clock
from edge_connectivity.deployment.manifest import module_names
from edge_connectivity.deployment.runtime import RuntimeBackend
from edge_connectivity.error_handling.exceptions import (
    DriverError,
    DriverErrorKind,
    FaultApplyError
)
from edge_connectivity.models import (
    ControllerState,
    EventKind,
    NetworkProfile,
    TestEvent,
    TestRun,
    UpstreamProtocol
)
from edge_connectivity.network.actuator import NetworkActuator
from edge_connectivity.storage.result_store import ResultStore
from edge_connectivity.verification.report_receiver import ReportReceiver


class ManualClock(Clock):
    """Virtual clock: time only moves once the event loop has gone quiet

    A background task wakes the earliest sleeper, jumping time straight to its
    deadline, so hours of scheduled work complete in milliseconds. Work that
    waits on something other than the clock, such as aiosqlite queries running
    on their own thread, holds the clock while in flight. Time never jumps
    during a hold, nor while tasks are still parking new sleepers.
    """

    def __init__(self, start: Optional[datetime] = None, step_delay: float = 0.002, quiet_passes: int = 5):
        self.start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.step_delay = step_delay
        self.quiet_passes = quiet_passes
        self._now = 0.0
        self._sleepers = []
        self._counter = itertools.count()
        self._holds = 0
        self._activity = 0
        self._task: Optional[asyncio.Task] = None

    def monotonic(self) -> float:
        return self._now

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self._now)

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._counter), future))
        self._activity += 1
        await future

    @asynccontextmanager
    async def hold(self):
        """Keep time still until the block finishes"""
        self._holds += 1
        self._activity += 1
        try:
            yield
        finally:
            self._holds -= 1
            self._activity += 1

    def advance(self, seconds: float) -> None:
        """Move time forward without waking anyone"""
        self._now += seconds

    def start_advancing(self) -> None:
        self._task = asyncio.create_task(self._advance_loop())

    async def stop_advancing(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

    async def _is_quiet(self) -> bool:
        seen = self._activity
        for _ in range(self.quiet_passes):
            if self._holds or self._activity != seen:
                return False
            await asyncio.sleep(0)
        return not self._holds and self._activity == seen

    async def _advance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.step_delay)
            if not await self._is_quiet():
                continue
            while self._sleepers and self._sleepers[0][2].done():
                heapq.heappop(self._sleepers)
            if not self._sleepers:
                continue

            wake_at = self._sleepers[0][0]
            self._now = max(self._now, wake_at)
            while self._sleepers and self._sleepers[0][0] <= self._now:
                _, _, future = heapq.heappop(self._sleepers)
                if not future.done():
                    future.set_result(None)


# ResultStore coroutines that wait on the database thread
STORE_ROUND_TRIPS = (
    "connect",
    "save_run",
    "get_run_status",
    "record_events",
    "get_events",
    "save_verification_result",
    "get_verification_result",
    "count_verification_results",
    "store_metric_samples",
    "get_metric_samples",
)


def hold_clock_during_io(store: ResultStore, clock: ManualClock) -> ResultStore:
    """Make the virtual clock wait for every store round trip"""
    for name in STORE_ROUND_TRIPS:
        operation = getattr(store, name)

        async def held(*args, _operation=operation, **kwargs):
            async with clock.hold():
                return await _operation(*args, **kwargs)

        setattr(store, name, held)
    return store


class FakeActuator(NetworkActuator):
    """Records applied profiles; can be told to fail or hang"""

    def __init__(self):
        self.applied: List[NetworkProfile] = []
        self.fail_profiles: Dict[NetworkProfile, int] = {}
        self.hang_on_restore = False

    async def apply(self, profile: NetworkProfile) -> None:
        remaining = self.fail_profiles.get(profile, 0)
        if remaining:
            self.fail_profiles[profile] = remaining - 1
            raise FaultApplyError(f"tc exited with 2 applying {profile.value}")
        if profile == NetworkProfile.ONLINE and self.hang_on_restore:
            await asyncio.Event().wait()
        self.applied.append(profile)


class FakeRuntimeBackend(RuntimeBackend):
    """Runtime backend keeping module state in memory

    `partial_modules` are left installed by an apply that then fails.
    """

    def __init__(self):
        self.apply_calls = 0
        self.failures: List[Exception] = []
        self.partial_modules: Dict[str, str] = {}
        self.teardown_error: Optional[Exception] = None
        self.modules: Dict[str, str] = {}
        self.torn_down = False

    async def apply(self, manifest_path, manifest) -> None:
        self.apply_calls += 1
        assert manifest_path.exists()
        if self.failures:
            self.modules.update(self.partial_modules)
            raise self.failures.pop(0)
        self.modules = {name: "running" for name in module_names(manifest)}

    async def list_modules(self) -> Dict[str, str]:
        return dict(self.modules)

    async def teardown(self) -> None:
        if self.teardown_error is not None:
            raise self.teardown_error
        self.modules = {}
        self.torn_down = True


class FakeLoadClient:
    """Load-gen module stand-in that delivers messages while the network is up

    Delivered messages are recorded as Received evidence under the sender's
    module name: reported to a ReportReceiver when one is given, otherwise
    written to the store directly.
    """

    def __init__(self, store=None, receiver=None):
        self.store = store
        self.receiver = receiver
        self.reachable = True
        self.reject_sequences = set()
        self.network_state = lambda: ControllerState.CONNECTED
        self.messages: List[dict] = []
        self.closed = False

    async def check_reachable(self) -> None:
        if not self.reachable:
            raise DriverError(DriverErrorKind.MODULE_UNREACHABLE, "Load generator unreachable")

    async def send(self, message: dict) -> None:
        if message["sequence"] in self.reject_sequences:
            raise DriverError(DriverErrorKind.SEND_REJECTED, "HTTP 503: busy")
        self.messages.append(message)
        if self.network_state() == ControllerState.DISCONNECTED:
            return
        if self.receiver is not None:
            await self.receiver.record_reports([dict(message, receiver="relayer1")])
            return
        if self.store is None:
            return
        await self.store.record_event(TestEvent(
            run_id=message["runId"],
            module=message["module"],
            kind=EventKind.RECEIVED,
            timestamp=datetime.fromisoformat(message["timestamp"]),
            sequence=message["sequence"]
        ))

    async def close(self) -> None:
        self.closed = True


METRICS_TEXT = """# HELP edgehub_messages_received_total Messages received
# TYPE edgehub_messages_received_total counter
edgehub_messages_received_total{route="upstream"} 42.0
# HELP edgehub_queue_length Queue length
# TYPE edgehub_queue_length gauge
edgehub_queue_length 3.0
"""

DEPLOYMENT_TEMPLATE = json.dumps({
    "modulesContent": {
        "$edgeAgent": {
            "properties.desired": {
                "runtime": {
                    "settings": {
                        "registryCredentials": {
                            "edgebuilds": {
                                "address": "<CR.Address>",
                                "username": "<CR.Username>",
                                "password": "<CR.Password>"
                            }
                        }
                    }
                },
                "systemModules": {
                    "edgeHub": {"settings": {"image": "<CR.Address>/edgehub:<Build.BuildNumber>"}}
                },
                "modules": {
                    "loadGen1": {
                        "settings": {"image": "<CR.Address>/load-gen:<Build.BuildNumber>"},
                        "env": {
                            "messageFrequency": {"value": "<LoadGen.MessageFrequency>"},
                            "trackingId": {"value": "<TrackingId>"}
                        }
                    },
                    "networkController": {
                        "settings": {"image": "<CR.Address>/network-controller:<Build.BuildNumber>"},
                        "env": {
                            "frequencies": {"value": "<NetworkController.Frequencies>"},
                            "mode": {"value": "<NetworkController.RunProfile>"}
                        }
                    }
                }
            }
        },
        "$edgeHub": {
            "properties.desired": {"schemaVersion": "1.0"}
        }
    }
}, indent=2)


@pytest_asyncio.fixture
async def manual_clock():
    """Virtual clock advancing in the background"""
    clock = ManualClock()
    clock.start_advancing()
    yield clock
    await clock.stop_advancing()


@pytest_asyncio.fixture
async def result_store(tmp_path, manual_clock):
    """Connected result store backed by a temporary database

    Store round trips hold the virtual clock, so timed tasks are never skipped
    past their deadline while a query is in flight.
    """
    store = hold_clock_during_io(ResultStore(f"sqlite:///{tmp_path / 'results.db'}"), manual_clock)
    await store.connect()
    yield store
    await store.disconnect()


@pytest.fixture
def fake_actuator():
    return FakeActuator()


@pytest.fixture
def fake_runtime():
    return FakeRuntimeBackend()


@pytest.fixture
def fake_load_client(result_store):
    return FakeLoadClient(result_store)


@pytest.fixture
def metrics_text():
    return METRICS_TEXT


@pytest.fixture
def deployment_template():
    return DEPLOYMENT_TEMPLATE


@pytest.fixture
def make_run():
    """Factory for TestRuns with a 30s start delay, 600s duration, 60s verification delay"""
    def factory(**overrides) -> TestRun:
        values = dict(
            run_id="ct-linux_amd64_moby-0001",
            release_label="ct",
            build_number="20240101.1",
            architecture="linux_amd64_moby",
            protocol=UpstreamProtocol.AMQP,
            test_duration=600.0,
            test_start_delay=30.0,
            verification_delay=60.0,
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)
        )
        values.update(overrides)
        return TestRun(**values)
    return factory


@pytest.fixture
def http_response():
    """Factory for mocked aiohttp response context managers"""
    def factory(status: int = 200, text: str = ""):
        mock_response = AsyncMock()
        mock_response.status = status
        mock_response.text.return_value = text

        mock_context_manager = AsyncMock()
        mock_context_manager.__aenter__.return_value = mock_response
        mock_context_manager.__aexit__.return_value = None
        return mock_context_manager
    return factory


@pytest.fixture
def bare_load_client():
    """Load-gen stand-in that records no evidence"""
    return FakeLoadClient()


@pytest.fixture
def report_receiver(result_store, manual_clock):
    """Receiver on a free loopback port"""
    return ReportReceiver(result_store, host="127.0.0.1", port=0, clock=manual_clock)


@pytest.fixture
def reporting_load_client(report_receiver):
    """Load-gen stand-in whose deliveries are reported to the receiver"""
    return FakeLoadClient(receiver=report_receiver)
