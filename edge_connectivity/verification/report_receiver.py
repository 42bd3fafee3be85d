"""Delivery Report Receiver

HTTP endpoint the receiving modules report delivered messages to. A receiving
module posts back the message it got from the load generator (run id, sending
module, sequence, send timestamp) plus when it arrived. Each accepted report
is stored as Received evidence filed under the module that sent the message,
which is what the coordinator reconciles against that module's Sent evidence.

Reports for another run, or bodies that are not reports, are rejected with
HTTP 400 and counted as run warnings. A store failure is answered with 503 so
the module can report again.
"""

import json
import logging
from datetime import datetime
from typing import Any, List, Optional

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..clock import Clock
from ..error_handling.error_manager import (
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity
)
from ..models import EventKind, TestEvent
from ..storage.result_store import StorageError

logger = logging.getLogger(__name__)

REPORT_PATH = "/api/testoperationresults"


class DeliveryReport(BaseModel):
    """One delivered message as reported by the module that received it"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    run_id: str = Field(alias="runId", min_length=1)
    module: str = Field(min_length=1)
    sequence: int = Field(ge=0)
    sent_at: datetime = Field(alias="timestamp")
    received_at: Optional[datetime] = Field(default=None, alias="receivedAt")
    receiver: Optional[str] = None


class ReportRejected(ValueError):
    """A report the receiver will not record"""
    pass


class ReportReceiver:
    """Records delivery reports as Received evidence for the active run"""

    def __init__(
        self,
        store,
        host: str = "0.0.0.0",
        port: int = 5001,
        clock: Optional[Clock] = None
    ):
        """Initialize report receiver

        Args:
            store: Result store the evidence is written to
            host: Interface to listen on
            port: Port to listen on (0 picks a free port)
            clock: Time source for reports without an arrival time
        """
        self.store = store
        self.host = host
        self.port = port
        self.clock = clock or Clock()
        self.error_handler = ErrorHandler()

        self.run_id: Optional[str] = None
        self.received_count = 0
        self.rejected_count = 0
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(REPORT_PATH, self.handle_reports)
        return app

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    @property
    def bound_port(self) -> Optional[int]:
        """Port actually listened on, once started"""
        if self._runner is None:
            return None
        for address in self._runner.addresses:
            if isinstance(address, tuple):
                return address[1]
        return None

    def accept(self, run_id: str, error_handler: Optional[ErrorHandler] = None) -> None:
        """Record reports for this run from now on; rejections go to error_handler"""
        self.run_id = run_id
        if error_handler is not None:
            self.error_handler = error_handler

    async def start(self, run_id: str, error_handler: Optional[ErrorHandler] = None) -> None:
        """Listen for reports for a run"""
        self.accept(run_id, error_handler)
        if self._runner is not None:
            return

        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        logger.info(f"Accepting delivery reports for run {run_id} on {self.host}:{self.bound_port}{REPORT_PATH}")

    async def stop(self) -> None:
        """Stop accepting reports"""
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.info(
            f"Report receiver stopped: {self.received_count} reports recorded, "
            f"{self.rejected_count} rejected"
        )

    async def handle_reports(self, request: web.Request) -> web.Response:
        """POST handler: a single report object or a list of them"""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return self._rejected(ReportRejected(f"Report body is not JSON: {e}"))

        try:
            recorded = await self.record_reports(body if isinstance(body, list) else [body])
        except ReportRejected as e:
            return self._rejected(e)
        except StorageError as e:
            logger.error(f"Failed to record delivery reports: {e}")
            return web.json_response({"error": "result store unavailable"}, status=503)

        return web.json_response({"recorded": recorded}, status=202)

    async def record_reports(self, reports: List[Any]) -> int:
        """Validate reports and store them as Received evidence

        Returns:
            Number of reports recorded

        Raises:
            ReportRejected: If a report is malformed or belongs to another run;
                nothing from the batch is stored
            StorageError: If the store cannot be written
        """
        if self.run_id is None:
            raise ReportRejected("No run is accepting reports")

        events = []
        for raw in reports:
            try:
                report = DeliveryReport.model_validate(raw)
            except ValidationError as e:
                raise ReportRejected(f"Malformed report: {e.error_count()} invalid fields")
            if report.run_id != self.run_id:
                raise ReportRejected(f"Report for run {report.run_id}, expected {self.run_id}")

            payload = {"sentAt": report.sent_at.isoformat()}
            if report.receiver:
                payload["receiver"] = report.receiver
            events.append(TestEvent(
                run_id=report.run_id,
                module=report.module,
                kind=EventKind.RECEIVED,
                timestamp=report.received_at or self.clock.now(),
                sequence=report.sequence,
                payload=payload
            ))

        recorded = await self.store.record_events(events)
        self.received_count += recorded
        return recorded

    def _rejected(self, error: ReportRejected) -> web.Response:
        self.rejected_count += 1
        self.error_handler.handle_error(
            error,
            ErrorContext(component="report_receiver", operation="record", run_id=self.run_id),
            ErrorCategory.EVALUATION,
            ErrorSeverity.LOW
        )
        return web.json_response({"error": str(error)}, status=400)
