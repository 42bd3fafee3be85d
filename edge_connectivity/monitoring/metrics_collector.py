"""Metrics Collector

Scrapes Prometheus endpoints on a fixed interval for the whole TestRun and
uploads the labelled samples in batches. A failing endpoint or upload never
stops collection: failures are recorded once in the run's warning log and the
collector carries on with whatever it could gather.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from prometheus_client.parser import text_string_to_metric_families

from ..clock import Clock
from ..error_handling.error_manager import (
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    RetryConfig,
    retry_async
)
from ..error_handling.exceptions import MetricsScrapeError
from ..models import MetricSample
from .log_analytics import LogAnalyticsClient

logger = logging.getLogger(__name__)


def parse_metrics(text: str, labels: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
    """Parse Prometheus exposition text into labelled sample records

    Raises:
        ValueError: If the text is not valid exposition format
    """
    extra = dict(labels or {})
    samples = []
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            value = float(sample.value)
            samples.append({
                "name": sample.name,
                "type": family.type,
                "labels": {**sample.labels, **extra},
                "value": value if math.isfinite(value) else None,
                "timestamp": sample.timestamp,
            })
    return samples


class MetricsUploader(ABC):
    """Destination for scraped metric samples"""

    @abstractmethod
    async def upload(self, run_id: str, samples: List[MetricSample]) -> None:
        """Upload one batch

        Raises:
            MetricsUploadError: If the batch was not accepted
        """
        pass


class LogAnalyticsUploader(MetricsUploader):
    """Uploads samples as rows of a log analytics custom table"""

    def __init__(self, client: LogAnalyticsClient, log_type: str):
        self.client = client
        self.log_type = log_type

    @staticmethod
    def to_records(run_id: str, samples: List[MetricSample]) -> List[Dict[str, Any]]:
        records = []
        for sample in samples:
            for entry in sample.payload:
                records.append({
                    "RunId": run_id,
                    "Endpoint": sample.endpoint,
                    "TimeGeneratedUtc": sample.timestamp.isoformat(),
                    "Name": entry["name"],
                    "Value": entry["value"],
                    "Labels": entry["labels"],
                })
        return records

    async def upload(self, run_id: str, samples: List[MetricSample]) -> None:
        await self.client.post(self.to_records(run_id, samples), self.log_type)


class StoreUploader(MetricsUploader):
    """Keeps samples in the durable result store"""

    def __init__(self, store):
        self.store = store

    async def upload(self, run_id: str, samples: List[MetricSample]) -> None:
        await self.store.store_metric_samples(run_id, samples)


class MetricsCollector:
    """Periodic Prometheus scraper for one TestRun"""

    def __init__(
        self,
        run_id: str,
        host_platform: str,
        uploader: Optional[MetricsUploader] = None,
        clock: Optional[Clock] = None,
        error_handler: Optional[ErrorHandler] = None,
        request_timeout: float = 10.0,
        batch_size: int = 50,
        upload_retry: Optional[RetryConfig] = None
    ):
        """Initialize metrics collector

        Args:
            run_id: TestRun the samples are labelled with
            host_platform: Platform tag added to every sample
            uploader: Default upload target
            clock: Time source
            error_handler: Run error log for scrape and upload failures
            request_timeout: Per-scrape timeout in seconds
            batch_size: Samples per upload
            upload_retry: Retry policy for uploads
        """
        self.run_id = run_id
        self.host_platform = host_platform
        self.uploader = uploader
        self.clock = clock or Clock()
        self.error_handler = error_handler or ErrorHandler()
        self.batch_size = max(1, batch_size)
        self.upload_retry = upload_retry or RetryConfig(max_attempts=4, base_delay=2.0)

        self._timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._pending: List[MetricSample] = []
        self._task: Optional[asyncio.Task] = None
        self.endpoints: List[str] = []

        # Statistics
        self.scrape_count = 0
        self.uploaded_samples = 0
        self.dropped_samples = 0

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

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending_samples(self) -> int:
        return len(self._pending)

    async def start(
        self,
        endpoints: Sequence[str],
        scrape_interval_seconds: float,
        upload_target: Optional[MetricsUploader] = None
    ) -> asyncio.Task:
        """Start scraping in a background task

        Args:
            endpoints: Prometheus endpoint URLs
            scrape_interval_seconds: Seconds between scrapes
            upload_target: Uploader overriding the default one
        """
        if scrape_interval_seconds <= 0:
            raise ValueError("Scrape interval must be positive")
        if self.is_running:
            raise RuntimeError("Metrics collector already running")
        if upload_target is not None:
            self.uploader = upload_target
        if self.uploader is None:
            raise ValueError("Metrics collector needs an upload target")

        self.endpoints = list(endpoints)
        self._task = asyncio.create_task(
            self._run(scrape_interval_seconds),
            name=f"metrics-collector-{self.run_id}"
        )
        logger.info(
            f"Metrics collection started for run {self.run_id}: "
            f"{len(self.endpoints)} endpoints every {scrape_interval_seconds}s"
        )
        return self._task

    async def _run(self, interval: float) -> None:
        started = self.clock.monotonic()
        tick = 0
        while True:
            await self.clock.sleep_until(started + tick * interval)
            samples = await self.collect_once()
            self._pending.extend(samples)
            await self.flush()
            tick += 1

    async def collect_once(self) -> List[MetricSample]:
        """Scrape every endpoint once, skipping the ones that fail"""
        results = await asyncio.gather(
            *(self.scrape_endpoint(endpoint) for endpoint in self.endpoints),
            return_exceptions=True
        )
        self.scrape_count += 1

        samples = []
        for endpoint, result in zip(self.endpoints, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self.error_handler.handle_error(
                    result,
                    ErrorContext(
                        component="metrics_collector",
                        operation="scrape",
                        run_id=self.run_id,
                        additional_data={"endpoint": endpoint}
                    ),
                    ErrorCategory.METRICS,
                    ErrorSeverity.MEDIUM
                )
                continue
            samples.append(result)
        return samples

    async def scrape_endpoint(self, endpoint: str) -> MetricSample:
        """Scrape and parse one endpoint

        Raises:
            MetricsScrapeError: If the endpoint cannot be scraped or parsed
        """
        timestamp = self.clock.now()
        text = await self._fetch(endpoint)
        try:
            payload = parse_metrics(text, {"hostPlatform": self.host_platform, "runId": self.run_id})
        except ValueError as e:
            raise MetricsScrapeError(f"Invalid metrics from {endpoint}: {e}")
        return MetricSample(endpoint=endpoint, timestamp=timestamp, payload=payload)

    async def _fetch(self, endpoint: str) -> str:
        session = await self._get_session()
        try:
            async with session.get(endpoint) as response:
                if response.status != 200:
                    raise MetricsScrapeError(f"Failed to scrape {endpoint}: HTTP {response.status}")
                return await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MetricsScrapeError(f"Failed to scrape {endpoint}: {type(e).__name__}")

    async def flush(self) -> None:
        """Upload pending samples in batches, dropping batches that keep failing"""
        while self._pending:
            batch = self._pending[:self.batch_size]
            try:
                await retry_async(
                    lambda: self.uploader.upload(self.run_id, batch),
                    self.upload_retry,
                    sleep=self.clock.sleep,
                    description="metrics upload"
                )
                self.uploaded_samples += len(batch)
            except Exception as e:
                self.dropped_samples += len(batch)
                self.error_handler.handle_error(
                    e,
                    ErrorContext(
                        component="metrics_collector",
                        operation="upload",
                        run_id=self.run_id,
                        additional_data={"dropped_samples": len(batch)}
                    ),
                    ErrorCategory.METRICS,
                    ErrorSeverity.MEDIUM
                )
            del self._pending[:len(batch)]

    async def stop(self) -> None:
        """Stop scraping and flush what is left"""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Metrics collection for run {self.run_id} failed: {e}")

        if self.uploader is not None:
            await self.flush()
        await self.close()
        logger.info(
            f"Metrics collection stopped for run {self.run_id}: "
            f"{self.uploaded_samples} samples uploaded, {self.dropped_samples} dropped"
        )
