"""Monitoring Package

Metrics scraping and the log analytics sink.
"""

from .log_analytics import LogAnalyticsClient, build_signature, rfc1123_date
from .metrics_collector import (
    MetricsCollector,
    MetricsUploader,
    LogAnalyticsUploader,
    StoreUploader,
    parse_metrics
)

__all__ = [
    "LogAnalyticsClient",
    "build_signature",
    "rfc1123_date",
    "MetricsCollector",
    "MetricsUploader",
    "LogAnalyticsUploader",
    "StoreUploader",
    "parse_metrics"
]
