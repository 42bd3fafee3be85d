"""Log Analytics Client

Posts JSON records to an Azure Log Analytics workspace through the HTTP Data
Collector API. Requests are signed with the workspace shared key.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Dict, List, Optional

import aiohttp

from ..error_handling.exceptions import ConfigurationError, MetricsUploadError

logger = logging.getLogger(__name__)

API_VERSION = "2016-04-01"
RESOURCE = "/api/logs"
CONTENT_TYPE = "application/json"


def build_signature(workspace_id: str, shared_key: str, date: str, content_length: int) -> str:
    """Authorization header value for one Data Collector request

    Args:
        workspace_id: Log analytics workspace id
        shared_key: Base64 workspace shared key
        date: RFC 1123 request date, also sent as x-ms-date
        content_length: Length of the request body in bytes
    """
    string_to_hash = f"POST\n{content_length}\n{CONTENT_TYPE}\nx-ms-date:{date}\n{RESOURCE}"
    try:
        decoded_key = base64.b64decode(shared_key)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Log analytics shared key is not valid base64: {e}")

    digest = hmac.new(decoded_key, string_to_hash.encode("utf-8"), digestmod=hashlib.sha256).digest()
    encoded_hash = base64.b64encode(digest).decode("utf-8")
    return f"SharedKey {workspace_id}:{encoded_hash}"


def rfc1123_date(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return format_datetime(moment.astimezone(timezone.utc), usegmt=True)


class LogAnalyticsClient:
    """Client for the Log Analytics HTTP Data Collector API"""

    def __init__(self, workspace_id: str, shared_key: str, request_timeout: float = 30.0):
        if not workspace_id or not shared_key:
            raise ConfigurationError("Log analytics workspace id and shared key are required")

        self.workspace_id = workspace_id
        self._shared_key = shared_key
        self._timeout = request_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self.url = f"https://{workspace_id}.ods.opinsights.azure.com{RESOURCE}?api-version={API_VERSION}"

    def __repr__(self) -> str:
        return f"LogAnalyticsClient(workspace_id={self.workspace_id!r})"

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

    async def post(self, records: List[Dict[str, Any]], log_type: str) -> None:
        """Post records to a custom log table

        Args:
            records: JSON-serializable records
            log_type: Custom log table name

        Raises:
            MetricsUploadError: If the workspace rejects or never receives the records
        """
        if not records:
            return

        body = json.dumps(records, default=str).encode("utf-8")
        date = rfc1123_date()
        headers = {
            "Content-Type": CONTENT_TYPE,
            "Authorization": build_signature(self.workspace_id, self._shared_key, date, len(body)),
            "Log-Type": log_type,
            "x-ms-date": date,
        }

        session = await self._get_session()
        try:
            async with session.post(self.url, data=body, headers=headers) as response:
                if 200 <= response.status < 300:
                    logger.debug(f"Posted {len(records)} records to {log_type}")
                    return
                error_text = await response.text()
                raise MetricsUploadError(f"Log analytics returned HTTP {response.status}: {error_text.strip()[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MetricsUploadError(f"Log analytics request failed: {type(e).__name__}: {e}")
