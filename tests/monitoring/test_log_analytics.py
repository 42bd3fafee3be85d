"""Tests for the Log Analytics client"""

import base64
import hashlib
import hmac
import json
import aiohttp
import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from edge_connectivity.error_handling import ConfigurationError, MetricsUploadError
from edge_connectivity.monitoring import LogAnalyticsClient, build_signature, rfc1123_date

SHARED_KEY = base64.b64encode(b"workspace-shared-key").decode()


class TestSignature:
    """Test cases for Data Collector request signing"""

    def test_signature(self):
        """Test the SharedKey signature over the canonical request"""
        date = "Mon, 01 Jan 2024 00:00:00 GMT"
        expected_digest = hmac.new(
            b"workspace-shared-key",
            f"POST\n42\napplication/json\nx-ms-date:{date}\n/api/logs".encode(),
            digestmod=hashlib.sha256
        ).digest()

        signature = build_signature("ws-1", SHARED_KEY, date, 42)

        assert signature == f"SharedKey ws-1:{base64.b64encode(expected_digest).decode()}"

    def test_invalid_key(self):
        """Test a shared key that is not base64"""
        with pytest.raises(ConfigurationError, match="base64"):
            build_signature("ws-1", "abc", "date", 1)

    def test_rfc1123_date(self):
        """Test request dates are rendered in GMT"""
        moment = datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)
        assert rfc1123_date(moment) == "Mon, 01 Jan 2024 12:30:00 GMT"


class TestLogAnalyticsClient:
    """Test cases for the Log Analytics client"""

    def setup_method(self):
        """Set up test fixtures"""
        self.client = LogAnalyticsClient("ws-1", SHARED_KEY, request_timeout=5)

    def test_requires_credentials(self):
        """Test the client needs a workspace id and key"""
        with pytest.raises(ConfigurationError):
            LogAnalyticsClient("", SHARED_KEY)
        with pytest.raises(ConfigurationError):
            LogAnalyticsClient("ws-1", "")

    def test_repr_hides_key(self):
        """Test the shared key never shows up in logs"""
        assert SHARED_KEY not in repr(self.client)
        assert self.client.url == "https://ws-1.ods.opinsights.azure.com/api/logs?api-version=2016-04-01"

    @pytest.mark.asyncio
    async def test_post(self, http_response):
        """Test records are posted with the signed headers"""
        records = [{"RunId": "run-1", "Verdict": "pass"}]

        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value = http_response(200)
            await self.client.post(records, "connectivity")

        args, kwargs = mock_post.call_args
        assert args[0] == self.client.url
        assert json.loads(kwargs["data"]) == records
        headers = kwargs["headers"]
        assert headers["Log-Type"] == "connectivity"
        assert headers["Content-Type"] == "application/json"
        assert headers["Authorization"] == build_signature(
            "ws-1", SHARED_KEY, headers["x-ms-date"], len(kwargs["data"])
        )
        await self.client.close()

    @pytest.mark.asyncio
    async def test_post_nothing(self):
        """Test an empty batch makes no request"""
        with patch('aiohttp.ClientSession.post') as mock_post:
            await self.client.post([], "connectivity")

        mock_post.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected(self, http_response):
        """Test a rejected upload"""
        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value = http_response(403, "InvalidAuthorization")
            with pytest.raises(MetricsUploadError, match="HTTP 403"):
                await self.client.post([{"a": 1}], "connectivity")
        await self.client.close()

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Test an upload that never reaches the workspace"""
        with patch('aiohttp.ClientSession.post', side_effect=aiohttp.ClientConnectionError("dns")):
            with pytest.raises(MetricsUploadError, match="request failed"):
                await self.client.post([{"a": 1}], "connectivity")
        await self.client.close()
