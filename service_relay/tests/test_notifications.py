"""
Unit tests for the Relay notification client.
"""

import pytest
import httpx
from unittest.mock import AsyncMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_relay.app.notifications.client import NotificationClient
from shared.errors import ServiceError

WEBHOOK_URL = "https://hooks.slack.test/services/T000/B000/XXXX"


class TestNotificationClient:
    """Test cases for NotificationClient."""

    @pytest.fixture
    def client(self):
        """Create NotificationClient instance."""
        return NotificationClient(WEBHOOK_URL, timeout=1.0)

    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        """Test the channel only logs when no URL is configured."""
        client = NotificationClient(None)

        with patch('httpx.AsyncClient') as mock_client:
            assert await client.notify("hello") is False
            mock_client.assert_not_called()

        assert client.enabled is False

    @pytest.mark.asyncio
    async def test_notify_success(self, client):
        """Test a successful post."""
        with patch('httpx.AsyncClient') as mock_client:
            post = AsyncMock(return_value=httpx.Response(
                status_code=200,
                content=b"ok",
                request=httpx.Request("POST", WEBHOOK_URL)
            ))
            mock_client.return_value.__aenter__.return_value.post = post

            assert await client.notify('Sam replied on "Billing"') is True

            post.assert_awaited_once_with(WEBHOOK_URL, json={"text": 'Sam replied on "Billing"'})

        assert client.get_stats() == {"enabled": True, "sent": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_notify_rejected(self, client):
        """Test an error status is reported, not raised."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                return_value=httpx.Response(
                    status_code=404,
                    content=b"no_service",
                    request=httpx.Request("POST", WEBHOOK_URL)
                )
            )

            assert await client.notify("hello") is False

        assert client.failed_count == 1

    @pytest.mark.asyncio
    async def test_notify_timeout(self, client):
        """Test timeouts surface as ServiceError."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                side_effect=httpx.ReadTimeout("timed out")
            )

            with pytest.raises(ServiceError) as exc_info:
                await client.notify("hello")

        assert "timeout" in exc_info.value.message
        assert client.failed_count == 1

    @pytest.mark.asyncio
    async def test_notify_connection_error(self, client):
        """Test connection errors surface as ServiceError."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                side_effect=httpx.ConnectError("refused")
            )

            with pytest.raises(ServiceError):
                await client.notify("hello")
