from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from dispatch_api.config import Settings
from dispatch_api.services.alert_service import (
    alert_drain_failed,
    alert_run_failed,
    alert_run_failed_async,
    send_alert,
    send_alert_async,
)

CONFIGURED = Settings(_env_file=None, alert_bot_token="test-token", alert_chat_id="test-chat")


class TestSendAlert:
    @patch("dispatch_api.services.alert_service.get_settings", return_value=Settings(_env_file=None))
    def test_returns_false_when_not_configured(self, mock_settings):
        assert send_alert("ERROR", "Test message") is False

    @patch("dispatch_api.services.alert_service.get_settings", return_value=CONFIGURED)
    @patch("dispatch_api.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class, mock_settings):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        result = send_alert("ERROR", "Run failed", {"run_id": "run_1"})

        assert result is True
        call_args = mock_client.post.call_args
        assert "api.telegram.org/bottest-token" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]
        assert "run_1" in json_data["text"]

    @patch("dispatch_api.services.alert_service.get_settings", return_value=CONFIGURED)
    @patch("dispatch_api.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class, mock_settings):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 400
        mock_client.post.return_value = mock_response

        assert send_alert("ERROR", "Test message") is False

    @patch("dispatch_api.services.alert_service.get_settings", return_value=CONFIGURED)
    @patch("dispatch_api.services.alert_service.httpx.Client")
    def test_returns_false_on_exception(self, mock_client_class, mock_settings):
        mock_client_class.return_value.__enter__.side_effect = Exception("Network error")

        assert send_alert("ERROR", "Test message") is False


class TestSendAlertAsync:
    @pytest.mark.asyncio
    @patch("dispatch_api.services.alert_service.get_settings", return_value=Settings(_env_file=None))
    async def test_returns_false_when_not_configured(self, mock_settings):
        assert await send_alert_async("ERROR", "Test message") is False

    @pytest.mark.asyncio
    @patch("dispatch_api.services.alert_service.get_settings", return_value=CONFIGURED)
    @patch("dispatch_api.services.alert_service.httpx.AsyncClient")
    async def test_sends_alert_without_blocking_client(self, mock_client_class, mock_settings):
        mock_client = MagicMock()
        mock_client_class.return_value.__aenter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post = AsyncMock(return_value=mock_response)

        with patch("dispatch_api.services.alert_service.httpx.Client") as mock_sync_client:
            result = await send_alert_async("CRITICAL", "Drain failed", {"error": "boom"})

        assert result is True
        mock_sync_client.assert_not_called()
        json_data = mock_client.post.call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "boom" in json_data["text"]

    @pytest.mark.asyncio
    @patch("dispatch_api.services.alert_service.get_settings", return_value=CONFIGURED)
    @patch("dispatch_api.services.alert_service.httpx.AsyncClient")
    async def test_returns_false_on_exception(self, mock_client_class, mock_settings):
        mock_client_class.return_value.__aenter__.side_effect = httpx.ConnectTimeout("timeout")

        assert await send_alert_async("ERROR", "Test message") is False


class TestShortcuts:
    @patch("dispatch_api.services.alert_service.send_alert", return_value=True)
    def test_alert_run_failed(self, mock_send):
        alert_run_failed("client-1", "run_1", "db down")

        level, message, context = mock_send.call_args[0]
        assert level == "ERROR"
        assert context == {"client_id": "client-1", "run_id": "run_1", "error": "db down"}

    @pytest.mark.asyncio
    @patch("dispatch_api.services.alert_service.send_alert_async", new_callable=AsyncMock, return_value=True)
    async def test_alert_run_failed_async(self, mock_send):
        await alert_run_failed_async("client-1", "run_1", None)

        level, message, context = mock_send.call_args[0]
        assert level == "ERROR"
        assert context["error"] == "unknown"

    @pytest.mark.asyncio
    @patch("dispatch_api.services.alert_service.send_alert_async", new_callable=AsyncMock, return_value=True)
    async def test_alert_drain_failed(self, mock_send):
        await alert_drain_failed("connection reset")
        assert mock_send.call_args[0][0] == "CRITICAL"
