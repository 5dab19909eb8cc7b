"""Unit tests for notification services."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from creditshaft.config import TelegramConfig
from creditshaft.notifications.telegram import TelegramNotifier


@pytest.fixture()
def telegram_notifier() -> TelegramNotifier:
    return TelegramNotifier(
        TelegramConfig(
            enabled=True,
            alert_bot_token="alert-tok",
            log_bot_token="log-tok",
            chat_id="12345",
        )
    )


@pytest.fixture()
def telegram_notifier_unconfigured() -> TelegramNotifier:
    return TelegramNotifier(
        TelegramConfig(enabled=True, alert_bot_token="", log_bot_token="", chat_id="")
    )


def _mock_session(status: int) -> AsyncMock:
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    mock_session.post = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_send_alert_success(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(200)

        with patch("creditshaft.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("creditshaft.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_alert("HF < 1.10", subject="At risk")

        assert result is True
        args, kwargs = mock_session.post.call_args
        assert args[0] == "https://api.telegram.org/botalert-tok/sendMessage"
        payload = kwargs["json"]
        assert payload["chat_id"] == "12345"
        assert payload["text"] == "<b>At risk</b>\n\nHF &lt; 1.10"
        assert payload["disable_notification"] is False

    @pytest.mark.asyncio
    async def test_send_alert_failure(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(403)

        with patch("creditshaft.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("creditshaft.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_alert("test alert")

        assert result is False

    @pytest.mark.asyncio
    async def test_send_alert_network_error(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = AsyncMock()
        mock_session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("down"))
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch("creditshaft.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("creditshaft.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_alert("test alert")

        assert result is False

    @pytest.mark.asyncio
    async def test_send_log_uses_log_bot(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(200)

        with patch("creditshaft.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("creditshaft.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_log("test log")

        assert result is True
        args, kwargs = mock_session.post.call_args
        assert args[0] == "https://api.telegram.org/botlog-tok/sendMessage"
        assert kwargs["json"]["disable_notification"] is True

    @pytest.mark.asyncio
    async def test_unconfigured_returns_false(
        self, telegram_notifier_unconfigured: TelegramNotifier
    ) -> None:
        result = await telegram_notifier_unconfigured.send_alert("test")
        assert result is False

        result = await telegram_notifier_unconfigured.send_log("test")
        assert result is False
