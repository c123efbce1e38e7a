# tests/test_notification.py
"""Tests for alert delivery in roadside/infra/notification_channels.py."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pydantic
import pytest

from conftest import T0
from roadside.config import Settings
from roadside.core.domain import Alert
from roadside.infra.metrics import get_metrics_collector
from roadside.infra.notification_channels import (
    AlertDispatcher,
    LogChannel,
    TelegramChannel,
    get_notification_channel,
)


def _alert(**overrides) -> Alert:
    fields = dict(
        id="alert-1",
        job_id="job-1",
        customer_id="cust-1",
        title="Job awaiting bids",
        body="Towing at 1 <Main> & 2nd has no bids after 10 minutes.",
        severity="warning",
        created_at=T0,
        meta={"route": "/jobs/job-1", "kind": "job_unbid_alert"},
    )
    fields.update(overrides)
    return Alert(**fields)


def _mock_session(status: int = 200, payload: dict | None = None):
    """aiohttp session whose ``post`` yields a canned response."""
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=payload if payload is not None else {"ok": True})

    post_ctx = MagicMock()
    post_ctx.__aenter__ = AsyncMock(return_value=resp)
    post_ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=post_ctx)
    return session


# ============================================================================
# Channel selection
# ============================================================================

class TestGetNotificationChannel:
    def test_log_by_default(self):
        channel = get_notification_channel(Settings(_env_file=None))
        assert isinstance(channel, LogChannel)

    def test_telegram(self):
        channel = get_notification_channel(Settings(
            alert_channel="telegram",
            telegram_bot_token="123:abc",
            telegram_chat_id="-100",
            _env_file=None,
        ))
        assert isinstance(channel, TelegramChannel)
        assert channel.is_configured()

    def test_telegram_unconfigured(self):
        channel = get_notification_channel(Settings(alert_channel="telegram", _env_file=None))
        assert not channel.is_configured()

    def test_unknown_channel_rejected_by_settings(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(alert_channel="pager", _env_file=None)


# ============================================================================
# TelegramChannel
# ============================================================================

class TestTelegramChannel:
    def test_format_message_escapes_html(self):
        channel = TelegramChannel("123:abc", "-100", base_url="https://ops.example.com/")
        text = channel.format_message(_alert())
        assert text.splitlines() == [
            "<b>Job awaiting bids</b>",
            "Towing at 1 &lt;Main&gt; &amp; 2nd has no bids after 10 minutes.",
            "https://ops.example.com/jobs/job-1",
        ]

    def test_format_message_without_base_url(self):
        text = TelegramChannel("123:abc", "-100").format_message(_alert())
        assert len(text.splitlines()) == 2

    @pytest.mark.asyncio
    async def test_send_success(self):
        channel = TelegramChannel("123:abc", "-100")
        session = _mock_session()

        with patch("roadside.infra.notification_channels.get_default_session", return_value=session):
            assert await channel.send(_alert()) is True

        url = session.post.call_args[0][0]
        payload = session.post.call_args[1]["json"]
        assert url == "https://api.telegram.org/bot123:abc/sendMessage"
        assert payload["chat_id"] == "-100"
        assert payload["parse_mode"] == "HTML"

    @pytest.mark.asyncio
    async def test_send_api_error(self):
        channel = TelegramChannel("123:abc", "-100")
        session = _mock_session(status=400)
        with patch("roadside.infra.notification_channels.get_default_session", return_value=session):
            assert await channel.send(_alert()) is False

    @pytest.mark.asyncio
    async def test_send_ok_false(self):
        channel = TelegramChannel("123:abc", "-100")
        session = _mock_session(payload={"ok": False, "error_code": 403})
        with patch("roadside.infra.notification_channels.get_default_session", return_value=session):
            assert await channel.send(_alert()) is False

    @pytest.mark.asyncio
    async def test_send_network_error(self):
        channel = TelegramChannel("123:abc", "-100")
        session = MagicMock()
        session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("unreachable"))
        with patch("roadside.infra.notification_channels.get_default_session", return_value=session):
            assert await channel.send(_alert()) is False

    @pytest.mark.asyncio
    async def test_unconfigured_does_not_call_api(self):
        channel = TelegramChannel(None, None)
        with patch("roadside.infra.notification_channels.get_default_session") as mock_session:
            assert await channel.send(_alert()) is False
        mock_session.assert_not_called()


# ============================================================================
# AlertDispatcher
# ============================================================================

class TestAlertDispatcher:
    @pytest.mark.asyncio
    async def test_counts_outcomes(self):
        await AlertDispatcher(LogChannel()).dispatch(_alert())
        await AlertDispatcher(TelegramChannel(None, None)).dispatch(_alert())

        collector = get_metrics_collector()
        assert collector.get_counter("alerts_dispatched_total", channel="log", outcome="sent") == 1
        assert collector.get_counter("alerts_dispatched_total", channel="telegram", outcome="failed") == 1
