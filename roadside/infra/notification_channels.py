# roadside/infra/notification_channels.py
"""
Alert channels for the Notification Dispatcher.

- ``log``      - writes the alert to the application log (default, dev)
- ``telegram`` - posts to an operations chat through the Bot API

Usage:
    dispatcher = AlertDispatcher(get_notification_channel())
    await dispatcher.dispatch(alert)
"""
from __future__ import annotations

import abc
import html

import aiohttp

from roadside.config import Settings, settings as default_settings
from roadside.core.domain import Alert
from roadside.infra.http_client import get_default_session
from roadside.infra.logging_config import get_logger
from roadside.infra.metrics import inc_counter

logger = get_logger(__name__)


class NotificationChannel(abc.ABC):
    """Abstract base class for alert channels"""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Channel name for logging/metrics"""

    @abc.abstractmethod
    async def send(self, alert: Alert) -> bool:
        """
        Deliver one alert.

        Returns:
            True if sent successfully, False otherwise
        """

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Check if channel is properly configured"""


class LogChannel(NotificationChannel):
    """Writes alerts to the log; always configured."""

    @property
    def name(self) -> str:
        return "log"

    def is_configured(self) -> bool:
        return True

    async def send(self, alert: Alert) -> bool:
        logger.warning(
            "ALERT [%s] %s: %s", alert.severity, alert.title, alert.body,
            extra={"job_id": alert.job_id, "alert_id": alert.id},
        )
        return True


class TelegramChannel(NotificationChannel):
    """Posts alerts to a Telegram chat via the Bot API."""

    TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/{method}"

    def __init__(self, bot_token: str | None, chat_id: str | None, base_url: str = ""):
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._base_url = base_url.rstrip("/")

    @property
    def name(self) -> str:
        return "telegram"

    def is_configured(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    def format_message(self, alert: Alert) -> str:
        lines = [
            f"<b>{html.escape(alert.title)}</b>",
            html.escape(alert.body),
        ]
        route = alert.meta.get("route")
        if route and self._base_url:
            lines.append(html.escape(f"{self._base_url}{route}"))
        return "\n".join(lines)

    async def send(self, alert: Alert) -> bool:
        if not self.is_configured():
            logger.warning("Telegram channel not configured")
            return False

        url = self.TELEGRAM_API_URL.format(token=self._bot_token, method="sendMessage")
        payload = {
            "chat_id": self._chat_id,
            "text": self.format_message(alert),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

        try:
            session = get_default_session()
            async with session.post(url, json=payload) as resp:
                if resp.status != 200:
                    logger.error(f"Telegram API error: status={resp.status}")
                    return False
                result = await resp.json()
                if not result.get("ok"):
                    logger.error(f"Telegram API error: ok=false, error_code={result.get('error_code')}")
                    return False
        except (aiohttp.ClientError, TimeoutError) as exc:
            logger.error(
                f"Telegram alert failed: {type(exc).__name__}",
                extra={"job_id": alert.job_id, "alert_id": alert.id},
            )
            return False

        logger.info(
            "Telegram alert sent: job_id=%s alert_id=%s", alert.job_id, alert.id,
            extra={"job_id": alert.job_id, "alert_id": alert.id},
        )
        return True


class AlertDispatcher:
    """
    Notification Dispatcher: hands claimed alerts to a channel.

    Delivery is best effort; the alert record is already persisted when
    this runs, so a failed send is counted and logged, not retried.
    """

    def __init__(self, channel: NotificationChannel):
        self.channel = channel

    async def dispatch(self, alert: Alert) -> bool:
        delivered = await self.channel.send(alert)
        inc_counter(
            "alerts_dispatched_total",
            channel=self.channel.name,
            outcome="sent" if delivered else "failed",
        )
        return delivered


def get_notification_channel(config: Settings | None = None) -> NotificationChannel:
    """Build the channel selected by ``alert_channel``."""
    cfg = config or default_settings

    if cfg.alert_channel == "log":
        return LogChannel()

    channel = TelegramChannel(
        cfg.telegram_bot_token,
        cfg.telegram_chat_id,
        base_url=cfg.public_base_url,
    )
    if not channel.is_configured():
        logger.warning("Notification channel 'telegram' not configured, alerts will fail")
    return channel
