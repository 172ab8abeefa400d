"""Telegram Bot API notification adapter.

Each subscription token is a Telegram chat id the bot may write to.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request

from adapters.notification_formatting import format_notification
from core.models import DeliveryResult, DeliveryStatus, NotificationPayload

LOGGER = logging.getLogger(__name__)


def classify_bot_api_error(code: int, body: str) -> DeliveryStatus:
    """Blocked bots (403) and unknown chats (400 "chat not found") never recover."""

    if code == 403:
        return DeliveryStatus.PERMANENT_FAILURE
    if code == 400 and "chat not found" in body.lower():
        return DeliveryStatus.PERMANENT_FAILURE
    return DeliveryStatus.TRANSIENT_FAILURE


class TelegramBotSender:
    """NotificationSender that posts messages via the Telegram Bot API."""

    def __init__(self, bot_token: str, timeout: float = 10.0) -> None:
        self._bot_token = bot_token
        self._timeout = timeout

    def _endpoint(self) -> str:
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    def _post(self, chat_id: str, text: str) -> DeliveryResult:
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout):
                pass
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            return DeliveryResult(classify_bot_api_error(e.code, body), f"Bot API error {e.code}: {body}")
        except (urllib.error.URLError, OSError) as e:
            return DeliveryResult(DeliveryStatus.TRANSIENT_FAILURE, f"Bot API unreachable: {e}")
        return DeliveryResult(DeliveryStatus.SUCCESS)

    async def send(self, token: str, payload: NotificationPayload) -> DeliveryResult:
        """Send the formatted notification via the Bot API."""

        text = format_notification(payload, mode="html")
        # urllib is blocking; keep it off the event loop.
        result = await asyncio.to_thread(self._post, token, text)
        if not result.success:
            LOGGER.info("Bot API delivery to %s failed: %s", token, result.error)
        return result
