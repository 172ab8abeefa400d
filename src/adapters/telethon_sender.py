"""Telegram notification adapter backed by a Telethon bot session."""

from __future__ import annotations

import logging
from typing import Union

from telethon import errors

from adapters.notification_formatting import format_notification
from core.models import DeliveryResult, DeliveryStatus, NotificationPayload

LOGGER = logging.getLogger(__name__)

_PERMANENT_ERRORS = (
    errors.UserIsBlockedError,
    errors.PeerIdInvalidError,
    errors.InputUserDeactivatedError,
    errors.ChatWriteForbiddenError,
)


def _peer(token: str) -> Union[int, str]:
    try:
        return int(token)
    except ValueError:
        return token


class TelethonSender:
    """NotificationSender that writes to a chat through a connected client."""

    def __init__(self, client) -> None:
        self._client = client

    async def send(self, token: str, payload: NotificationPayload) -> DeliveryResult:
        message = format_notification(payload, mode="markdown")
        try:
            await self._client.send_message(_peer(token), message, parse_mode="md", link_preview=False)
        except _PERMANENT_ERRORS as exc:
            return DeliveryResult(DeliveryStatus.PERMANENT_FAILURE, str(exc))
        except ValueError as exc:
            # Telethon raises ValueError when the peer cannot be resolved at all.
            return DeliveryResult(DeliveryStatus.PERMANENT_FAILURE, str(exc))
        except (errors.RPCError, ConnectionError, OSError) as exc:
            LOGGER.info("Telethon delivery to %s failed: %s", token, exc)
            return DeliveryResult(DeliveryStatus.TRANSIENT_FAILURE, str(exc))
        return DeliveryResult(DeliveryStatus.SUCCESS)
