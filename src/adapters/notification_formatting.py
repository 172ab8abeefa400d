"""Shared notification formatting helpers.

Both Telegram senders render the same payload, so the layout lives here.
"""

from __future__ import annotations

import html

from core.models import NotificationPayload


def _escape_md(value: str) -> str:
    for ch in r"*[`_":
        value = value.replace(ch, f"\\{ch}")
    return value


def _format_markdown(payload: NotificationPayload) -> str:
    return "\n".join(
        [
            f"**{_escape_md(payload.title)}**",
            "",
            _escape_md(payload.body),
            "",
            payload.url,
        ]
    )


def _format_html(payload: NotificationPayload) -> str:
    safe_url = html.escape(payload.url)
    return "\n".join(
        [
            f"<b>{html.escape(payload.title)}</b>",
            "",
            html.escape(payload.body),
            "",
            f"<a href=\"{safe_url}\">{safe_url}</a>",
        ]
    )


def format_notification(payload: NotificationPayload, mode: str) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "markdown":
        return _format_markdown(payload)
    if mode == "html":
        return _format_html(payload)
    raise ValueError(f"Unsupported notification format: {mode}")
