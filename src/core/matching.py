"""Geo-matching of finalized messages against user interests, and delivery bookkeeping."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional
from urllib.parse import quote

from shapely.errors import GEOSException
from shapely.geometry import shape

from core.config import NotificationConfig
from core.geo import geodesic_circle, haversine_distance
from core.models import (
    DeliveryStatus,
    DeviceNotification,
    FinalizedMessage,
    GeoJson,
    Interest,
    NotificationMatch,
    NotificationPayload,
    Subscription,
)
from core.ports import DocumentStore, NotificationSender

LOGGER = logging.getLogger(__name__)

MESSAGES = "messages"
INTERESTS = "interests"
MATCHES = "notificationMatches"
SUBSCRIPTIONS = "subscriptions"

BoundaryLoader = Callable[[str], Optional[GeoJson]]

_GEOMETRY_ERRORS = (GEOSException, ValueError, TypeError, AttributeError, KeyError, IndexError)


@dataclass(frozen=True)
class MatchOutcome:
    matches: bool
    distance: Optional[float] = None


def match_message_to_interest(
    message: FinalizedMessage,
    interest: Interest,
    boundary_loader: Optional[BoundaryLoader] = None,
) -> MatchOutcome:
    """Test every feature of the message against the interest circle.

    City-wide messages are tested with the locality boundary instead of their
    own geometry. Points use direct distance; lines and polygons use their
    centroid. A feature that fails to evaluate counts as a non-match.
    """

    geo_json = message.geo_json
    if message.city_wide and boundary_loader is not None:
        geo_json = boundary_loader(message.locality)

    features = (geo_json or {}).get("features") or []
    if not features:
        return MatchOutcome(False)

    circle = geodesic_circle(interest.center, interest.radius)
    center = interest.center
    min_distance: Optional[float] = None
    for feature in features:
        try:
            geometry = shape(feature["geometry"])
            if not geometry.intersects(circle):
                continue
            anchor = geometry if geometry.geom_type == "Point" else geometry.centroid
            distance = haversine_distance(center.lat, center.lng, anchor.y, anchor.x)
        except _GEOMETRY_ERRORS as exc:
            LOGGER.warning("Error checking intersection for feature of %s: %s", message.id, exc)
            continue
        if min_distance is None or distance < min_distance:
            min_distance = distance

    return MatchOutcome(min_distance is not None, min_distance)


def match_messages_with_interests(
    messages: Iterable[FinalizedMessage],
    interests: Iterable[Interest],
    boundary_loader: Optional[BoundaryLoader] = None,
) -> List[NotificationMatch]:
    """Return one match per intersecting (message, interest) pair.

    Messages without geometry are skipped, as are interests created after
    the message.
    """

    interests = list(interests)
    matches: List[NotificationMatch] = []
    for message in messages:
        if not message.id or message.geo_json is None:
            continue
        for interest in interests:
            if not interest.id:
                continue
            if message.created_at < interest.created_at:
                continue
            outcome = match_message_to_interest(message, interest, boundary_loader)
            if not outcome.matches or outcome.distance is None:
                continue
            matches.append(
                NotificationMatch(
                    user_id=interest.user_id,
                    message_id=message.id,
                    interest_id=interest.id,
                    distance=outcome.distance,
                )
            )
            LOGGER.info(
                "Match found: message %s, user %s, interest %s, %dm",
                message.id[:8],
                interest.user_id[:8],
                interest.id[:8],
                round(outcome.distance),
            )
    LOGGER.info("Total matches found: %d", len(matches))
    return matches


def deduplicate_matches(matches: Iterable[NotificationMatch]) -> List[NotificationMatch]:
    """Keep the minimum-distance match per (user, message) pair."""

    best: dict[tuple[str, str], NotificationMatch] = {}
    total = 0
    for match in matches:
        total += 1
        key = (match.user_id, match.message_id)
        existing = best.get(key)
        if existing is None or match.distance < existing.distance:
            best[key] = match
    LOGGER.info("Deduplicated matches: %d remaining, %d removed", len(best), total - len(best))
    return list(best.values())


def build_notification_payload(
    message: FinalizedMessage,
    match: NotificationMatch,
    config: Optional[NotificationConfig] = None,
) -> NotificationPayload:
    config = config or NotificationConfig()
    text = message.text
    preview = f"{text[: config.preview_chars]}..." if len(text) > config.preview_chars else text
    distance_text = f" ({round(match.distance)}m от вашия район)" if match.distance else ""
    return NotificationPayload(
        title=config.title,
        body=f"{preview}{distance_text}",
        url=f"{config.app_url.rstrip('/')}/m/{quote(match.message_id, safe='')}",
        message_id=match.message_id,
        interest_id=match.interest_id,
        match_id=match.id or "",
    )


def _message_snapshot(document: dict) -> dict[str, str]:
    snapshot = {
        "text": document.get("text") or "",
        "createdAt": document.get("createdAt") or "",
    }
    if document.get("source"):
        snapshot["source"] = document["source"]
    if document.get("sourceUrl"):
        snapshot["sourceUrl"] = document["sourceUrl"]
    return snapshot


@dataclass(frozen=True)
class NotifyRunSummary:
    messages_processed: int = 0
    matches_stored: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0

    def to_document(self) -> dict[str, int]:
        return {
            "messagesProcessed": self.messages_processed,
            "matchesStored": self.matches_stored,
            "notificationsSent": self.notifications_sent,
            "notificationsFailed": self.notifications_failed,
        }


class NotificationMatcher:
    """One matching and delivery pass over finalized, unprocessed messages.

    Matches are stored with ``notified=False`` before delivery and marked
    notified only after the per-device results have been written.
    """

    def __init__(
        self,
        store: DocumentStore,
        sender: NotificationSender,
        config: Optional[NotificationConfig] = None,
        boundary_loader: Optional[BoundaryLoader] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._sender = sender
        self._config = config or NotificationConfig()
        self._boundary_loader = boundary_loader
        self._clock = clock

    def unprocessed_messages(self) -> List[FinalizedMessage]:
        documents = [
            document
            for document in self._store.find(MESSAGES)
            if document.get("finalizedAt") and document.get("notificationsSent") is not True
        ]
        documents.sort(key=lambda document: document.get("createdAt") or "")
        return [FinalizedMessage.from_document(document) for document in documents]

    def interests(self) -> List[Interest]:
        return [Interest.from_document(document) for document in self._store.find(INTERESTS)]

    def store_matches(self, matches: Iterable[NotificationMatch]) -> List[NotificationMatch]:
        """Insert matches with ``notified=False``; pairs that already have a match are skipped."""

        now = self._clock()
        stored: List[NotificationMatch] = []
        for match in matches:
            if self._store.find(MATCHES, {"userId": match.user_id, "messageId": match.message_id}):
                LOGGER.info(
                    "Match already stored: user %s, message %s", match.user_id[:8], match.message_id[:8]
                )
                continue
            match.matched_at = now
            match.notified = False
            match.id = self._store.insert(MATCHES, match.id, match.to_document())
            stored.append(match)
        LOGGER.info("Stored %d notification match(es)", len(stored))
        return stored

    def unnotified_matches(self) -> List[NotificationMatch]:
        return [
            NotificationMatch.from_document(document)
            for document in self._store.find(MATCHES, {"notified": False})
        ]

    def mark_messages_processed(self, message_ids: Iterable[str]) -> None:
        now = self._clock().isoformat()
        for message_id in message_ids:
            self._store.update(MESSAGES, message_id, {"notificationsSent": True, "notificationsSentAt": now})

    def mark_matches_notified(self, match_ids: Iterable[str]) -> None:
        now = self._clock().isoformat()
        for match_id in match_ids:
            self._store.update(MATCHES, match_id, {"notified": True, "notifiedAt": now})

    async def run(self) -> NotifyRunSummary:
        """Match new messages, then deliver every match still waiting for delivery.

        Matches left unnotified by a transient failure in an earlier run are
        delivered here too, even when no new messages arrived.
        """

        messages = self.unprocessed_messages()
        if messages:
            stored = self._match_and_store(messages)
        else:
            LOGGER.info("No new messages to process")
            stored = []

        sent = failed = 0
        pending = self.unnotified_matches()
        if pending:
            sent, failed = await self.deliver(pending)
        self.mark_messages_processed(message.id for message in messages)
        return NotifyRunSummary(
            messages_processed=len(messages),
            matches_stored=len(stored),
            notifications_sent=sent,
            notifications_failed=failed,
        )

    def _match_and_store(self, messages: List[FinalizedMessage]) -> List[NotificationMatch]:
        interests = self.interests()
        if not interests:
            LOGGER.info("No user interests configured")
            return []

        matches = deduplicate_matches(
            match_messages_with_interests(messages, interests, self._boundary_loader)
        )
        if not matches:
            LOGGER.info("No matches found")
            return []
        return self.store_matches(matches)

    async def deliver(self, matches: List[NotificationMatch]) -> tuple[int, int]:
        """Send one notification per (user, message) and mark matches notified.

        Returns (sent, failed) counted per unique match. A match whose devices
        all failed transiently stays unnotified for the next run.
        """

        unique = deduplicate_matches(matches)
        retry_keys: set[tuple[str, str]] = set()
        sent = failed = 0

        for match in unique:
            if not match.id:
                continue
            document = self._store.find_by_id(MESSAGES, match.message_id)
            if document is None:
                LOGGER.warning("Message %s not found for notification", match.message_id)
                continue

            message = FinalizedMessage.from_document(document)
            notifications, retry = await self._send_to_user_devices(match, message)
            if any(notification.success for notification in notifications):
                sent += 1
            else:
                failed += 1
                LOGGER.error(
                    "Failed to send to any device: user %s, message %s",
                    match.user_id[:8],
                    match.message_id[:8],
                )
                if retry:
                    retry_keys.add((match.user_id, match.message_id))

            self._store.update(
                MATCHES,
                match.id,
                {
                    "deviceNotifications": [notification.to_document() for notification in notifications],
                    "messageSnapshot": _message_snapshot(document),
                },
            )

        self.mark_matches_notified(
            match.id
            for match in matches
            if match.id and (match.user_id, match.message_id) not in retry_keys
        )
        LOGGER.info("Notification sending complete: %d sent, %d failed", sent, failed)
        return sent, failed

    async def _send_to_user_devices(
        self, match: NotificationMatch, message: FinalizedMessage
    ) -> tuple[List[DeviceNotification], bool]:
        subscriptions = [
            Subscription.from_document(document)
            for document in self._store.find(SUBSCRIPTIONS, {"userId": match.user_id})
        ]
        if not subscriptions:
            LOGGER.info("No subscriptions for user %s", match.user_id[:8])
            return [], False

        payload = build_notification_payload(message, match, self._config)
        notifications: List[DeviceNotification] = []
        transient = False
        for subscription in subscriptions:
            result = await self._sender.send(subscription.token, payload)
            if result.status is DeliveryStatus.PERMANENT_FAILURE:
                LOGGER.warning(
                    "Invalid token for subscription %s, removing it", subscription.id[:8]
                )
                self._store.delete(SUBSCRIPTIONS, subscription.id)
            elif result.status is DeliveryStatus.TRANSIENT_FAILURE:
                transient = True
                LOGGER.error("Failed to send notification: %s", result.error)
            notifications.append(
                DeviceNotification(
                    subscription_id=subscription.id,
                    sent_at=self._clock(),
                    success=result.success,
                    error=result.error,
                    device_info=subscription.device_info,
                )
            )
        return notifications, transient
