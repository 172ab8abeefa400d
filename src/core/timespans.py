"""Timespan parsing and reconciliation.

Extraction output carries free-form ``dd.mm.yyyy hh:mm`` strings on every
pin, street and parcel. A message stores a single
``[timespanStart, timespanEnd]`` interval computed from all of them.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from core.models import ExtractedLocations, GeoJson, Timespan

LOGGER = logging.getLogger(__name__)

_DATE_PATTERN = re.compile(r"^(\d{2})\.(\d{2})\.(\d{4})\s+(\d{2}):(\d{2})$")

DEFAULT_FLOOR = datetime(2025, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class TimespanRange:
    start: datetime
    end: datetime


def parse_local_date(text: Any, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Parse ``dd.mm.yyyy hh:mm`` into an aware datetime, or return None.

    Components are checked against the constructed date so that rollovers
    such as 31.02 are rejected instead of silently becoming March.
    """

    if not text or not isinstance(text, str):
        return None
    parts = _DATE_PATTERN.match(text.strip())
    if not parts:
        return None

    day, month, year, hour, minute = (int(part) for part in parts.groups())
    try:
        value = datetime(year, month, day, hour, minute, tzinfo=tz or timezone.utc)
    except ValueError:
        return None

    if (value.day, value.month, value.year, value.hour, value.minute) != (day, month, year, hour, minute):
        return None
    return value


def format_local_date(value: datetime) -> str:
    return value.strftime("%d.%m.%Y %H:%M")


def _parse_iso(text: Any) -> Optional[datetime]:
    if not text or not isinstance(text, str):
        return None
    try:
        value = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def duplicate_single_date(
    start: Optional[datetime], end: Optional[datetime]
) -> Optional[TimespanRange]:
    """When only one bound is known, use it for both."""

    if start and end:
        return TimespanRange(start=start, end=end)
    if start:
        return TimespanRange(start=start, end=start)
    if end:
        return TimespanRange(start=end, end=end)
    return None


class TimespanResolver:
    """Compute validated message intervals for one locality timezone."""

    def __init__(self, timezone_name: str = "Europe/Sofia", floor: datetime = DEFAULT_FLOOR) -> None:
        self._tz = ZoneInfo(timezone_name)
        self._floor = floor

    def parse(self, text: Any) -> Optional[datetime]:
        return parse_local_date(text, self._tz)

    def is_in_range(self, value: datetime) -> bool:
        return value >= self._floor

    def range_from_timespans(
        self, timespans: Iterable[Timespan], fallback: datetime
    ) -> TimespanRange:
        """Return ``[min(starts), max(ends)]``; invalid entries are skipped."""

        starts: list[datetime] = []
        ends: list[datetime] = []
        for timespan in timespans:
            start = self.parse(timespan.start)
            end = self.parse(timespan.end)
            if start:
                starts.append(start)
            if end:
                ends.append(end)
        return self._reconcile(starts, ends, fallback)

    def range_from_locations(
        self, locations: Optional[ExtractedLocations], fallback: datetime
    ) -> TimespanRange:
        if locations is None:
            return TimespanRange(start=fallback, end=fallback)
        timespans: list[Timespan] = []
        for pin in locations.pins:
            timespans.extend(pin.timespans)
        for street in locations.streets:
            timespans.extend(street.timespans)
        for parcel in locations.cadastral_parcels:
            timespans.extend(parcel.timespans)
        return self.range_from_timespans(timespans, fallback)

    def range_from_geojson(self, geo_json: Optional[GeoJson], fallback: datetime) -> TimespanRange:
        """Read ISO (``startTimeISO``) and local (``startTime``) properties of every feature."""

        features = (geo_json or {}).get("features") or []
        starts: list[datetime] = []
        ends: list[datetime] = []
        for feature in features:
            properties = feature.get("properties") if isinstance(feature, dict) else None
            if not isinstance(properties, dict):
                continue
            for start in (_parse_iso(properties.get("startTimeISO")), self.parse(properties.get("startTime"))):
                if start:
                    starts.append(start)
            for end in (_parse_iso(properties.get("endTimeISO")), self.parse(properties.get("endTime"))):
                if end:
                    ends.append(end)
        return self._reconcile(starts, ends, fallback)

    def validate_and_fallback(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        fallback: datetime,
    ) -> TimespanRange:
        """Replace bounds earlier than the floor with ``fallback``.

        If only one bound survives and the replacement would invert the
        interval, both bounds collapse onto the surviving one.
        """

        start_ok = start is not None and self.is_in_range(start)
        end_ok = end is not None and self.is_in_range(end)
        if start_ok and end_ok:
            return TimespanRange(start=start, end=end)
        if not start_ok and not end_ok:
            if start is not None or end is not None:
                LOGGER.warning("Timespan %s..%s out of range, using fallback", start, end)
            return TimespanRange(start=fallback, end=fallback)

        surviving = start if start_ok else end
        candidate = TimespanRange(
            start=start if start_ok else fallback,
            end=end if end_ok else fallback,
        )
        if candidate.start > candidate.end:
            return TimespanRange(start=surviving, end=surviving)
        return candidate

    def _reconcile(
        self, starts: list[datetime], ends: list[datetime], fallback: datetime
    ) -> TimespanRange:
        span = duplicate_single_date(min(starts) if starts else None, max(ends) if ends else None)
        if span is None:
            return TimespanRange(start=fallback, end=fallback)
        if span.start > span.end:
            # Ends all precede starts; widen to cover every parsed instant.
            everything = starts + ends
            return TimespanRange(start=min(everything), end=max(everything))
        return span
