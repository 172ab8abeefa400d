"""Google Geocoding API point geocoder.

Queries are scoped to the configured city and country. Results that fall
back to the city center, name only the city, or lie outside the locality
bounds are discarded.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional

from core.localities import Bounds
from core.models import Coordinates, ResolvedAddress

LOGGER = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

_GENERIC_ADDRESSES = [
    re.compile(r"^Sofia(,\s*Bulgaria)?$", re.IGNORECASE),
    re.compile(r"^София(,\s*България)?$", re.IGNORECASE),
]


def is_center_fallback(lat: float, lng: float, center: tuple[float, float]) -> bool:
    """Google answers unknown streets with the city center; compare at 4 decimals (~11 m)."""

    return round(lat, 4) == round(center[0], 4) and round(lng, 4) == round(center[1], 4)


def is_generic_city_address(formatted_address: str) -> bool:
    return any(pattern.match(formatted_address.strip()) for pattern in _GENERIC_ADDRESSES)


class GoogleGeocoder:
    """PointGeocoder backed by the Google Geocoding REST API."""

    def __init__(
        self,
        api_key: str,
        bounds: Bounds,
        center: tuple[float, float],
        city: str = "Sofia",
        country: str = "BG",
        country_name: str = "Bulgaria",
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._bounds = bounds
        self._center = center
        self._city = city
        self._country = country
        self._country_name = country_name
        self._timeout = timeout

    def _url(self, address: str) -> str:
        query = urllib.parse.urlencode(
            {
                "address": f"{address}, {self._city}, {self._country_name}",
                "components": f"locality:{self._city}|country:{self._country}",
                "key": self._api_key,
            }
        )
        return f"{GEOCODE_URL}?{query}"

    def _fetch(self, address: str) -> dict[str, Any]:
        try:
            with urllib.request.urlopen(self._url(address), timeout=self._timeout) as response:
                return json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            LOGGER.warning("Geocoding API error %s for %r", e.code, address)
        except (urllib.error.URLError, OSError, ValueError) as e:
            LOGGER.warning("Geocoding request failed for %r: %s", address, e)
        return {}

    def pick_result(self, address: str, data: dict[str, Any]) -> Optional[ResolvedAddress]:
        """Return the first acceptable candidate from a Geocoding API response."""

        if data.get("status") != "OK":
            if data.get("status") not in (None, "ZERO_RESULTS"):
                LOGGER.warning("Geocoding status %s for %r", data.get("status"), address)
            return None

        for candidate in data.get("results") or []:
            location = (candidate.get("geometry") or {}).get("location") or {}
            try:
                lat = float(location["lat"])
                lng = float(location["lng"])
            except (KeyError, TypeError, ValueError):
                continue
            formatted = candidate.get("formatted_address") or address
            if is_center_fallback(lat, lng, self._center):
                LOGGER.info("Rejecting city center fallback for %r", address)
                continue
            if is_generic_city_address(formatted):
                LOGGER.info("Rejecting generic address for %r: %s", address, formatted)
                continue
            if not self._bounds.contains(lat, lng):
                LOGGER.info("Rejecting result outside locality for %r: (%s, %s)", address, lat, lng)
                continue
            return ResolvedAddress(address, formatted, Coordinates(lat=lat, lng=lng))
        return None

    async def geocode(self, address: str) -> Optional[ResolvedAddress]:
        data = await asyncio.to_thread(self._fetch, address)
        return self.pick_result(address, data)
