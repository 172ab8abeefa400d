"""OpenStreetMap adapters backed by the Overpass API.

``OverpassIntersectionResolver`` finds where two named streets cross inside
the locality bounding box. ``OverpassStreetGeometry`` cuts the centerline of
a street between two resolved endpoints.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional, Sequence

from shapely.geometry import LineString, MultiLineString, Point
from shapely.ops import linemerge, nearest_points, substring

from core.geo import haversine_distance, round_half_up
from core.geocoding import INTERSECTION_SEPARATOR
from core.localities import Bounds
from core.models import Coordinates

LOGGER = logging.getLogger(__name__)

OVERPASS_INSTANCES = [
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
]

# Ways whose drawn lines stop short of each other still count as crossing
# when they come this close.
NEAR_MISS_METERS = 20.0
# Roughly 100 m; a street farther than this from an endpoint is a namesake.
MAX_ENDPOINT_OFFSET_DEGREES = 0.001

_STREET_PREFIX = re.compile(r"^(бул\.|ул\.|площад|пл\.)\s*", re.IGNORECASE)
_QUOTES = re.compile(r"[\"“”„'`‘’‚«»‹›]")
_MAIN_ROADS = '["highway"~"^(primary|secondary|tertiary|trunk)$"]'
_ALL_ROADS = '["highway"~"^(primary|secondary|tertiary|trunk|residential|unclassified|living_street)$"]'


def normalize_street_name(name: str) -> str:
    """Lowercase, drop the street type prefix and any quotes."""

    value = _STREET_PREFIX.sub("", name.strip().lower())
    value = _QUOTES.sub("", value)
    return re.sub(r"\s+", " ", value).strip()


def build_street_query(name: str, bounds: Bounds) -> str:
    """Overpass QL for every way whose ``name`` or ``name:bg`` contains the street name.

    Boulevards are only looked up among main roads; explicit streets ("ул.")
    include residential roads too.
    """

    # Metacharacters become wildcards; QL strings would need their own escaping.
    pattern = re.sub(r"[\\^$.|?*+()\[\]{}\"]", ".", normalize_street_name(name))
    highway = _ALL_ROADS if "ул." in name.lower() else _MAIN_ROADS
    bbox = bounds.bbox()
    return (
        "[out:json][timeout:25];"
        "("
        f'way{highway}["name"~"{pattern}",i]({bbox});'
        f'way{highway}["name:bg"~"{pattern}",i]({bbox});'
        ");"
        "out geom;"
    )


def ways_to_lines(elements: Sequence[dict[str, Any]]) -> Optional[MultiLineString]:
    """Build a MultiLineString (lon/lat) from Overpass ``out geom`` way elements."""

    lines = []
    for element in elements:
        if element.get("type") != "way":
            continue
        points = [(node["lon"], node["lat"]) for node in element.get("geometry") or [] if "lon" in node]
        if len(points) >= 2:
            lines.append(points)
    if not lines:
        return None
    return MultiLineString(lines)


def crossing_point(first: MultiLineString, second: MultiLineString) -> Optional[Coordinates]:
    """Return where two streets meet, or None when they are too far apart.

    Multiple crossings collapse to their centroid.
    """

    shared = first.intersection(second)
    if not shared.is_empty:
        point = shared.centroid
        return Coordinates(lat=round_half_up(point.y), lng=round_half_up(point.x))

    a, b = nearest_points(first, second)
    gap = haversine_distance(a.y, a.x, b.y, b.x)
    if gap > NEAR_MISS_METERS:
        return None
    return Coordinates(
        lat=round_half_up((a.y + b.y) / 2),
        lng=round_half_up((a.x + b.x) / 2),
    )


def section_between(lines: MultiLineString, start: Coordinates, end: Coordinates) -> Optional[list[list[float]]]:
    """Cut the merged street line that passes closest to both endpoints."""

    merged = linemerge(lines)
    candidates = list(merged.geoms) if isinstance(merged, MultiLineString) else [merged]
    start_point = Point(start.lng, start.lat)
    end_point = Point(end.lng, end.lat)

    best: Optional[LineString] = None
    best_score = float("inf")
    for line in candidates:
        score = line.distance(start_point) + line.distance(end_point)
        if score < best_score:
            best, best_score = line, score
    if best is None or best_score > 2 * MAX_ENDPOINT_OFFSET_DEGREES:
        return None

    low, high = sorted((best.project(start_point), best.project(end_point)))
    if high - low <= 0:
        return None
    section = substring(best, low, high)
    if section.geom_type != "LineString":
        return None
    coordinates = [[round_half_up(x), round_half_up(y)] for x, y in section.coords]
    # Keep the section oriented from start to end.
    if best.project(start_point) > best.project(end_point):
        coordinates.reverse()
    return coordinates


class OverpassClient:
    """Posts Overpass QL queries, trying each instance until one answers."""

    def __init__(self, instances: Optional[Sequence[str]] = None, timeout: float = 30.0) -> None:
        self._instances = list(instances or OVERPASS_INSTANCES)
        self._timeout = timeout

    def _post(self, url: str, query: str) -> dict[str, Any]:
        data = urllib.parse.urlencode({"data": query}).encode("utf-8")
        request = urllib.request.Request(url, data=data, method="POST")
        request.add_header("Content-Type", "application/x-www-form-urlencoded")
        with urllib.request.urlopen(request, timeout=self._timeout) as response:
            return json.loads(response.read().decode("utf-8"))

    def run(self, query: str) -> list[dict[str, Any]]:
        for url in self._instances:
            try:
                return list(self._post(url, query).get("elements") or [])
            except urllib.error.HTTPError as e:
                if 400 <= e.code < 500 and e.code != 429:
                    # The query itself is wrong; another server will not help.
                    LOGGER.error("Overpass rejected query with %s", e.code)
                    return []
                LOGGER.info("Overpass instance %s answered %s", url, e.code)
            except (urllib.error.URLError, OSError, ValueError) as e:
                LOGGER.info("Overpass instance %s failed: %s", url, e)
        LOGGER.warning("All Overpass instances failed")
        return []

    async def street_lines(self, street: str, bounds: Bounds) -> Optional[MultiLineString]:
        elements = await asyncio.to_thread(self.run, build_street_query(street, bounds))
        lines = ways_to_lines(elements)
        if lines is None:
            LOGGER.info("Could not find street %r in OSM", street)
        return lines


class OverpassIntersectionResolver:
    """IntersectionResolver for ``"<street> ∩ <cross street>"`` queries."""

    def __init__(self, bounds: Bounds, client: Optional[OverpassClient] = None, delay_seconds: float = 0.5) -> None:
        self._bounds = bounds
        self._client = client or OverpassClient()
        self._delay = delay_seconds

    async def resolve_intersections(self, queries: Sequence[str]) -> dict[str, Coordinates]:
        resolved: dict[str, Coordinates] = {}
        cache: dict[str, Optional[MultiLineString]] = {}

        async def _lines(name: str) -> Optional[MultiLineString]:
            if name not in cache:
                cache[name] = await self._client.street_lines(name, self._bounds)
                # Public instances throttle bursts.
                await asyncio.sleep(self._delay)
            return cache[name]

        for query in queries:
            parts = [part.strip() for part in query.split(INTERSECTION_SEPARATOR.strip(), 1)]
            if len(parts) != 2 or not all(parts):
                LOGGER.error("Invalid intersection query %r", query)
                continue
            first = await _lines(parts[0])
            second = await _lines(parts[1])
            if first is None or second is None:
                continue
            point = crossing_point(first, second)
            if point is None or not self._bounds.contains(point.lat, point.lng):
                LOGGER.info("No intersection found for %r", query)
                continue
            resolved[query] = point
        return resolved


class OverpassStreetGeometry:
    """StreetGeometryProvider returning the OSM centerline between two points."""

    def __init__(self, bounds: Bounds, client: Optional[OverpassClient] = None) -> None:
        self._bounds = bounds
        self._client = client or OverpassClient()

    async def street_geometry(
        self, street: str, start: Coordinates, end: Coordinates
    ) -> Optional[list[list[float]]]:
        lines = await self._client.street_lines(street, self._bounds)
        if lines is None:
            return None
        return section_between(lines, start, end)
