"""Geodesic helpers shared by geocoding cleanup and matching."""

from __future__ import annotations

import math
from typing import Optional

from shapely.geometry import Polygon

from core.localities import Bounds
from core.models import Coordinates

EARTH_RADIUS_METERS = 6371000.0


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a: Coordinates, b: Coordinates) -> float:
    return haversine_distance(a.lat, a.lng, b.lat, b.lng)


def round_half_up(value: float, precision: int = 6) -> float:
    # Half-up rounding; round() would apply banker's rounding to ties.
    factor = 10 ** precision
    return math.floor(value * factor + 0.5) / factor


def round_coordinates(coordinates: Coordinates, precision: int = 6) -> Coordinates:
    return Coordinates(
        lat=round_half_up(coordinates.lat, precision),
        lng=round_half_up(coordinates.lng, precision),
    )


def validate_coordinates(
    coordinates: Optional[Coordinates],
    bounds: Bounds,
    precision: int = 6,
) -> Optional[Coordinates]:
    """Round supplied coordinates and keep them only inside the locality bounds.

    Six decimal places is roughly 0.1 m, which is below any geocoder's accuracy.
    """

    if coordinates is None:
        return None
    if not (math.isfinite(coordinates.lat) and math.isfinite(coordinates.lng)):
        return None
    rounded = round_coordinates(coordinates, precision)
    if not bounds.contains(rounded.lat, rounded.lng):
        return None
    return rounded


def destination_point(lat: float, lng: float, distance_m: float, bearing_deg: float) -> tuple[float, float]:
    """Return (lng, lat) reached by travelling ``distance_m`` along ``bearing_deg``."""

    angular = distance_m / EARTH_RADIUS_METERS
    bearing = math.radians(bearing_deg)
    phi1 = math.radians(lat)
    lambda1 = math.radians(lng)
    phi2 = math.asin(
        math.sin(phi1) * math.cos(angular) + math.cos(phi1) * math.sin(angular) * math.cos(bearing)
    )
    lambda2 = lambda1 + math.atan2(
        math.sin(bearing) * math.sin(angular) * math.cos(phi1),
        math.cos(angular) - math.sin(phi1) * math.sin(phi2),
    )
    return math.degrees(lambda2), math.degrees(phi2)


def geodesic_circle(center: Coordinates, radius_m: float, steps: int = 64) -> Polygon:
    """Approximate a circle on the sphere as a lon/lat polygon."""

    ring = [
        destination_point(center.lat, center.lng, radius_m, (360.0 / steps) * -index)
        for index in range(steps)
    ]
    ring.append(ring[0])
    return Polygon(ring)
