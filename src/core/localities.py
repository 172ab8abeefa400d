"""Locality registry: bounding boxes and centers keyed by locality id."""

from __future__ import annotations

import re
from dataclasses import dataclass

from core.errors import UnknownLocalityError

_LOCALITY_PATTERN = re.compile(r"^[a-z]{2}\.[a-z0-9-]+$")


@dataclass(frozen=True)
class Bounds:
    south: float
    west: float
    north: float
    east: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east

    def bbox(self) -> str:
        """Return the bbox as "south,west,north,east" for Overpass queries."""

        return f"{self.south},{self.west},{self.north},{self.east}"


BOUNDS: dict[str, Bounds] = {
    "bg.sofia": Bounds(south=42.605, west=23.188, north=42.83, east=23.528),
}

CENTERS: dict[str, tuple[float, float]] = {
    "bg.sofia": (42.6977, 23.3219),
}


def validate_locality(locality: str) -> None:
    """Raise if the locality id is malformed or not registered.

    Locality ids end up in file paths, so the format check runs first.
    """

    if not isinstance(locality, str) or not _LOCALITY_PATTERN.match(locality):
        raise UnknownLocalityError(f"Invalid locality id: {locality!r}")
    if locality not in BOUNDS:
        valid = ", ".join(sorted(BOUNDS))
        raise UnknownLocalityError(f"Unknown locality: {locality}. Valid localities: {valid}")


def get_bounds(locality: str) -> Bounds:
    validate_locality(locality)
    return BOUNDS[locality]


def get_center(locality: str) -> tuple[float, float]:
    validate_locality(locality)
    return CENTERS[locality]


def is_within_bounds(locality: str, lat: float, lng: float) -> bool:
    return get_bounds(locality).contains(lat, lng)
