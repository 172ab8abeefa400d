"""Cadastral parcel registry read from a local GeoJSON export.

Each feature carries its cadastral number in ``identifier`` or ``cadnum``
and a Polygon (or the first Polygon of a MultiPolygon) in lon/lat.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Sequence

from core.models import GeoJson

LOGGER = logging.getLogger(__name__)

_IDENTIFIER_KEYS = ("identifier", "cadnum")


def _identifier(properties: dict[str, Any]) -> Optional[str]:
    for key in _IDENTIFIER_KEYS:
        value = properties.get(key)
        if value:
            return str(value).strip()
    return None


def _polygon(geometry: dict[str, Any]) -> Optional[GeoJson]:
    kind = geometry.get("type")
    coordinates = geometry.get("coordinates")
    if not coordinates:
        return None
    if kind == "Polygon":
        return {"type": "Polygon", "coordinates": coordinates}
    if kind == "MultiPolygon":
        return {"type": "Polygon", "coordinates": coordinates[0]}
    return None


class GeoJsonParcelRegistry:
    """ParcelRegistry over an in-memory index of one GeoJSON file."""

    def __init__(self, parcels: dict[str, GeoJson]) -> None:
        self._parcels = parcels

    @classmethod
    def from_file(cls, path: str) -> "GeoJsonParcelRegistry":
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        parcels: dict[str, GeoJson] = {}
        for feature in data.get("features", []):
            identifier = _identifier(feature.get("properties") or {})
            polygon = _polygon(feature.get("geometry") or {})
            if identifier and polygon:
                parcels[identifier] = polygon
        LOGGER.info("Loaded %d cadastral parcel(s) from %s", len(parcels), path)
        return cls(parcels)

    def __len__(self) -> int:
        return len(self._parcels)

    async def resolve_parcels(self, identifiers: Sequence[str]) -> dict[str, GeoJson]:
        found: dict[str, GeoJson] = {}
        for identifier in identifiers:
            polygon = self._parcels.get(identifier.strip())
            if polygon is None:
                LOGGER.info("Cadastral parcel %s not in registry", identifier)
                continue
            found[identifier] = polygon
        return found
