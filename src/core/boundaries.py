"""Jurisdiction boundary loading and feature filtering."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Iterable, Iterator, Optional

from shapely.errors import GEOSException
from shapely.geometry import shape

from core.ingest_errors import IngestErrorCollector, recorder_or_default
from core.localities import validate_locality
from core.models import GeoJson

LOGGER = logging.getLogger(__name__)

_BOUNDARY_CACHE: dict[str, GeoJson] = {}

_GEOMETRY_ERRORS = (GEOSException, ValueError, TypeError, AttributeError, KeyError, IndexError)


def load_boundaries(path: Optional[str]) -> Optional[GeoJson]:
    """Load a boundary FeatureCollection, cached by absolute path.

    Returns None when no path is configured. Read and parse errors propagate.
    """

    if not path:
        return None
    absolute = os.path.abspath(path)
    cached = _BOUNDARY_CACHE.get(absolute)
    if cached is not None:
        return cached
    try:
        with open(absolute, "r", encoding="utf-8") as handle:
            boundaries = json.load(handle)
    except (OSError, ValueError) as exc:
        LOGGER.error("Failed to load boundaries from %s: %s", absolute, exc)
        raise
    _BOUNDARY_CACHE[absolute] = boundaries
    return boundaries


def load_locality_boundary(directory: str, locality: str) -> GeoJson:
    """Load ``<directory>/<locality>.geojson`` after validating the locality id."""

    validate_locality(locality)
    return load_boundaries(os.path.join(directory, f"{locality}.geojson"))


def clear_boundary_cache() -> None:
    _BOUNDARY_CACHE.clear()


def _positions(coordinates: Any) -> Iterator[tuple[float, float]]:
    if (
        isinstance(coordinates, (list, tuple))
        and len(coordinates) >= 2
        and all(isinstance(value, (int, float)) for value in coordinates[:2])
    ):
        yield float(coordinates[0]), float(coordinates[1])
        return
    if isinstance(coordinates, (list, tuple)):
        for item in coordinates:
            yield from _positions(item)


def geometry_bbox(geometry: GeoJson) -> tuple[float, float, float, float]:
    """Return (min_x, min_y, max_x, max_y) from raw coordinates."""

    points = list(_positions(geometry.get("coordinates")))
    if not points:
        raise ValueError("Geometry has no coordinates")
    xs = [point[0] for point in points]
    ys = [point[1] for point in points]
    return min(xs), min(ys), max(xs), max(ys)


def _bbox_overlap(feature: GeoJson, boundary: GeoJson, original_error: Exception) -> bool:
    try:
        f_min_x, f_min_y, f_max_x, f_max_y = geometry_bbox(feature["geometry"])
        b_min_x, b_min_y, b_max_x, b_max_y = geometry_bbox(boundary["geometry"])
    except _GEOMETRY_ERRORS as exc:
        LOGGER.warning(
            "Could not check geometry intersection (%s), bbox check also failed (%s); including by default",
            original_error,
            exc,
        )
        return True
    return not (f_max_x < b_min_x or f_min_x > b_max_x or f_max_y < b_min_y or f_min_y > b_max_y)


def feature_intersects_boundaries(feature: GeoJson, boundaries: GeoJson) -> bool:
    """True when the feature intersects, lies within, or is contained by any boundary feature."""

    for boundary in boundaries.get("features") or []:
        try:
            geometry = shape(feature["geometry"])
            area = shape(boundary["geometry"])
            if geometry.intersects(area) or geometry.within(area) or area.contains(geometry):
                return True
        except _GEOMETRY_ERRORS as exc:
            if _bbox_overlap(feature, boundary, exc):
                return True
    return False


def _has_coordinates(feature: Any) -> bool:
    geometry = feature.get("geometry") if isinstance(feature, dict) else None
    return isinstance(geometry, dict) and bool(geometry.get("coordinates"))


def filter_features_by_boundaries(
    geo_json: Optional[GeoJson], boundaries: GeoJson
) -> Optional[GeoJson]:
    """Keep only features inside the boundaries; None when nothing remains."""

    features = (geo_json or {}).get("features") or []
    if not features:
        return None
    kept = []
    for feature in features:
        if not _has_coordinates(feature):
            LOGGER.warning("Skipping feature without valid geometry")
            continue
        if feature_intersects_boundaries(feature, boundaries):
            kept.append(feature)
    if not kept:
        return None
    return {"type": "FeatureCollection", "features": kept}


def is_within_boundaries(geo_json: GeoJson, boundaries: GeoJson) -> bool:
    """True when any feature of ``geo_json`` touches the boundaries."""

    for feature in geo_json.get("features") or []:
        if not _has_coordinates(feature):
            LOGGER.warning("Skipping feature without valid geometry")
            continue
        if feature_intersects_boundaries(feature, boundaries):
            return True
    return False


def count_features(geo_json: Optional[GeoJson]) -> int:
    return len((geo_json or {}).get("features") or [])


class BoundaryFilter:
    """Restrict message geometry to the configured jurisdiction.

    Without boundaries every collection passes unchanged. A collection with
    no feature inside the boundaries yields None and a recorded warning.
    """

    def __init__(self, boundaries: Optional[GeoJson] = None) -> None:
        self._boundaries = boundaries

    @classmethod
    def from_paths(cls, paths: Iterable[Optional[str]]) -> "BoundaryFilter":
        features: list[GeoJson] = []
        for path in paths:
            loaded = load_boundaries(path)
            if loaded:
                features.extend(loaded.get("features") or [])
        if not features:
            return cls(None)
        return cls({"type": "FeatureCollection", "features": features})

    @property
    def enabled(self) -> bool:
        return self._boundaries is not None

    def apply(
        self, geo_json: Optional[GeoJson], collector: Optional[IngestErrorCollector] = None
    ) -> Optional[GeoJson]:
        if geo_json is None or self._boundaries is None:
            return geo_json
        filtered = filter_features_by_boundaries(geo_json, self._boundaries)
        if filtered is None:
            recorder_or_default(collector).warn(
                f"All {count_features(geo_json)} feature(s) are outside the jurisdiction boundaries"
            )
        elif count_features(filtered) < count_features(geo_json):
            LOGGER.info(
                "Boundary filter kept %d of %d feature(s)", count_features(filtered), count_features(geo_json)
            )
        return filtered
