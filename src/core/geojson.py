"""GeoJSON assembly and structural validation."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from core.errors import GeocodingFailure, GeoJsonValidationError
from core.ingest_errors import IngestErrorCollector, recorder_or_default
from core.localities import Bounds
from core.models import (
    Coordinates,
    ExtractedLocations,
    GeoJson,
    GeocodingResult,
    StreetSection,
    Timespan,
)
from core.ports import StreetGeometryProvider

LOGGER = logging.getLogger(__name__)


@dataclass
class GeoJsonValidation:
    is_valid: bool
    geo_json: Optional[GeoJson]
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def fixed_coordinates(self) -> bool:
        return self.is_valid and bool(self.warnings)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_valid_coordinate(lng: float, lat: float) -> bool:
    return (
        math.isfinite(lng)
        and math.isfinite(lat)
        and -180 <= lng <= 180
        and -90 <= lat <= 90
    )


def looks_swapped(lng: float, lat: float, bounds: Bounds) -> bool:
    """True when ``[lng, lat]`` is only inside the locality if read as ``[lat, lng]``."""

    return (
        -90 <= lng <= 90
        and -180 <= lat <= 180
        and not bounds.contains(lat, lng)
        and bounds.contains(lng, lat)
    )


def _fix_position(point: Any, bounds: Bounds) -> tuple[Optional[list[float]], bool]:
    if not isinstance(point, (list, tuple)) or len(point) != 2:
        return None, False
    if not (_is_number(point[0]) and _is_number(point[1])):
        return None, False
    lng, lat = float(point[0]), float(point[1])
    swapped = looks_swapped(lng, lat, bounds)
    if swapped:
        lng, lat = lat, lng
    if not is_valid_coordinate(lng, lat):
        return None, False
    return [lng, lat], swapped


def _fix_point(coordinates: Any, bounds: Bounds, warnings: List[str]) -> Optional[GeoJson]:
    position, swapped = _fix_position(coordinates, bounds)
    if position is None:
        return None
    if swapped:
        warnings.append(
            f"Point coordinates swapped from [{coordinates[0]}, {coordinates[1]}] "
            f"to [{position[0]}, {position[1]}]"
        )
    return {"type": "Point", "coordinates": position}


def _fix_line(coordinates: Any, bounds: Bounds, warnings: List[str]) -> Optional[GeoJson]:
    if not isinstance(coordinates, list) or len(coordinates) < 2:
        return None
    fixed: List[list[float]] = []
    any_swapped = False
    for point in coordinates:
        position, swapped = _fix_position(point, bounds)
        if position is None:
            return None
        any_swapped = any_swapped or swapped
        fixed.append(position)
    if any_swapped:
        warnings.append(f"LineString had {len(fixed)} coordinates swapped")
    return {"type": "LineString", "coordinates": fixed}


def _fix_polygon(coordinates: Any, bounds: Bounds, warnings: List[str]) -> Optional[GeoJson]:
    if not isinstance(coordinates, list) or not coordinates:
        return None
    rings: List[List[list[float]]] = []
    any_swapped = False
    for ring in coordinates:
        if not isinstance(ring, list) or len(ring) < 4:
            return None
        fixed_ring: List[list[float]] = []
        for point in ring:
            position, swapped = _fix_position(point, bounds)
            if position is None:
                return None
            any_swapped = any_swapped or swapped
            fixed_ring.append(position)
        if fixed_ring[0] != fixed_ring[-1]:
            return None
        rings.append(fixed_ring)
    if any_swapped:
        warnings.append("Polygon had coordinates swapped")
    return {"type": "Polygon", "coordinates": rings}


_GEOMETRY_FIXERS = {
    "Point": _fix_point,
    "LineString": _fix_line,
    "Polygon": _fix_polygon,
}


def _fix_geometry(geometry: Any, bounds: Bounds, warnings: List[str]) -> Optional[GeoJson]:
    if not isinstance(geometry, dict) or "coordinates" not in geometry:
        return None
    fixer = _GEOMETRY_FIXERS.get(geometry.get("type"))
    if fixer is None:
        return None
    return fixer(geometry["coordinates"], bounds, warnings)


def validate_and_fix_geojson(data: Any, bounds: Bounds, context: Optional[str] = None) -> GeoJsonValidation:
    """Validate a FeatureCollection, fixing swapped ``[lat, lng]`` pairs.

    Malformed features are dropped with an error. The collection is invalid
    only when its structure is wrong or no feature survives.
    """

    prefix = f"[{context}] " if context else ""
    warnings: List[str] = []
    errors: List[str] = []

    if not isinstance(data, dict):
        return GeoJsonValidation(False, None, warnings, [f"{prefix}GeoJSON is not an object"])
    if data.get("type") != "FeatureCollection":
        kind = data.get("type", "unknown")
        return GeoJsonValidation(
            False, None, warnings, [f'{prefix}GeoJSON type must be "FeatureCollection", got "{kind}"']
        )
    features = data.get("features")
    if not isinstance(features, list):
        return GeoJsonValidation(False, None, warnings, [f"{prefix}GeoJSON features must be an array"])

    fixed_features: List[GeoJson] = []
    for index, feature in enumerate(features):
        if not isinstance(feature, dict):
            errors.append(f"{prefix}Feature {index} is not an object")
            continue
        if feature.get("type") != "Feature":
            errors.append(
                f'{prefix}Feature {index} type must be "Feature", got "{feature.get("type", "unknown")}"'
            )
            continue
        if not feature.get("geometry"):
            errors.append(f"{prefix}Feature {index} missing geometry")
            continue

        feature_warnings: List[str] = []
        geometry = _fix_geometry(feature["geometry"], bounds, feature_warnings)
        if geometry is None:
            errors.append(f"{prefix}Feature {index} has invalid geometry")
            continue
        warnings.extend(f"{prefix}Feature {index}: {warning}" for warning in feature_warnings)

        properties = feature.get("properties")
        fixed_features.append(
            {
                "type": "Feature",
                "geometry": geometry,
                "properties": properties if isinstance(properties, dict) else {},
            }
        )

    if features and not fixed_features:
        errors.append(f"{prefix}All features are invalid")
        return GeoJsonValidation(False, None, warnings, errors)

    return GeoJsonValidation(True, {"type": "FeatureCollection", "features": fixed_features}, warnings, errors)


def validate_all_addresses_geocoded(
    locations: ExtractedLocations, known: Mapping[str, Coordinates]
) -> List[str]:
    """List every pin and street endpoint reference missing from ``known``."""

    missing: List[str] = []
    for pin in locations.pins:
        if pin.address not in known:
            missing.append(pin.address)
    for street in locations.streets:
        if street.from_text not in known:
            missing.append(f"{street.street} from: {street.from_text}")
        if street.to_text not in known:
            missing.append(f"{street.street} to: {street.to_text}")
    return missing


def _timespan_properties(timespans: List[Timespan]) -> dict[str, Any]:
    first = timespans[0] if timespans else None
    return {
        "start_time": first.start if first else "",
        "end_time": first.end if first else "",
        "timespans": [{"start": t.start, "end": t.end} for t in timespans],
    }


def _position(coordinates: Coordinates) -> list[float]:
    return [coordinates.lng, coordinates.lat]


class GeoJsonAssembler:
    """Build the validated FeatureCollection for one geocoded message."""

    def __init__(
        self,
        bounds: Bounds,
        street_geometry: Optional[StreetGeometryProvider] = None,
        transit_stop_label: str = "Спирка",
    ) -> None:
        self._bounds = bounds
        self._street_geometry = street_geometry
        self._stop_label = transit_stop_label

    async def assemble(
        self,
        locations: ExtractedLocations,
        result: GeocodingResult,
        collector: Optional[IngestErrorCollector] = None,
    ) -> GeoJson:
        """Return the collection or raise when nothing is displayable.

        Raises ``GeocodingFailure`` when no pin, street, parcel or stop
        resolved and ``GeoJsonValidationError`` when the validator rejects
        the collection. Partial resolution is recorded as a warning.
        """

        recorder = recorder_or_default(collector)
        known = result.pre_geocoded
        missing = validate_all_addresses_geocoded(locations, known)

        pins = [pin for pin in locations.pins if pin.address in known]
        streets = [s for s in locations.streets if s.from_text in known and s.to_text in known]
        parcels = [p for p in locations.cadastral_parcels if p.identifier in result.parcel_geometries]
        stops = [
            (code, stop)
            for code, stop in result.transit_stops.items()
            if f"{self._stop_label} {code}" in known
        ]

        if not (pins or streets or parcels or stops):
            recorder.error(f"No geocoded features available (all {len(missing)} addresses failed)")
            raise GeocodingFailure(missing)
        if missing:
            recorder.warn(
                f"Partial geocoding: {len(missing)} addresses failed "
                f"(showing {len(pins)} pins + {len(streets)} streets): {', '.join(missing)}"
            )

        features: List[GeoJson] = []
        for pin in pins:
            features.append(
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": _position(known[pin.address])},
                    "properties": {
                        "feature_type": "pin",
                        "address": pin.address,
                        **_timespan_properties(pin.timespans),
                    },
                }
            )
        for street in streets:
            features.append(
                {
                    "type": "Feature",
                    "geometry": await self._street_feature_geometry(street, result),
                    "properties": {
                        "feature_type": "street",
                        "street": street.street,
                        "from": street.from_text,
                        "to": street.to_text,
                        **_timespan_properties(street.timespans),
                    },
                }
            )
        for parcel in locations.cadastral_parcels:
            geometry = result.parcel_geometries.get(parcel.identifier)
            if geometry is None:
                if result.parcel_geometries:
                    recorder.warn(f"Cadastral property {parcel.identifier} failed to geocode")
                continue
            features.append(
                {
                    "type": "Feature",
                    "geometry": {"type": "Polygon", "coordinates": geometry["coordinates"]},
                    "properties": {
                        "feature_type": "cadastral_property",
                        "locationType": "cadastral_property",
                        "identifier": parcel.identifier,
                        **_timespan_properties(parcel.timespans),
                    },
                }
            )
        for code, stop in stops:
            features.append(
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": _position(known[f"{self._stop_label} {code}"])},
                    "properties": {
                        "feature_type": "bus_stop",
                        "locationType": "bus_stop",
                        "stop_code": code,
                        "stop_name": f"{stop.name} ({code})",
                    },
                }
            )

        validation = validate_and_fix_geojson(
            {"type": "FeatureCollection", "features": features}, self._bounds, context="extracted"
        )
        if not validation.is_valid or validation.geo_json is None:
            recorder.error("Invalid GeoJSON generated from extraction:")
            for error in validation.errors:
                recorder.error(f"  {error}")
            raise GeoJsonValidationError(validation.errors)
        for error in validation.errors:
            recorder.warn(f"Dropped feature: {error}")
        if validation.warnings:
            recorder.warn("Fixed GeoJSON from extraction:")
            for warning in validation.warnings:
                recorder.warn(f"  {warning}")
        return validation.geo_json

    async def _street_feature_geometry(self, street: StreetSection, result: GeocodingResult) -> GeoJson:
        start = result.pre_geocoded[street.from_text]
        end = result.pre_geocoded[street.to_text]
        if start == end:
            return {"type": "Point", "coordinates": _position(start)}

        both_pre_resolved = street.from_text in result.pre_resolved and street.to_text in result.pre_resolved
        if not both_pre_resolved and self._street_geometry is not None:
            centerline = await self._street_geometry.street_geometry(street.street, start, end)
            if centerline and len(centerline) >= 2:
                return {"type": "LineString", "coordinates": centerline}
            LOGGER.info("No centerline for %s, using a straight segment", street.street)
        return {"type": "LineString", "coordinates": [_position(start), _position(end)]}
