"""Geocoding orchestration for extracted locations.

Pins go to the point geocoder, street endpoints to the intersection resolver
(house-number endpoints to the point geocoder), cadastral parcels to the
parcel registry and transit stops to the stop registry. Coordinates supplied
with the extraction are validated first and bypass the providers.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Iterable, List, Mapping, Optional, Sequence

from core.config import GeocodingConfig
from core.dedup import deduplicate_addresses
from core.geo import validate_coordinates
from core.localities import Bounds
from core.models import (
    AddressKind,
    Coordinates,
    ExtractedLocations,
    GeoJson,
    GeocodingResult,
    ResolvedAddress,
    StreetSection,
    TransitStop,
)
from core.ports import IntersectionResolver, ParcelRegistry, PointGeocoder, TransitStopRegistry

LOGGER = logging.getLogger(__name__)

INTERSECTION_SEPARATOR = " ∩ "

_STANDALONE_NUMBER = re.compile(r"^\d+[А-Яа-я]?$", re.IGNORECASE)
_NUMBER_MARKERS = re.compile(r"№\s*\d+|бл\.\s*\d+|номер\s+\d+", re.IGNORECASE)


def has_house_number(endpoint: str) -> bool:
    """Return True when a street endpoint names a building rather than a cross street.

    Matches a bare number with an optional letter ("14", "25Б") and the
    explicit markers "№ 38", "бл. 5" and "номер 3".
    """

    if _STANDALONE_NUMBER.match(endpoint.strip()):
        return True
    return bool(_NUMBER_MARKERS.search(endpoint))


def build_house_number_query(street: str, endpoint: str) -> str:
    """Prefix the endpoint with its street unless it already names the street."""

    street = street.strip()
    endpoint = endpoint.strip()
    if street.lower() in endpoint.lower():
        return endpoint
    return f"{street} {endpoint}"


def build_intersection_query(street: str, endpoint: str) -> str:
    return f"{street}{INTERSECTION_SEPARATOR}{endpoint}"


def find_missing_street_endpoints(
    streets: Iterable[StreetSection], known: Mapping[str, Coordinates]
) -> List[str]:
    """Return, in street order, every endpoint absent from ``known``.

    Endpoints shared by several streets are listed once per street.
    """

    missing: List[str] = []
    for street in streets:
        if street.from_text not in known:
            missing.append(street.from_text)
        if street.to_text not in known:
            missing.append(street.to_text)
    return missing


def _unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


class GeocodingRouter:
    """Resolve one message's extracted locations into a GeocodingResult.

    A reference string is resolved by exactly one path: pre-resolved
    coordinates, the pin geocoder, the street endpoint resolvers, or the
    fallback geocoder for endpoints that are still missing afterwards.
    """

    def __init__(
        self,
        point_geocoder: PointGeocoder,
        bounds: Bounds,
        config: Optional[GeocodingConfig] = None,
        intersection_resolver: Optional[IntersectionResolver] = None,
        parcel_registry: Optional[ParcelRegistry] = None,
        transit_stops: Optional[TransitStopRegistry] = None,
    ) -> None:
        self._point_geocoder = point_geocoder
        self._bounds = bounds
        self._config = config or GeocodingConfig()
        self._intersections = intersection_resolver
        self._parcels = parcel_registry
        self._stops = transit_stops

    def transit_stop_label(self, code: str) -> str:
        return f"{self._config.transit_stop_label} {code}"

    def _validated(self, coordinates: Optional[Coordinates]) -> Optional[Coordinates]:
        return validate_coordinates(coordinates, self._bounds, self._config.coordinate_precision)

    async def geocode(self, locations: Optional[ExtractedLocations]) -> GeocodingResult:
        result = GeocodingResult()
        if locations is None:
            return result

        pre_resolved = self._collect_pre_resolved(locations, result)

        pin_queries = _unique(
            pin.address for pin in locations.pins if pin.address not in result.pre_geocoded
        )
        attempted = set(pin_queries)
        intersection_queries, house_numbers = self._plan_street_queries(
            locations.streets, result.pre_geocoded, attempted
        )
        attempted.update(house_numbers)

        pins, intersections, house_number_hits, parcels, stops = await asyncio.gather(
            self._geocode_points(pin_queries),
            self._resolve_intersections(intersection_queries),
            self._geocode_points(
                [build_house_number_query(street, endpoint) for endpoint, street in house_numbers.items()]
            ),
            self._resolve_parcels([parcel.identifier for parcel in locations.cadastral_parcels]),
            self._resolve_stops(locations.bus_stop_codes),
        )

        addresses: List[ResolvedAddress] = list(pre_resolved)
        for address in pins:
            self._remember(result, addresses, address, AddressKind.PIN)

        for query, coordinates in intersections.items():
            endpoint = query.split(INTERSECTION_SEPARATOR, 1)[1].strip()
            attempted.add(endpoint)
            self._remember(
                result,
                addresses,
                ResolvedAddress(endpoint, query, coordinates, AddressKind.STREET_ENDPOINT),
                AddressKind.STREET_ENDPOINT,
            )

        queries_to_endpoint = {
            build_house_number_query(street, endpoint): endpoint for endpoint, street in house_numbers.items()
        }
        for address in house_number_hits:
            endpoint = queries_to_endpoint.get(address.original_text)
            if endpoint is None:
                continue
            self._remember(
                result,
                addresses,
                ResolvedAddress(endpoint, address.formatted_address, address.coordinates),
                AddressKind.STREET_ENDPOINT,
            )

        # Fallback runs only after every street path has finished.
        missing = [
            endpoint
            for endpoint in _unique(find_missing_street_endpoints(locations.streets, result.pre_geocoded))
            if endpoint not in attempted
        ]
        if missing:
            LOGGER.info("Falling back to address geocoding for %d street endpoint(s)", len(missing))
            for address in await self._geocode_points(missing):
                self._remember(result, addresses, address, AddressKind.STREET_ENDPOINT)

        result.parcel_geometries = parcels
        for code, stop in stops.items():
            label = self.transit_stop_label(code)
            self._remember(
                result,
                addresses,
                ResolvedAddress(label, f"{stop.name} ({code})", stop.coordinates, AddressKind.TRANSIT_STOP),
                AddressKind.TRANSIT_STOP,
            )
            if label in result.pre_geocoded:
                result.transit_stops[code] = stop

        result.addresses = deduplicate_addresses(addresses, self._config.dedup_distance_meters)
        LOGGER.info(
            "Geocoded %d reference(s), %d address(es) after dedup, %d parcel(s), %d stop(s)",
            len(result.pre_geocoded),
            len(result.addresses),
            len(result.parcel_geometries),
            len(result.transit_stops),
        )
        return result

    def _collect_pre_resolved(
        self, locations: ExtractedLocations, result: GeocodingResult
    ) -> List[ResolvedAddress]:
        addresses: List[ResolvedAddress] = []

        def _accept(text: str, supplied: Optional[Coordinates], kind: AddressKind) -> None:
            if supplied is None or text in result.pre_geocoded:
                return
            coordinates = self._validated(supplied)
            if coordinates is None:
                LOGGER.warning(
                    "Ignoring pre-resolved coordinates for %r: (%s, %s) invalid or outside locality",
                    text,
                    supplied.lat,
                    supplied.lng,
                )
                return
            result.pre_geocoded[text] = coordinates
            result.pre_resolved.add(text)
            addresses.append(ResolvedAddress(text, text, coordinates, kind))

        for pin in locations.pins:
            _accept(pin.address, pin.coordinates, AddressKind.PIN)
        for street in locations.streets:
            _accept(street.from_text, street.from_coordinates, AddressKind.STREET_ENDPOINT)
            _accept(street.to_text, street.to_coordinates, AddressKind.STREET_ENDPOINT)

        if addresses:
            LOGGER.info("Using %d pre-resolved coordinate(s)", len(addresses))
        return addresses

    def _plan_street_queries(
        self,
        streets: Sequence[StreetSection],
        known: Mapping[str, Coordinates],
        pending: set[str],
    ) -> tuple[List[str], dict[str, str]]:
        """Split unresolved endpoints into intersection queries and house-number endpoints."""

        intersections: List[str] = []
        house_numbers: dict[str, str] = {}
        if self._intersections is None:
            return intersections, house_numbers

        for street in streets:
            for endpoint in (street.from_text, street.to_text):
                if endpoint in known or endpoint in pending or endpoint in house_numbers:
                    continue
                if has_house_number(endpoint):
                    house_numbers[endpoint] = street.street
                    continue
                query = build_intersection_query(street.street, endpoint)
                if query not in intersections:
                    intersections.append(query)
        return intersections, house_numbers

    def _remember(
        self,
        result: GeocodingResult,
        addresses: List[ResolvedAddress],
        address: ResolvedAddress,
        kind: AddressKind,
    ) -> None:
        if address.original_text in result.pre_geocoded:
            return
        coordinates = self._validated(address.coordinates)
        if coordinates is None:
            LOGGER.warning(
                "Rejected geocoding result for %r: (%s, %s) outside locality bounds",
                address.original_text,
                address.coordinates.lat,
                address.coordinates.lng,
            )
            return
        result.pre_geocoded[address.original_text] = coordinates
        addresses.append(ResolvedAddress(address.original_text, address.formatted_address, coordinates, kind))

    async def _geocode_points(self, queries: Sequence[str]) -> List[ResolvedAddress]:
        if not queries:
            return []
        results = await asyncio.gather(*(self._point_geocoder.geocode(query) for query in queries))
        resolved: List[ResolvedAddress] = []
        for query, address in zip(queries, results):
            if address is None:
                LOGGER.info("No geocoding result for %r", query)
                continue
            # Key results by the query so callers can map them back.
            resolved.append(ResolvedAddress(query, address.formatted_address, address.coordinates))
        return resolved

    async def _resolve_intersections(self, queries: Sequence[str]) -> dict[str, Coordinates]:
        if not queries or self._intersections is None:
            return {}
        return await self._intersections.resolve_intersections(queries)

    async def _resolve_parcels(self, identifiers: Sequence[str]) -> dict[str, GeoJson]:
        if not identifiers or self._parcels is None:
            return {}
        parcels = await self._parcels.resolve_parcels(_unique(identifiers))
        LOGGER.info("Resolved %d of %d cadastral parcel(s)", len(parcels), len(identifiers))
        return parcels

    async def _resolve_stops(self, codes: Sequence[str]) -> dict[str, TransitStop]:
        if not codes or self._stops is None:
            return {}
        stops = await self._stops.resolve_stops(_unique(codes))
        LOGGER.info("Resolved %d of %d transit stop(s)", len(stops), len(codes))
        return stops
