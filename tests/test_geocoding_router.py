from __future__ import annotations

import asyncio
from typing import Optional, Sequence

from core.geocoding import (
    GeocodingRouter,
    build_house_number_query,
    find_missing_street_endpoints,
    has_house_number,
)
from core.localities import get_bounds
from core.models import (
    AddressKind,
    Coordinates,
    ExtractedLocations,
    Pin,
    ResolvedAddress,
    StreetSection,
    TransitStop,
)

SOFIA = get_bounds("bg.sofia")


class FakeGeocoder:
    def __init__(self, results: Optional[dict[str, Coordinates]] = None) -> None:
        self.results = results or {}
        self.calls: list[str] = []

    async def geocode(self, address: str) -> Optional[ResolvedAddress]:
        self.calls.append(address)
        coordinates = self.results.get(address)
        if coordinates is None:
            return None
        return ResolvedAddress(address, f"{address}, София", coordinates)


class FakeIntersections:
    def __init__(self, results: Optional[dict[str, Coordinates]] = None) -> None:
        self.results = results or {}
        self.calls: list[list[str]] = []

    async def resolve_intersections(self, queries: Sequence[str]) -> dict[str, Coordinates]:
        self.calls.append(list(queries))
        return {query: self.results[query] for query in queries if query in self.results}


class FakeStops:
    async def resolve_stops(self, codes: Sequence[str]) -> dict[str, TransitStop]:
        return {
            code: TransitStop(code, "НДК", Coordinates(42.6847, 23.3190))
            for code in codes
            if code == "0123"
        }


def test_house_number_detection() -> None:
    assert has_house_number("14")
    assert has_house_number("25Б")
    assert has_house_number("№ 38")
    assert has_house_number("бл. 5")
    assert has_house_number("номер 3")
    assert not has_house_number("ул. Алабин")
    assert not has_house_number("пл. Македония")


def test_house_number_query_avoids_repeating_street() -> None:
    assert build_house_number_query("бул. Витоша", "14") == "бул. Витоша 14"
    assert build_house_number_query("бул. Витоша", "бул. Витоша № 14") == "бул. Витоша № 14"


def test_missing_endpoints_keep_street_order() -> None:
    streets = [
        StreetSection("бул. Витоша", "ул. Алабин", "пл. Македония"),
        StreetSection("ул. Граф Игнатиев", "ул. Алабин", "ул. Шишман"),
    ]
    known = {"пл. Македония": Coordinates(42.69, 23.32)}
    assert find_missing_street_endpoints(streets, known) == ["ул. Алабин", "ул. Алабин", "ул. Шишман"]


def test_pre_resolved_pin_is_rounded_and_skips_geocoder() -> None:
    geocoder = FakeGeocoder()
    router = GeocodingRouter(geocoder, SOFIA)
    locations = ExtractedLocations(
        pins=[Pin("ул. Оборище 14", coordinates=Coordinates(lat=42.6993633, lng=23.328635))]
    )

    result = asyncio.run(router.geocode(locations))

    assert geocoder.calls == []
    assert result.pre_geocoded["ул. Оборище 14"] == Coordinates(lat=42.699363, lng=23.328635)
    assert result.pre_resolved == {"ул. Оборище 14"}
    assert len(result.addresses) == 1


def test_pre_resolved_outside_bounds_is_geocoded_instead() -> None:
    geocoder = FakeGeocoder({"НДК": Coordinates(42.6847, 23.3190)})
    router = GeocodingRouter(geocoder, SOFIA)
    locations = ExtractedLocations(pins=[Pin("НДК", coordinates=Coordinates(lat=10.0, lng=10.0))])

    result = asyncio.run(router.geocode(locations))

    assert geocoder.calls == ["НДК"]
    assert result.pre_geocoded["НДК"] == Coordinates(42.6847, 23.319)
    assert result.pre_resolved == set()


def test_geocoder_results_outside_bounds_are_rejected() -> None:
    geocoder = FakeGeocoder({"Пловдив център": Coordinates(42.1354, 24.7453)})
    router = GeocodingRouter(geocoder, SOFIA)

    result = asyncio.run(router.geocode(ExtractedLocations(pins=[Pin("Пловдив център")])))

    assert result.pre_geocoded == {}
    assert result.addresses == []


def test_street_endpoints_use_intersections_and_house_numbers() -> None:
    geocoder = FakeGeocoder({"бул. Витоша 14": Coordinates(42.6930, 23.3205)})
    intersections = FakeIntersections({"бул. Витоша ∩ ул. Алабин": Coordinates(42.6950, 23.3210)})
    router = GeocodingRouter(geocoder, SOFIA, intersection_resolver=intersections)
    locations = ExtractedLocations(streets=[StreetSection("бул. Витоша", "ул. Алабин", "14")])

    result = asyncio.run(router.geocode(locations))

    assert intersections.calls == [["бул. Витоша ∩ ул. Алабин"]]
    assert geocoder.calls == ["бул. Витоша 14"]
    assert result.pre_geocoded["ул. Алабин"] == Coordinates(42.695, 23.321)
    assert result.pre_geocoded["14"] == Coordinates(42.693, 23.3205)
    assert {address.kind for address in result.addresses} == {AddressKind.STREET_ENDPOINT}


def test_unresolved_intersection_falls_back_to_geocoder_once() -> None:
    geocoder = FakeGeocoder({"ул. Алабин": Coordinates(42.6950, 23.3210)})
    router = GeocodingRouter(geocoder, SOFIA, intersection_resolver=FakeIntersections())
    locations = ExtractedLocations(
        streets=[
            StreetSection("бул. Витоша", "ул. Алабин", "пл. Македония"),
            StreetSection("ул. Граф Игнатиев", "ул. Алабин", "пл. Македония"),
        ]
    )

    result = asyncio.run(router.geocode(locations))

    assert sorted(geocoder.calls) == sorted(["ул. Алабин", "пл. Македония"])
    assert "ул. Алабин" in result.pre_geocoded
    assert "пл. Македония" not in result.pre_geocoded


def test_pin_and_endpoint_with_same_text_is_geocoded_once() -> None:
    geocoder = FakeGeocoder({"пл. Македония": Coordinates(42.6934, 23.3155)})
    router = GeocodingRouter(geocoder, SOFIA, intersection_resolver=FakeIntersections())
    locations = ExtractedLocations(
        pins=[Pin("пл. Македония")],
        streets=[StreetSection("бул. Витоша", "пл. Македония", "ул. Алабин")],
    )

    asyncio.run(router.geocode(locations))

    assert geocoder.calls.count("пл. Македония") == 1


def test_transit_stops_are_labelled_by_code() -> None:
    router = GeocodingRouter(FakeGeocoder(), SOFIA, transit_stops=FakeStops())
    locations = ExtractedLocations(bus_stop_codes=["0123", "9999"])

    result = asyncio.run(router.geocode(locations))

    assert set(result.transit_stops) == {"0123"}
    assert "Спирка 0123" in result.pre_geocoded
    address = result.addresses[0]
    assert address.formatted_address == "НДК (0123)"
    assert address.kind is AddressKind.TRANSIT_STOP
