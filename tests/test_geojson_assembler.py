from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from core.errors import GeocodingFailure
from core.geojson import GeoJsonAssembler, validate_and_fix_geojson
from core.ingest_errors import IngestErrorCollector, IngestErrorType
from core.localities import get_bounds
from core.models import (
    CadastralParcel,
    Coordinates,
    ExtractedLocations,
    GeocodingResult,
    Pin,
    StreetSection,
    Timespan,
    TransitStop,
)

SOFIA = get_bounds("bg.sofia")


class FakeStreetGeometry:
    def __init__(self, line: Optional[list[list[float]]]) -> None:
        self.line = line
        self.calls = 0

    async def street_geometry(self, street: str, start: Coordinates, end: Coordinates):
        self.calls += 1
        return self.line


def _locations() -> ExtractedLocations:
    return ExtractedLocations(
        pins=[
            Pin("ул. Оборище 14", [Timespan("12.03.2026 10:00", "12.03.2026 16:00")]),
            Pin("ул. Непозната 1"),
        ],
        streets=[
            StreetSection("бул. Витоша", "ул. Алабин", "пл. Македония"),
            StreetSection("ул. Шишман", "ул. Раковски", "ул. Несъществуваща"),
        ],
    )


def test_partial_geocoding_keeps_resolved_features_and_warns() -> None:
    result = GeocodingResult(
        pre_geocoded={
            "ул. Оборище 14": Coordinates(42.6962, 23.3387),
            "ул. Алабин": Coordinates(42.6950, 23.3210),
            "пл. Македония": Coordinates(42.6934, 23.3155),
            "ул. Раковски": Coordinates(42.6920, 23.3250),
        }
    )
    collector = IngestErrorCollector()

    geo_json = asyncio.run(GeoJsonAssembler(SOFIA).assemble(_locations(), result, collector))

    assert [feature["properties"]["feature_type"] for feature in geo_json["features"]] == ["pin", "street"]
    pin, street = geo_json["features"]
    assert pin["geometry"] == {"type": "Point", "coordinates": [23.3387, 42.6962]}
    assert pin["properties"]["start_time"] == "12.03.2026 10:00"
    assert street["geometry"]["type"] == "LineString"
    assert street["properties"]["from"] == "ул. Алабин"

    warnings = [entry.text for entry in collector.entries if entry.type is IngestErrorType.WARNING]
    assert len(warnings) == 1
    assert "Partial geocoding: 2 addresses failed" in warnings[0]
    assert "ул. Непозната 1" in warnings[0]


def test_nothing_resolved_raises_with_every_missing_reference() -> None:
    collector = IngestErrorCollector()

    with pytest.raises(GeocodingFailure) as excinfo:
        asyncio.run(GeoJsonAssembler(SOFIA).assemble(_locations(), GeocodingResult(), collector))

    assert excinfo.value.missing == [
        "ул. Оборище 14",
        "ул. Непозната 1",
        "бул. Витоша from: ул. Алабин",
        "бул. Витоша to: пл. Македония",
        "ул. Шишман from: ул. Раковски",
        "ул. Шишман to: ул. Несъществуваща",
    ]
    assert collector.has(IngestErrorType.ERROR)


def test_coincident_street_endpoints_become_a_point() -> None:
    locations = ExtractedLocations(streets=[StreetSection("бул. Витоша", "ул. Алабин", "ул. Алабин ъгъла")])
    same = Coordinates(42.6950, 23.3210)
    result = GeocodingResult(pre_geocoded={"ул. Алабин": same, "ул. Алабин ъгъла": same})

    geo_json = asyncio.run(GeoJsonAssembler(SOFIA).assemble(locations, result))

    assert geo_json["features"][0]["geometry"] == {"type": "Point", "coordinates": [23.321, 42.695]}


def test_centerline_used_unless_both_endpoints_were_pre_resolved() -> None:
    centerline = [[23.3210, 42.6950], [23.3190, 42.6940], [23.3155, 42.6934]]
    provider = FakeStreetGeometry(centerline)
    assembler = GeoJsonAssembler(SOFIA, street_geometry=provider)
    locations = ExtractedLocations(streets=[StreetSection("бул. Витоша", "ул. Алабин", "пл. Македония")])
    known = {"ул. Алабин": Coordinates(42.6950, 23.3210), "пл. Македония": Coordinates(42.6934, 23.3155)}

    geocoded = asyncio.run(assembler.assemble(locations, GeocodingResult(pre_geocoded=dict(known))))
    assert geocoded["features"][0]["geometry"]["coordinates"] == centerline

    pre_resolved = GeocodingResult(pre_geocoded=dict(known), pre_resolved=set(known))
    straight = asyncio.run(assembler.assemble(locations, pre_resolved))
    assert straight["features"][0]["geometry"]["coordinates"] == [[23.321, 42.695], [23.3155, 42.6934]]
    assert provider.calls == 1


def test_parcels_and_stops_are_added() -> None:
    polygon = {
        "type": "Polygon",
        "coordinates": [[[23.32, 42.69], [23.321, 42.69], [23.321, 42.691], [23.32, 42.69]]],
    }
    locations = ExtractedLocations(
        cadastral_parcels=[CadastralParcel("68134.203.1234")],
        bus_stop_codes=["0123"],
    )
    stop = TransitStop("0123", "НДК", Coordinates(42.6847, 23.3190))
    result = GeocodingResult(
        pre_geocoded={"Спирка 0123": stop.coordinates},
        parcel_geometries={"68134.203.1234": polygon},
        transit_stops={"0123": stop},
    )

    geo_json = asyncio.run(GeoJsonAssembler(SOFIA).assemble(locations, result))

    parcel, bus_stop = geo_json["features"]
    assert parcel["properties"]["locationType"] == "cadastral_property"
    assert parcel["properties"]["identifier"] == "68134.203.1234"
    assert bus_stop["properties"]["stop_code"] == "0123"
    assert bus_stop["geometry"]["coordinates"] == [23.319, 42.6847]


def test_validator_fixes_swapped_coordinates() -> None:
    data = {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "geometry": {"type": "Point", "coordinates": [42.6962, 23.3387]}}],
    }
    validation = validate_and_fix_geojson(data, SOFIA)
    assert validation.is_valid
    assert validation.fixed_coordinates
    assert validation.geo_json["features"][0]["geometry"]["coordinates"] == [23.3387, 42.6962]
    assert validation.geo_json["features"][0]["properties"] == {}


def test_validator_drops_malformed_features() -> None:
    data = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [23.3387, 42.6962]}},
            {"type": "Feature", "geometry": None},
            {
                "type": "Feature",
                "geometry": {"type": "Polygon", "coordinates": [[[23.3, 42.6], [23.4, 42.6], [23.4, 42.7], [23.3, 42.65]]]},
            },
        ],
    }
    validation = validate_and_fix_geojson(data, SOFIA)
    assert validation.is_valid
    assert len(validation.geo_json["features"]) == 1
    assert validation.errors == ["Feature 1 missing geometry", "Feature 2 has invalid geometry"]


def test_validator_rejects_wrong_collection_type() -> None:
    validation = validate_and_fix_geojson({"type": "Feature"}, SOFIA)
    assert not validation.is_valid
    assert validation.geo_json is None
