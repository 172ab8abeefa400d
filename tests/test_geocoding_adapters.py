from __future__ import annotations

import asyncio
import json

from shapely.geometry import MultiLineString

from adapters.google_geocoder import GoogleGeocoder, is_generic_city_address
from adapters.gtfs_stops import GtfsStopRegistry
from adapters.overpass import (
    OverpassIntersectionResolver,
    build_street_query,
    crossing_point,
    normalize_street_name,
    section_between,
    ways_to_lines,
)
from adapters.parcels import GeoJsonParcelRegistry
from core.localities import get_bounds, get_center
from core.models import Coordinates

SOFIA = get_bounds("bg.sofia")


def _geocoder() -> GoogleGeocoder:
    return GoogleGeocoder("key", SOFIA, get_center("bg.sofia"))


def _candidate(lat: float, lng: float, formatted: str) -> dict:
    return {"formatted_address": formatted, "geometry": {"location": {"lat": lat, "lng": lng}}}


def test_google_picks_first_acceptable_candidate() -> None:
    data = {
        "status": "OK",
        "results": [
            _candidate(42.69771, 23.32189, "ул. Непозната, София"),
            _candidate(42.70, 23.32, "Sofia, Bulgaria"),
            _candidate(42.1354, 24.7453, "Пловдив"),
            _candidate(42.6962, 23.3387, "ул. „Оборище“ 14, 1504 София"),
        ],
    }
    resolved = _geocoder().pick_result("ул. Оборище 14", data)
    assert resolved.original_text == "ул. Оборище 14"
    assert resolved.formatted_address.startswith("ул. „Оборище“ 14")
    assert resolved.coordinates == Coordinates(42.6962, 23.3387)


def test_google_zero_results_is_none() -> None:
    assert _geocoder().pick_result("x", {"status": "ZERO_RESULTS", "results": []}) is None
    assert _geocoder().pick_result("x", {}) is None


def test_generic_city_addresses() -> None:
    assert is_generic_city_address("Sofia, Bulgaria")
    assert is_generic_city_address("София, България")
    assert not is_generic_city_address("бул. Витоша 1, София")


def test_google_url_scopes_query_to_city() -> None:
    url = _geocoder()._url("ул. Оборище 14")
    assert "components=locality%3ASofia%7Ccountry%3ABG" in url
    assert "Sofia%2C+Bulgaria" in url


def test_street_name_normalization_and_query() -> None:
    assert normalize_street_name("бул. „Витоша“") == "витоша"
    assert normalize_street_name("ул.  Граф   Игнатиев") == "граф игнатиев"
    query = build_street_query("ул. Оборище", SOFIA)
    assert "residential" in query
    assert '"name"~"оборище",i' in query
    assert SOFIA.bbox() in query
    assert "residential" not in build_street_query("бул. Витоша", SOFIA)


def _ways() -> list[dict]:
    return [
        {"type": "way", "geometry": [{"lat": 42.690, "lon": 23.320}, {"lat": 42.700, "lon": 23.320}]},
        {"type": "way", "geometry": [{"lat": 42.695, "lon": 23.315}, {"lat": 42.695, "lon": 23.325}]},
        {"type": "node", "lat": 42.0, "lon": 23.0},
    ]


def test_crossing_point_of_two_streets() -> None:
    north_south = ways_to_lines(_ways()[:1])
    east_west = ways_to_lines(_ways()[1:])
    assert crossing_point(north_south, east_west) == Coordinates(42.695, 23.32)


def test_streets_far_apart_do_not_cross() -> None:
    first = MultiLineString([[(23.30, 42.69), (23.30, 42.70)]])
    second = MultiLineString([[(23.35, 42.69), (23.35, 42.70)]])
    assert crossing_point(first, second) is None


def test_section_between_cuts_and_orients_the_street() -> None:
    street = MultiLineString([[(23.320, 42.690), (23.320, 42.695)], [(23.320, 42.695), (23.320, 42.700)]])
    section = section_between(street, Coordinates(42.698, 23.320), Coordinates(42.692, 23.320))
    assert section[0] == [23.32, 42.698]
    assert section[-1] == [23.32, 42.692]


class FakeOverpassClient:
    def __init__(self, streets: dict[str, MultiLineString]) -> None:
        self.streets = streets
        self.calls: list[str] = []

    async def street_lines(self, street, bounds):
        self.calls.append(street)
        return self.streets.get(street)


def test_intersection_resolver_reuses_street_lookups() -> None:
    client = FakeOverpassClient(
        {
            "бул. Витоша": ways_to_lines(_ways()[:1]),
            "ул. Алабин": ways_to_lines(_ways()[1:]),
        }
    )
    resolver = OverpassIntersectionResolver(SOFIA, client, delay_seconds=0)

    resolved = asyncio.run(
        resolver.resolve_intersections(["бул. Витоша ∩ ул. Алабин", "бул. Витоша ∩ ул. Липсваща", "без разделител"])
    )

    assert resolved == {"бул. Витоша ∩ ул. Алабин": Coordinates(42.695, 23.32)}
    assert client.calls.count("бул. Витоша") == 1


def test_gtfs_registry_reads_stops_with_bom(tmp_path) -> None:
    path = tmp_path / "stops.txt"
    path.write_text(
        "\ufeffstop_id,stop_code,stop_name,stop_lat,stop_lon\n"
        "1,0123,НДК,42.6847,23.3190\n"
        "2,,Без код,42.69,23.32\n"
        "3,0456,Счупена,abc,23.32\n",
        encoding="utf-8",
    )
    registry = GtfsStopRegistry.from_file(str(path))
    assert len(registry) == 1

    stops = asyncio.run(registry.resolve_stops(["0123", "9999"]))
    assert list(stops) == ["0123"]
    assert stops["0123"].name == "НДК"
    assert stops["0123"].coordinates == Coordinates(42.6847, 23.319)


def test_parcel_registry_indexes_polygons(tmp_path) -> None:
    ring = [[23.32, 42.69], [23.321, 42.69], [23.321, 42.691], [23.32, 42.69]]
    data = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "properties": {"cadnum": "68134.203.1234"}, "geometry": {"type": "Polygon", "coordinates": [ring]}},
            {"type": "Feature", "properties": {"identifier": "68134.203.99"}, "geometry": {"type": "MultiPolygon", "coordinates": [[ring]]}},
            {"type": "Feature", "properties": {"identifier": "68134.1.1"}, "geometry": {"type": "Point", "coordinates": [23.3, 42.6]}},
        ],
    }
    path = tmp_path / "parcels.geojson"
    path.write_text(json.dumps(data), encoding="utf-8")
    registry = GeoJsonParcelRegistry.from_file(str(path))
    assert len(registry) == 2

    parcels = asyncio.run(registry.resolve_parcels(["68134.203.1234", "68134.203.99", "68134.1.1"]))
    assert set(parcels) == {"68134.203.1234", "68134.203.99"}
    assert parcels["68134.203.99"] == {"type": "Polygon", "coordinates": [ring]}
