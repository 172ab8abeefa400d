from __future__ import annotations

import json

import pytest

from core.boundaries import clear_boundary_cache, is_within_boundaries, load_locality_boundary
from core.errors import UnknownLocalityError
from core.localities import get_bounds, get_center, is_within_bounds, validate_locality

SQUARE = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {},
            "geometry": {
                "type": "Polygon",
                "coordinates": [[[23.30, 42.68], [23.35, 42.68], [23.35, 42.71], [23.30, 42.71], [23.30, 42.68]]],
            },
        }
    ],
}


def _points(*coordinates: tuple[float, float]) -> dict:
    return {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "properties": {}, "geometry": {"type": "Point", "coordinates": [lng, lat]}}
            for lng, lat in coordinates
        ],
    }


def test_registered_locality_has_bounds_and_center() -> None:
    bounds = get_bounds("bg.sofia")
    lat, lng = get_center("bg.sofia")

    assert bounds.contains(lat, lng)
    assert bounds.bbox() == "42.605,23.188,42.83,23.528"


@pytest.mark.parametrize("locality", ["../etc", "bg.plovdiv", "BG.SOFIA", "", "bg/sofia"])
def test_unknown_or_malformed_locality_is_rejected(locality: str) -> None:
    with pytest.raises(UnknownLocalityError):
        validate_locality(locality)
    with pytest.raises(UnknownLocalityError):
        get_bounds(locality)


def test_bounds_are_inclusive_on_edges() -> None:
    bounds = get_bounds("bg.sofia")

    assert is_within_bounds("bg.sofia", bounds.south, bounds.west)
    assert is_within_bounds("bg.sofia", bounds.north, bounds.east)
    assert not is_within_bounds("bg.sofia", bounds.north + 0.0001, bounds.east)
    assert not is_within_bounds("bg.sofia", 42.7, 22.9)


def test_within_boundaries_needs_one_touching_feature() -> None:
    assert is_within_boundaries(_points((23.60, 42.90), (23.32, 42.69)), SQUARE)
    assert not is_within_boundaries(_points((23.60, 42.90)), SQUARE)
    assert not is_within_boundaries({"type": "FeatureCollection", "features": []}, SQUARE)


def test_locality_boundary_is_read_from_directory(tmp_path) -> None:
    clear_boundary_cache()
    (tmp_path / "bg.sofia.geojson").write_text(json.dumps(SQUARE), encoding="utf-8")

    loaded = load_locality_boundary(str(tmp_path), "bg.sofia")

    assert loaded == SQUARE
    clear_boundary_cache()


def test_locality_boundary_rejects_path_like_ids(tmp_path) -> None:
    with pytest.raises(UnknownLocalityError):
        load_locality_boundary(str(tmp_path), "../bg.sofia")
