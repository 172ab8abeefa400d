from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from core.boundaries import BoundaryFilter
from core.config import IngestConfig, LocalityConfig
from core.errors import SplitFilterError
from core.geocoding import GeocodingRouter
from core.geojson import GeoJsonAssembler
from core.localities import get_bounds
from core.message_ids import encode_document_id
from core.models import Coordinates, IngestOptions, ResolvedAddress
from core.processor import MESSAGES, IngestOrchestrator

SOFIA = get_bounds("bg.sofia")
NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)

RELEVANT = {
    "plainText": "Спира водата на ул. Оборище 14 на 12.03.2026 от 10:00 до 16:00.",
    "isRelevant": True,
    "responsibleEntity": "Софийска вода",
}
IRRELEVANT = {"plainText": "Поздравления за празника!", "isRelevant": False}
PIN_LOCATIONS = {
    "pins": [
        {
            "address": "ул. Оборище 14",
            "coordinates": {"lat": 42.6962, "lng": 23.3387},
            "timespans": [{"start": "12.03.2026 10:00", "end": "12.03.2026 16:00"}],
        }
    ]
}


class FakeStore:
    def __init__(self) -> None:
        self.collections: dict[str, dict[str, dict[str, Any]]] = {}

    def _docs(self, collection: str) -> dict[str, dict[str, Any]]:
        return self.collections.setdefault(collection, {})

    def find_by_id(self, collection: str, document_id: str) -> Optional[dict[str, Any]]:
        document = self._docs(collection).get(document_id)
        return json.loads(json.dumps(document)) if document is not None else None

    def insert(self, collection: str, document_id: Optional[str], document: dict[str, Any]) -> str:
        document_id = document_id or f"doc{len(self._docs(collection)) + 1}"
        self._docs(collection)[document_id] = {**document, "id": document_id}
        return document_id

    def upsert(self, collection: str, document_id: str, document: dict[str, Any]) -> None:
        self._docs(collection)[document_id] = {**document, "id": document_id}

    def update(self, collection: str, document_id: str, fields: dict[str, Any]) -> None:
        self._docs(collection)[document_id].update(fields)

    def append(self, collection: str, document_id: str, field: str, value: Any) -> None:
        self._docs(collection)[document_id].setdefault(field, []).append(value)

    def find(self, collection: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        filters = filters or {}
        return [
            dict(document)
            for document in self._docs(collection).values()
            if all(document.get(key) == value for key, value in filters.items())
        ]

    def delete(self, collection: str, document_id: str) -> None:
        self._docs(collection).pop(document_id, None)


class FakeExtraction:
    def __init__(
        self,
        split: Any,
        categories: Any = None,
        locations: Any = None,
        categorize_delay: float = 0.0,
    ) -> None:
        self.split = split
        self.categories = {"categories": ["water"]} if categories is None else categories
        self.locations = PIN_LOCATIONS if locations is None else locations
        self.categorize_delay = categorize_delay
        self.calls: list[str] = []

    @staticmethod
    def _text(value: Any) -> str:
        return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)

    async def filter_and_split(self, text: str) -> str:
        self.calls.append("filter_and_split")
        return self._text(self.split)

    async def categorize(self, text: str) -> str:
        self.calls.append("categorize")
        if self.categorize_delay:
            await asyncio.sleep(self.categorize_delay)
        return self._text(self.categories)

    async def extract_locations(self, text: str) -> str:
        self.calls.append("extract_locations")
        return self._text(self.locations)


class FakeGeocoder:
    def __init__(self, results: Optional[dict[str, Coordinates]] = None) -> None:
        self.results = results or {}

    async def geocode(self, address: str) -> Optional[ResolvedAddress]:
        coordinates = self.results.get(address)
        return ResolvedAddress(address, address, coordinates) if coordinates else None


def _orchestrator(
    extraction: FakeExtraction,
    store: FakeStore,
    geocoder: Optional[FakeGeocoder] = None,
    boundary_filter: Optional[BoundaryFilter] = None,
    timeout: float = 5.0,
    clock=lambda: NOW,
) -> IngestOrchestrator:
    return IngestOrchestrator(
        extraction=extraction,
        router=GeocodingRouter(geocoder or FakeGeocoder(), SOFIA),
        assembler=GeoJsonAssembler(SOFIA),
        store=store,
        locality=LocalityConfig(locality="bg.sofia"),
        boundary_filter=boundary_filter,
        ingest_config=IngestConfig(collaborator_timeout_seconds=timeout),
        clock=clock,
    )


def _steps(document: dict[str, Any]) -> list[str]:
    return [event["step"] for event in document["process"]]


def test_relevant_message_is_finalized_with_geometry() -> None:
    store = FakeStore()
    url = "https://www.sofiyskavoda.bg/water-stops/1"
    orchestrator = _orchestrator(FakeExtraction([RELEVANT]), store)

    result = asyncio.run(orchestrator.ingest("raw", IngestOptions(locality="bg.sofia", source_url=url)))

    assert (result.total_categorized, result.total_relevant, result.total_irrelevant) == (1, 1, 0)
    message = result.messages[0]
    assert message.id == encode_document_id(url)
    assert message.categories == ["water"]
    assert message.finalized_at == NOW
    assert message.ingest_errors == []
    assert message.geo_json["features"][0]["geometry"]["coordinates"] == [23.3387, 42.6962]
    assert message.timespan_start == datetime(2026, 3, 12, 8, 0, tzinfo=timezone.utc)
    assert message.timespan_end == datetime(2026, 3, 12, 14, 0, tzinfo=timezone.utc)

    document = store.find_by_id(MESSAGES, message.id)
    assert document["sourceUrl"] == url
    assert "ingestErrors" not in document
    assert document["addresses"][0]["originalText"] == "ул. Оборище 14"
    assert _steps(document) == ["filterAndSplit", "categorize", "extractLocations", "geocode", "finalize"]


def test_split_messages_get_suffixed_ids_and_irrelevant_is_finalized() -> None:
    store = FakeStore()
    url = "https://example.org/notice"
    orchestrator = _orchestrator(FakeExtraction([RELEVANT, IRRELEVANT]), store)

    result = asyncio.run(orchestrator.ingest("raw", IngestOptions(locality="bg.sofia", source_url=url)))

    base = encode_document_id(url)
    assert [message.id for message in result.messages] == [f"{base}_1", f"{base}_2"]
    assert (result.total_relevant, result.total_irrelevant) == (1, 1)
    irrelevant = result.messages[1]
    assert irrelevant.is_relevant is False
    assert irrelevant.geo_json is None
    assert irrelevant.finalized_at == NOW
    assert _steps(store.find_by_id(MESSAGES, irrelevant.id)) == ["filterAndSplit", "finalize"]


def test_filter_split_failure_is_fatal_and_stores_nothing() -> None:
    store = FakeStore()
    orchestrator = _orchestrator(FakeExtraction("{not json"), store)

    with pytest.raises(SplitFilterError):
        asyncio.run(orchestrator.ingest("raw", IngestOptions(locality="bg.sofia")))

    assert store.find(MESSAGES) == []


def test_relevant_message_without_text_records_inconsistency() -> None:
    store = FakeStore()
    extraction = FakeExtraction([{"plainText": "  ", "isRelevant": True}])

    result = asyncio.run(_orchestrator(extraction, store).ingest("raw", IngestOptions(locality="bg.sofia")))

    message = result.messages[0]
    assert "categorize" not in extraction.calls
    assert message.finalized_at == NOW
    assert message.geo_json is None
    assert "empty plainText" in message.ingest_errors[0]["text"]
    assert message.ingest_errors[-1]["text"] == "Failed to extract data from message, marking as finalized"


def test_zero_categories_skip_location_extraction() -> None:
    store = FakeStore()
    extraction = FakeExtraction([RELEVANT], categories={"categories": []})

    result = asyncio.run(_orchestrator(extraction, store).ingest("raw", IngestOptions(locality="bg.sofia")))

    assert "extract_locations" not in extraction.calls
    assert result.messages[0].categories == []
    assert result.messages[0].finalized_at == NOW


def test_categorize_timeout_is_recorded() -> None:
    store = FakeStore()
    extraction = FakeExtraction([RELEVANT], categorize_delay=0.5)

    result = asyncio.run(
        _orchestrator(extraction, store, timeout=0.01).ingest("raw", IngestOptions(locality="bg.sofia"))
    )

    message = result.messages[0]
    assert message.finalized_at == NOW
    assert "did not respond" in message.ingest_errors[0]["text"]


def test_nothing_geocoded_finalizes_without_geometry() -> None:
    store = FakeStore()
    locations = {"pins": [{"address": "ул. Непозната 1", "timespans": []}]}
    extraction = FakeExtraction([RELEVANT], locations=locations)

    result = asyncio.run(_orchestrator(extraction, store).ingest("raw", IngestOptions(locality="bg.sofia")))

    message = result.messages[0]
    assert message.geo_json is None
    assert message.finalized_at == NOW
    types = {entry["type"] for entry in message.ingest_errors}
    assert "exception" in types
    assert any("ул. Непозната 1" in entry["text"] for entry in message.ingest_errors)
    # Without a single parseable date both bounds fall back to the crawl time.
    assert message.timespan_start == message.timespan_end == NOW


def test_boundary_exclusion_clears_geometry() -> None:
    store = FakeStore()
    far_away = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {},
                "geometry": {
                    "type": "Polygon",
                    "coordinates": [[[23.40, 42.75], [23.45, 42.75], [23.45, 42.78], [23.40, 42.75]]],
                },
            }
        ],
    }
    orchestrator = _orchestrator(FakeExtraction([RELEVANT]), store, boundary_filter=BoundaryFilter(far_away))

    message = asyncio.run(orchestrator.ingest("raw", IngestOptions(locality="bg.sofia"))).messages[0]

    assert message.geo_json is None
    assert message.ingest_errors[0]["type"] == "warning"
    assert "boundaryFilter" in _steps(store.find_by_id(MESSAGES, message.id))


def test_precomputed_geojson_skips_extraction() -> None:
    store = FakeStore()
    extraction = FakeExtraction([RELEVANT])
    geo_json = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": [42.6962, 23.3387]},
                "properties": {"startTime": "12.03.2026 10:00", "endTime": "12.03.2026 16:00"},
            }
        ],
    }
    options = IngestOptions(
        locality="bg.sofia",
        source="toplo-bg",
        source_url="https://toplo.bg/accidents/1",
        precomputed_geo_json=geo_json,
        categories=["heating"],
        is_relevant=True,
    )

    result = asyncio.run(_orchestrator(extraction, store).ingest("Авария", options))

    assert extraction.calls == []
    message = result.messages[0]
    assert message.categories == ["heating"]
    assert message.is_relevant is True
    assert message.geo_json["features"][0]["geometry"]["coordinates"] == [23.3387, 42.6962]
    assert message.ingest_errors[0]["type"] == "warning"
    assert message.timespan_start == datetime(2026, 3, 12, 8, 0, tzinfo=timezone.utc)


def test_reingest_keeps_original_created_at() -> None:
    store = FakeStore()
    url = "https://example.org/notice"
    first_clock = datetime(2026, 3, 1, tzinfo=timezone.utc)
    orchestrator = _orchestrator(FakeExtraction([RELEVANT]), store, clock=lambda: first_clock)
    asyncio.run(orchestrator.ingest("raw", IngestOptions(locality="bg.sofia", source_url=url)))

    again = _orchestrator(FakeExtraction([RELEVANT]), store)
    message = asyncio.run(again.ingest("raw", IngestOptions(locality="bg.sofia", source_url=url))).messages[0]

    assert message.created_at == first_clock
    assert message.finalized_at == NOW


def test_precomputed_irrelevant_message_is_counted_as_irrelevant() -> None:
    store = FakeStore()
    options = IngestOptions(
        locality="bg.sofia",
        source_url="https://example.org/greeting",
        precomputed_geo_json={
            "type": "FeatureCollection",
            "features": [
                {"type": "Feature", "properties": {}, "geometry": {"type": "Point", "coordinates": [23.3387, 42.6962]}}
            ],
        },
        categories=[],
        is_relevant=False,
    )

    result = asyncio.run(_orchestrator(FakeExtraction([RELEVANT]), store).ingest("Честит празник", options))

    assert (result.total_categorized, result.total_relevant, result.total_irrelevant) == (1, 0, 1)
    assert result.messages[0].is_relevant is False


def test_reingest_keeps_delivery_bookkeeping_and_process_log() -> None:
    store = FakeStore()
    url = "https://example.org/notice"
    options = IngestOptions(locality="bg.sofia", source_url=url)
    asyncio.run(_orchestrator(FakeExtraction([RELEVANT]), store).ingest("raw", options))
    message_id = encode_document_id(url)
    store.update(MESSAGES, message_id, {"notificationsSent": True, "notificationsSentAt": NOW.isoformat()})

    asyncio.run(_orchestrator(FakeExtraction([RELEVANT]), store).ingest("raw", options))

    document = store.find_by_id(MESSAGES, message_id)
    assert document["notificationsSent"] is True
    assert document["notificationsSentAt"] == NOW.isoformat()
    assert _steps(document).count("filterAndSplit") == 2
