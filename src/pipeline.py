"""Composition root for cityscope.

Builds the core services from settings and the environment. Every adapter
(extraction mode, geocoding providers, delivery method) is chosen here once,
so the core never branches on configuration.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv

import settings
from adapters.extraction_client import FixtureExtractionClient, HttpExtractionClient
from adapters.google_geocoder import GoogleGeocoder
from adapters.gtfs_stops import GtfsStopRegistry
from adapters.overpass import OverpassClient, OverpassIntersectionResolver, OverpassStreetGeometry
from adapters.parcels import GeoJsonParcelRegistry
from adapters.sqlite_store import SQLiteDocumentStore
from adapters.telegram_bot_sender import TelegramBotSender
from client import bot_token
from core.boundaries import BoundaryFilter, load_locality_boundary
from core.config import GeocodingConfig, IngestConfig, LocalityConfig, NotificationConfig
from core.geocoding import GeocodingRouter
from core.geojson import GeoJsonAssembler
from core.localities import get_bounds, get_center, validate_locality
from core.matching import NotificationMatcher
from core.models import GeoJson
from core.ports import ExtractionClient, NotificationSender
from core.processor import IngestOrchestrator

LOGGER = logging.getLogger(__name__)


def locality_config() -> LocalityConfig:
    return LocalityConfig(
        locality=settings.LOCALITY,
        timezone=settings.TIMEZONE,
        boundary_path=settings.BOUNDARY_PATH,
    )


def geocoding_config() -> GeocodingConfig:
    return GeocodingConfig(
        coordinate_precision=settings.COORDINATE_PRECISION,
        dedup_distance_meters=settings.DEDUP_DISTANCE_METERS,
        outlier_distance_meters=settings.OUTLIER_DISTANCE_METERS,
        transit_stop_label=settings.TRANSIT_STOP_LABEL,
    )


def ingest_config() -> IngestConfig:
    floor = datetime.fromisoformat(settings.TIMESPAN_FLOOR)
    if floor.tzinfo is None:
        floor = floor.replace(tzinfo=timezone.utc)
    return IngestConfig(
        collaborator_timeout_seconds=settings.COLLABORATOR_TIMEOUT_SECONDS,
        timespan_floor=floor,
        max_error_payload_chars=settings.MAX_ERROR_PAYLOAD_CHARS,
    )


def notification_config() -> NotificationConfig:
    return NotificationConfig(
        app_url=settings.APP_URL,
        preview_chars=settings.PREVIEW_CHARS,
        title=settings.NOTIFICATION_TITLE,
    )


def build_store() -> SQLiteDocumentStore:
    store = SQLiteDocumentStore(settings.DB_PATH)
    store.init_db()
    return store


def build_extraction_client() -> ExtractionClient:
    if settings.EXTRACTION_MODE == "fixtures":
        LOGGER.info("Using extraction fixtures from %s", settings.EXTRACTION_FIXTURES_PATH)
        return FixtureExtractionClient(settings.EXTRACTION_FIXTURES_PATH, settings.EXTRACTION_FIXTURE_PATTERNS)
    if settings.EXTRACTION_MODE == "http":
        return HttpExtractionClient(
            settings.EXTRACTION_ENDPOINT,
            api_key=os.getenv("EXTRACTION_API_KEY"),
            timeout=settings.EXTRACTION_TIMEOUT_SECONDS,
        )
    raise ValueError(f"Unsupported extraction mode: {settings.EXTRACTION_MODE}")


def build_router(config: GeocodingConfig) -> GeocodingRouter:
    api_key = os.getenv("GOOGLE_MAPS_API_KEY")
    # Fail fast on missing credentials rather than on the first pin.
    if not api_key:
        raise RuntimeError("Missing GOOGLE_MAPS_API_KEY in environment")

    bounds = get_bounds(settings.LOCALITY)
    geocoder = GoogleGeocoder(
        api_key,
        bounds,
        get_center(settings.LOCALITY),
        city=settings.CITY_NAME,
        country=settings.COUNTRY_CODE,
        country_name=settings.COUNTRY_NAME,
        timeout=settings.GEOCODER_TIMEOUT_SECONDS,
    )
    intersections = None
    if settings.OVERPASS_ENABLED:
        intersections = OverpassIntersectionResolver(bounds, OverpassClient(settings.OVERPASS_INSTANCES))
    parcels = GeoJsonParcelRegistry.from_file(settings.PARCELS_PATH) if settings.PARCELS_PATH else None
    stops = GtfsStopRegistry.from_file(settings.GTFS_STOPS_PATH) if settings.GTFS_STOPS_PATH else None
    return GeocodingRouter(
        geocoder,
        bounds,
        config=config,
        intersection_resolver=intersections,
        parcel_registry=parcels,
        transit_stops=stops,
    )


def build_assembler(config: GeocodingConfig) -> GeoJsonAssembler:
    bounds = get_bounds(settings.LOCALITY)
    street_geometry = None
    if settings.STREET_GEOMETRY_ENABLED:
        street_geometry = OverpassStreetGeometry(bounds, OverpassClient(settings.OVERPASS_INSTANCES))
    return GeoJsonAssembler(bounds, street_geometry=street_geometry, transit_stop_label=config.transit_stop_label)


def build_orchestrator(store: Optional[SQLiteDocumentStore] = None) -> IngestOrchestrator:
    load_dotenv()
    config = geocoding_config()
    locality = locality_config()
    return IngestOrchestrator(
        extraction=build_extraction_client(),
        router=build_router(config),
        assembler=build_assembler(config),
        store=store or build_store(),
        locality=locality,
        boundary_filter=BoundaryFilter.from_paths([locality.boundary_path]),
        geocoding_config=config,
        ingest_config=ingest_config(),
    )


def boundary_loader(locality: str) -> Optional[GeoJson]:
    """Boundary used for city-wide messages, or None when the locality has no file."""

    validate_locality(locality)
    path = os.path.join(settings.LOCALITIES_DIR, f"{locality}.geojson")
    if not os.path.exists(path):
        LOGGER.warning("No boundary file for locality %s", locality)
        return None
    return load_locality_boundary(settings.LOCALITIES_DIR, locality)


def build_bot_sender() -> NotificationSender:
    return TelegramBotSender(bot_token())


def build_matcher(sender: NotificationSender, store: Optional[SQLiteDocumentStore] = None) -> NotificationMatcher:
    return NotificationMatcher(
        store=store or build_store(),
        sender=sender,
        config=notification_config(),
        boundary_loader=boundary_loader,
    )
