"""Core message ingestion pipeline.

This module is integration-agnostic. It only relies on ports for extraction,
geocoding and storage, so adapters can be swapped at composition time.

Stages: filter & split, then per submessage categorize, extract locations,
geocode, assemble GeoJSON, boundary filter and finalize. Every stage writes
its result and an audit event to the message document before the next one
starts.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from core.audit import (
    BoundaryFilterEvent,
    CategorizeEvent,
    ExtractLocationsEvent,
    FilterSplitEvent,
    FinalizeEvent,
    GeocodeEvent,
    StageEvent,
)
from core.boundaries import BoundaryFilter, count_features
from core.config import GeocodingConfig, IngestConfig, LocalityConfig
from core.dedup import filter_outliers, prune_outliers_from_map
from core.errors import ExtractionError, InconsistencyError, SplitFilterError, ValidationError
from core.geocoding import GeocodingRouter
from core.geojson import GeoJsonAssembler, validate_and_fix_geojson
from core.ingest_errors import IngestErrorCollector, format_error_text
from core.localities import get_bounds, validate_locality
from core.message_ids import message_id_for
from core.models import (
    Categorization,
    ExtractedLocations,
    FilteredMessage,
    FinalizedMessage,
    GeoJson,
    IngestOptions,
    IngestResult,
    ResolvedAddress,
)
from core.ports import DocumentStore, ExtractionClient
from core.responses import (
    parse_categorize_response,
    parse_extract_locations_response,
    parse_filter_split_response,
)
from core.timespans import TimespanRange, TimespanResolver

LOGGER = logging.getLogger(__name__)

MESSAGES = "messages"
# Delivery bookkeeping survives re-ingestion of the same source.
_NOTIFICATION_FIELDS = ("notificationsSent", "notificationsSentAt")

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestOrchestrator:
    """Drives raw submissions through extraction, geocoding and finalization.

    Only filter & split failures and store errors reach the caller. Once a
    message document exists, stage failures are recorded on its error
    collector and the message is finalized in its best-effort state.
    """

    def __init__(
        self,
        extraction: ExtractionClient,
        router: GeocodingRouter,
        assembler: GeoJsonAssembler,
        store: DocumentStore,
        locality: LocalityConfig,
        boundary_filter: Optional[BoundaryFilter] = None,
        geocoding_config: Optional[GeocodingConfig] = None,
        ingest_config: Optional[IngestConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._extraction = extraction
        self._router = router
        self._assembler = assembler
        self._store = store
        self._locality = locality
        self._boundary = boundary_filter or BoundaryFilter(None)
        self._geocoding = geocoding_config or GeocodingConfig()
        self._config = ingest_config or IngestConfig()
        self._timespans = TimespanResolver(locality.timezone, self._config.timespan_floor)
        self._clock = clock

    async def ingest(self, text: str, options: IngestOptions) -> IngestResult:
        """Process one raw submission and return its finalized messages."""

        validate_locality(options.locality)
        crawled_at = options.crawled_at or self._clock()

        if options.precomputed_geo_json is not None:
            message = await self._ingest_precomputed(text, options, crawled_at)
            relevant = 0 if options.is_relevant is False else 1
            return IngestResult(
                messages=[message],
                total_categorized=1,
                total_relevant=relevant,
                total_irrelevant=1 - relevant,
            )

        filtered = await self._filter_and_split(text)
        LOGGER.info("Filter & split produced %d message(s)", len(filtered))

        messages = await asyncio.gather(
            *(
                self._process_submessage(text, item, index, len(filtered), options, crawled_at)
                for index, item in enumerate(filtered)
            )
        )
        relevant = sum(1 for item in filtered if item.is_relevant)
        return IngestResult(
            messages=list(messages),
            total_categorized=len(filtered),
            total_relevant=relevant,
            total_irrelevant=len(filtered) - relevant,
        )

    async def _call(self, stage: str, call: Awaitable[T]) -> T:
        timeout = self._config.collaborator_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as exc:
            raise ExtractionError(f"{stage} did not respond within {timeout:g}s") from exc

    async def _filter_and_split(self, text: str) -> list[FilteredMessage]:
        collector = IngestErrorCollector()
        try:
            response = await self._call("filter & split", self._extraction.filter_and_split(text))
        except ExtractionError as exc:
            LOGGER.error("Filter & split request failed: %s", exc)
            raise SplitFilterError("Message filter & split failed") from exc

        filtered = parse_filter_split_response(response, collector, self._config.max_error_payload_chars)
        if not filtered:
            LOGGER.error("Failed to filter & split message")
            raise SplitFilterError("Message filter & split failed")
        return filtered

    async def _process_submessage(
        self,
        raw_text: str,
        filtered: FilteredMessage,
        index: int,
        total: int,
        options: IngestOptions,
        crawled_at: datetime,
    ) -> FinalizedMessage:
        message_text = filtered.plain_text or raw_text
        message_id = message_id_for(options.source_url, index, total)
        collector = IngestErrorCollector()

        self._store_incoming(message_id, message_text, options, crawled_at)
        self._store.update(
            MESSAGES,
            message_id,
            {
                "plainText": filtered.plain_text,
                "isRelevant": filtered.is_relevant,
                "markdownText": filtered.markdown_text,
                "responsibleEntity": filtered.responsible_entity,
                "isOneOfMany": filtered.is_one_of_many,
                "isInformative": filtered.is_informative,
            },
        )
        self._record_event(message_id, FilterSplitEvent.from_message(filtered))
        LOGGER.info(
            "Processing message %d/%d (%s): relevant=%s informative=%s one_of_many=%s",
            index + 1,
            total,
            message_id,
            filtered.is_relevant,
            filtered.is_informative,
            filtered.is_one_of_many,
        )

        if not filtered.is_relevant:
            LOGGER.info("Message %s filtered as irrelevant, finalizing", message_id)
            return self._finalize(message_id, collector, is_relevant=False)

        try:
            plain_text = self._require_text(filtered)
            categorization = await self._categorize(plain_text, collector)
        except (InconsistencyError, ExtractionError, ValidationError) as exc:
            collector.error(format_error_text(exc))
            return self._finalize_failed(message_id, collector)

        self._store.update(MESSAGES, message_id, {"categories": categorization.categories})
        self._record_event(message_id, CategorizeEvent(categories=tuple(categorization.categories)))
        if not categorization.categories:
            LOGGER.info("Message %s has zero categories, finalizing", message_id)
            return self._finalize(message_id, collector)

        try:
            locations = await self._extract_locations(plain_text, collector)
        except (ExtractionError, ValidationError) as exc:
            collector.error(format_error_text(exc))
            self._record_event(message_id, ExtractLocationsEvent(locations=None))
            LOGGER.info("Location extraction failed for %s, finalizing without GeoJSON", message_id)
            return self._finalize(message_id, collector)

        self._store_extracted_locations(message_id, locations, crawled_at)

        geo_json = await self._geocode(message_id, locations, collector)
        if geo_json is None:
            return self._finalize(message_id, collector)

        geo_json = self._apply_boundaries(message_id, geo_json, collector)
        return self._finalize(message_id, collector, geo_json=geo_json)

    def _require_text(self, filtered: FilteredMessage) -> str:
        if not filtered.plain_text.strip():
            raise InconsistencyError(
                "Filter returned isRelevant=true but empty plainText (extraction inconsistency)"
            )
        return filtered.plain_text

    async def _categorize(self, text: str, collector: IngestErrorCollector) -> Categorization:
        response = await self._call("categorize", self._extraction.categorize(text))
        categorization = parse_categorize_response(response, collector, self._config.max_error_payload_chars)
        if categorization is None:
            raise ValidationError(
                "Categorization failed (API error or parse failure), finalizing without extraction"
            )
        return categorization

    async def _extract_locations(self, text: str, collector: IngestErrorCollector) -> ExtractedLocations:
        response = await self._call("extract locations", self._extraction.extract_locations(text))
        locations = parse_extract_locations_response(response, collector, self._config.max_error_payload_chars)
        if locations is None:
            raise ValidationError("Location extraction failed")
        return locations

    async def _geocode(
        self, message_id: str, locations: ExtractedLocations, collector: IngestErrorCollector
    ) -> Optional[GeoJson]:
        """Geocode, drop outliers and assemble; None when nothing is displayable."""

        try:
            result = await self._call("geocode", self._router.geocode(locations))
            addresses = filter_outliers(result.addresses, self._geocoding.outlier_distance_meters)
            removed = prune_outliers_from_map(result.pre_geocoded, result.addresses, addresses)
            if addresses:
                self._store_addresses(message_id, addresses)
            geo_json = await self._assembler.assemble(locations, result, collector)
        except Exception as exc:
            collector.exception(f"Ingestion exception: {format_error_text(exc)}")
            self._record_event(message_id, GeocodeEvent(success=False))
            return None

        self._record_event(
            message_id,
            GeocodeEvent(
                resolved=len(addresses),
                outliers_removed=len(removed),
                features=count_features(geo_json),
            ),
        )
        return geo_json

    def _apply_boundaries(
        self, message_id: str, geo_json: Optional[GeoJson], collector: IngestErrorCollector
    ) -> Optional[GeoJson]:
        if not self._boundary.enabled or geo_json is None:
            return geo_json
        filtered = self._boundary.apply(geo_json, collector)
        self._record_event(
            message_id,
            BoundaryFilterEvent(features_before=count_features(geo_json), features_after=count_features(filtered)),
        )
        return filtered

    async def _ingest_precomputed(
        self, text: str, options: IngestOptions, crawled_at: datetime
    ) -> FinalizedMessage:
        """Store a message that arrives with ready-made geometry, skipping extraction."""

        message_id = message_id_for(options.source_url)
        collector = IngestErrorCollector()
        self._store_incoming(message_id, text, options, crawled_at)

        fields: dict[str, Any] = {}
        if options.categories is not None and options.is_relevant is not None:
            fields.update({"categories": list(options.categories), "isRelevant": options.is_relevant})
            if options.city_wide is not None:
                fields["cityWide"] = options.city_wide
        if options.markdown_text:
            fields["markdownText"] = options.markdown_text
        span = self._precomputed_span(options, crawled_at)
        fields.update({"timespanStart": span.start.isoformat(), "timespanEnd": span.end.isoformat()})
        self._store.update(MESSAGES, message_id, fields)

        validation = validate_and_fix_geojson(
            options.precomputed_geo_json, get_bounds(options.locality), context="precomputed"
        )
        if not validation.is_valid:
            for error in validation.errors:
                collector.error(error)
            return self._finalize(message_id, collector)
        for warning in validation.warnings:
            collector.warn(warning)

        geo_json = self._apply_boundaries(message_id, validation.geo_json, collector)
        return self._finalize(message_id, collector, geo_json=geo_json)

    def _precomputed_span(self, options: IngestOptions, crawled_at: datetime) -> TimespanRange:
        if options.timespan_start is not None or options.timespan_end is not None:
            return self._timespans.validate_and_fallback(options.timespan_start, options.timespan_end, crawled_at)
        span = self._timespans.range_from_geojson(options.precomputed_geo_json, crawled_at)
        return self._timespans.validate_and_fallback(span.start, span.end, crawled_at)

    def _store_incoming(
        self, message_id: str, text: str, options: IngestOptions, crawled_at: datetime
    ) -> None:
        # Re-ingesting a source keeps its original createdAt so interest causality holds.
        existing = self._store.find_by_id(MESSAGES, message_id)
        created_at = (existing or {}).get("createdAt") or self._clock().isoformat()
        document: dict[str, Any] = {
            "id": message_id,
            "text": text,
            "locality": options.locality,
            "source": options.source,
            "crawledAt": crawled_at.isoformat(),
            "createdAt": created_at,
            "process": list((existing or {}).get("process") or []),
        }
        if options.source_url:
            document["sourceUrl"] = options.source_url
        for key in _NOTIFICATION_FIELDS:
            if existing and key in existing:
                document[key] = existing[key]
        self._store.upsert(MESSAGES, message_id, document)

    def _store_extracted_locations(
        self, message_id: str, locations: ExtractedLocations, crawled_at: datetime
    ) -> None:
        span = self._timespans.range_from_locations(locations, crawled_at)
        span = self._timespans.validate_and_fallback(span.start, span.end, crawled_at)
        document = locations.to_document()
        document.pop("withSpecificAddress", None)
        document.update({"timespanStart": span.start.isoformat(), "timespanEnd": span.end.isoformat()})
        self._store.update(MESSAGES, message_id, document)
        self._record_event(message_id, ExtractLocationsEvent(locations=locations))

    def _store_addresses(self, message_id: str, addresses: list[ResolvedAddress]) -> None:
        self._store.update(
            MESSAGES, message_id, {"addresses": [address.to_document() for address in addresses]}
        )

    def _record_event(self, message_id: str, event: StageEvent) -> None:
        self._store.append(MESSAGES, message_id, "process", event.to_document())

    def _finalize_failed(self, message_id: str, collector: IngestErrorCollector) -> FinalizedMessage:
        collector.error("Failed to extract data from message, marking as finalized")
        return self._finalize(message_id, collector)

    def _finalize(
        self,
        message_id: str,
        collector: IngestErrorCollector,
        geo_json: Optional[GeoJson] = None,
        is_relevant: Optional[bool] = None,
    ) -> FinalizedMessage:
        fields: dict[str, Any] = {
            "geoJson": geo_json,
            "finalizedAt": self._clock().isoformat(),
            **collector.to_field(),
        }
        if is_relevant is not None:
            fields["isRelevant"] = is_relevant
        self._store.update(MESSAGES, message_id, fields)
        self._record_event(
            message_id, FinalizeEvent(has_geometry=geo_json is not None, error_count=len(collector.entries))
        )
        document = self._store.find_by_id(MESSAGES, message_id) or {"id": message_id}
        LOGGER.info(
            "Finalized message %s (geometry=%s, errors=%d)",
            message_id,
            geo_json is not None,
            len(collector.entries),
        )
        return FinalizedMessage.from_document(document)
