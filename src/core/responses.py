"""Typed parsing of extraction-service responses.

Each stage has its own parse function. They never raise: schema problems are
recorded on the collector and ``None`` is returned. Defaults are filled by
the pydantic models:

- filter & split: ``isInformative``/``isOneOfMany`` default to False,
  ``responsibleEntity``/``markdownText`` to an empty string;
- categorize: missing ``categories`` becomes an empty list;
- extract locations: every array defaults to empty, both flags to False;
  malformed array items are dropped individually when the rest is usable.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.ingest_errors import IngestErrorCollector, format_error_text, recorder_or_default, truncate_payload
from core.models import (
    CadastralParcel,
    Categorization,
    Coordinates,
    ExtractedLocations,
    FilteredMessage,
    Pin,
    StreetSection,
    Timespan,
)

MAX_ERROR_PAYLOAD_CHARS = 1000


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TimespanSchema(_Schema):
    start: str = ""
    end: str = ""


class CoordinatesSchema(_Schema):
    lat: float
    lng: float


class PinSchema(_Schema):
    address: str = Field(min_length=1)
    coordinates: Optional[CoordinatesSchema] = None
    timespans: list[TimespanSchema] = Field(default_factory=list)


class StreetSchema(_Schema):
    street: str = Field(min_length=1)
    from_text: str = Field(alias="from", min_length=1)
    to_text: str = Field(alias="to", min_length=1)
    from_coordinates: Optional[CoordinatesSchema] = Field(default=None, alias="fromCoordinates")
    to_coordinates: Optional[CoordinatesSchema] = Field(default=None, alias="toCoordinates")
    timespans: list[TimespanSchema] = Field(default_factory=list)


class CadastralSchema(_Schema):
    identifier: str = Field(min_length=1)
    timespans: list[TimespanSchema] = Field(default_factory=list)


class FilteredMessageSchema(_Schema):
    plain_text: str = Field(default="", alias="plainText")
    is_relevant: bool = Field(alias="isRelevant")
    is_informative: bool = Field(default=False, alias="isInformative")
    is_one_of_many: bool = Field(default=False, alias="isOneOfMany")
    responsible_entity: str = Field(default="", alias="responsibleEntity")
    markdown_text: str = Field(default="", alias="markdownText")

    @field_validator("responsible_entity", "markdown_text", "plain_text", mode="before")
    @classmethod
    def none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class FilterSplitSchema(_Schema):
    messages: list[FilteredMessageSchema] = Field(min_length=1)


class CategorizationSchema(_Schema):
    categories: list[str] = Field(default_factory=list)

    @field_validator("categories", mode="before")
    @classmethod
    def none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value


class ExtractedLocationsSchema(_Schema):
    pins: list[PinSchema] = Field(default_factory=list)
    streets: list[StreetSchema] = Field(default_factory=list)
    cadastral_properties: list[CadastralSchema] = Field(default_factory=list, alias="cadastralProperties")
    bus_stops: list[str] = Field(default_factory=list, alias="busStops")
    with_specific_address: bool = Field(default=False, alias="withSpecificAddress")
    city_wide: bool = Field(default=False, alias="cityWide")


_ITEM_SCHEMAS: dict[str, type[BaseModel]] = {
    "pins": PinSchema,
    "streets": StreetSchema,
    "cadastralProperties": CadastralSchema,
}


def _record_payload(recorder: IngestErrorCollector, response_text: str, max_chars: int) -> None:
    summary, original_length = truncate_payload(response_text, max_chars)
    recorder.error(f"Full AI response ({original_length} chars): {summary}")


def _load_json(response_text: str, purpose: str, recorder: IngestErrorCollector, max_chars: int) -> Any:
    try:
        return json.loads(response_text)
    except (TypeError, ValueError) as exc:
        recorder.error(f"Failed to parse {purpose} response: {format_error_text(exc)}")
        _record_payload(recorder, str(response_text), max_chars)
        return None


def _timespans(items: list[TimespanSchema]) -> list[Timespan]:
    return [Timespan(start=item.start, end=item.end) for item in items]


def _coordinates(item: Optional[CoordinatesSchema]) -> Optional[Coordinates]:
    return Coordinates(lat=item.lat, lng=item.lng) if item else None


def _to_locations(schema: ExtractedLocationsSchema) -> ExtractedLocations:
    return ExtractedLocations(
        pins=[
            Pin(address=pin.address, timespans=_timespans(pin.timespans), coordinates=_coordinates(pin.coordinates))
            for pin in schema.pins
        ],
        streets=[
            StreetSection(
                street=street.street,
                from_text=street.from_text,
                to_text=street.to_text,
                timespans=_timespans(street.timespans),
                from_coordinates=_coordinates(street.from_coordinates),
                to_coordinates=_coordinates(street.to_coordinates),
            )
            for street in schema.streets
        ],
        cadastral_parcels=[
            CadastralParcel(identifier=parcel.identifier, timespans=_timespans(parcel.timespans))
            for parcel in schema.cadastral_properties
        ],
        bus_stop_codes=[code.strip() for code in schema.bus_stops if code and code.strip()],
        with_specific_address=schema.with_specific_address,
        city_wide=schema.city_wide,
    )


def parse_filter_split_response(
    response_text: str,
    collector: Optional[IngestErrorCollector] = None,
    max_payload_chars: int = MAX_ERROR_PAYLOAD_CHARS,
) -> Optional[list[FilteredMessage]]:
    """Parse step 1. Accepts either a bare list or ``{"messages": [...]}``."""

    recorder = recorder_or_default(collector)
    parsed = _load_json(response_text, "filter & split", recorder, max_payload_chars)
    if parsed is None:
        return None
    if isinstance(parsed, list):
        parsed = {"messages": parsed}
    try:
        schema = FilterSplitSchema.model_validate(parsed)
    except pydantic.ValidationError as exc:
        recorder.error(f"Failed to parse filter & split response: {format_error_text(exc)}")
        _record_payload(recorder, response_text, max_payload_chars)
        return None
    return [
        FilteredMessage(
            plain_text=item.plain_text,
            is_relevant=item.is_relevant,
            is_informative=item.is_informative,
            is_one_of_many=item.is_one_of_many,
            responsible_entity=item.responsible_entity,
            markdown_text=item.markdown_text,
        )
        for item in schema.messages
    ]


def parse_categorize_response(
    response_text: str,
    collector: Optional[IngestErrorCollector] = None,
    max_payload_chars: int = MAX_ERROR_PAYLOAD_CHARS,
) -> Optional[Categorization]:
    """Parse step 2."""

    recorder = recorder_or_default(collector)
    parsed = _load_json(response_text, "categorize", recorder, max_payload_chars)
    if parsed is None:
        return None
    try:
        schema = CategorizationSchema.model_validate(parsed)
    except pydantic.ValidationError as exc:
        recorder.error(f"Failed to parse categorize response: {format_error_text(exc)}")
        _record_payload(recorder, response_text, max_payload_chars)
        return None
    categories = [category.strip() for category in schema.categories if category and category.strip()]
    return Categorization(categories=categories)


def parse_extract_locations_response(
    response_text: str,
    collector: Optional[IngestErrorCollector] = None,
    max_payload_chars: int = MAX_ERROR_PAYLOAD_CHARS,
) -> Optional[ExtractedLocations]:
    """Parse step 3, salvaging valid array items when some are malformed."""

    recorder = recorder_or_default(collector)
    parsed = _load_json(response_text, "extract locations", recorder, max_payload_chars)
    if parsed is None:
        return None

    try:
        return _to_locations(ExtractedLocationsSchema.model_validate(parsed))
    except pydantic.ValidationError:
        pass

    if not isinstance(parsed, dict):
        recorder.error("Extract locations response is not an object")
        return None

    filtered = dict(parsed)
    for key, item_schema in _ITEM_SCHEMAS.items():
        items = parsed.get(key)
        if not isinstance(items, list):
            continue
        kept = []
        for index, item in enumerate(items):
            try:
                item_schema.model_validate(item)
            except pydantic.ValidationError as exc:
                recorder.error(f"Invalid {key} item at index {index}: {format_error_text(exc)}")
                continue
            kept.append(item)
        filtered[key] = kept
    if isinstance(parsed.get("busStops"), list):
        filtered["busStops"] = [code for code in parsed["busStops"] if isinstance(code, str)]

    try:
        schema = ExtractedLocationsSchema.model_validate(filtered)
    except pydantic.ValidationError as exc:
        recorder.error(
            f"Failed to parse extract locations response after filtering: {format_error_text(exc)}"
        )
        _record_payload(recorder, response_text, max_payload_chars)
        return None

    recorder.error("Partial extract locations result: some items were filtered due to schema errors")
    return _to_locations(schema)
