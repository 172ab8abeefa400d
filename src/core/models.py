"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types. GeoJSON is kept as plain
mappings so it can be handed to shapely and the document store unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

GeoJson = dict[str, Any]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Any) -> Optional[datetime]:
    """Parse stored timestamps; naive values are taken as UTC."""

    parsed: Optional[datetime] = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Coordinates":
        return cls(lat=float(data["lat"]), lng=float(data["lng"]))


@dataclass(frozen=True)
class Timespan:
    """Raw start/end text as returned by the extraction service."""

    start: str
    end: str


@dataclass(frozen=True)
class Pin:
    address: str
    timespans: list[Timespan] = field(default_factory=list)
    coordinates: Optional[Coordinates] = None


@dataclass(frozen=True)
class StreetSection:
    street: str
    from_text: str
    to_text: str
    timespans: list[Timespan] = field(default_factory=list)
    from_coordinates: Optional[Coordinates] = None
    to_coordinates: Optional[Coordinates] = None


@dataclass(frozen=True)
class CadastralParcel:
    identifier: str
    timespans: list[Timespan] = field(default_factory=list)


@dataclass(frozen=True)
class ExtractedLocations:
    """Structured location references extracted from one message."""

    pins: list[Pin] = field(default_factory=list)
    streets: list[StreetSection] = field(default_factory=list)
    cadastral_parcels: list[CadastralParcel] = field(default_factory=list)
    bus_stop_codes: list[str] = field(default_factory=list)
    with_specific_address: bool = False
    city_wide: bool = False

    def to_document(self) -> dict[str, Any]:
        def _timespans(items: list[Timespan]) -> list[dict[str, str]]:
            return [{"start": t.start, "end": t.end} for t in items]

        return {
            "pins": [
                {
                    "address": pin.address,
                    "timespans": _timespans(pin.timespans),
                    **({"coordinates": pin.coordinates.to_dict()} if pin.coordinates else {}),
                }
                for pin in self.pins
            ],
            "streets": [
                {
                    "street": street.street,
                    "from": street.from_text,
                    "to": street.to_text,
                    "timespans": _timespans(street.timespans),
                    **(
                        {"fromCoordinates": street.from_coordinates.to_dict()}
                        if street.from_coordinates
                        else {}
                    ),
                    **(
                        {"toCoordinates": street.to_coordinates.to_dict()}
                        if street.to_coordinates
                        else {}
                    ),
                }
                for street in self.streets
            ],
            "cadastralProperties": [
                {"identifier": parcel.identifier, "timespans": _timespans(parcel.timespans)}
                for parcel in self.cadastral_parcels
            ],
            "busStops": list(self.bus_stop_codes),
            "withSpecificAddress": self.with_specific_address,
            "cityWide": self.city_wide,
        }


@dataclass(frozen=True)
class FilteredMessage:
    """One message split from a raw submission by the extraction service."""

    plain_text: str
    is_relevant: bool
    is_informative: bool = False
    is_one_of_many: bool = False
    responsible_entity: str = ""
    markdown_text: str = ""


@dataclass(frozen=True)
class Categorization:
    categories: list[str] = field(default_factory=list)


class AddressKind(str, Enum):
    PIN = "pin"
    STREET_ENDPOINT = "street_endpoint"
    TRANSIT_STOP = "transit_stop"


@dataclass(frozen=True)
class ResolvedAddress:
    original_text: str
    formatted_address: str
    coordinates: Coordinates
    kind: AddressKind = AddressKind.PIN

    @property
    def geometry(self) -> GeoJson:
        return {"type": "Point", "coordinates": [self.coordinates.lng, self.coordinates.lat]}

    def to_document(self) -> dict[str, Any]:
        return {
            "originalText": self.original_text,
            "formattedAddress": self.formatted_address,
            "coordinates": self.coordinates.to_dict(),
            "geoJson": self.geometry,
        }

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "ResolvedAddress":
        return cls(
            original_text=data["originalText"],
            formatted_address=data.get("formattedAddress", data["originalText"]),
            coordinates=Coordinates.from_dict(data["coordinates"]),
        )


@dataclass(frozen=True)
class TransitStop:
    code: str
    name: str
    coordinates: Coordinates


@dataclass
class GeocodingResult:
    """Output of the geocoding router for one message.

    ``pre_geocoded`` is scoped to a single message and is mutated by the
    outlier filter before GeoJSON assembly. ``pre_resolved`` lists the keys
    whose coordinates came with the extraction rather than from a provider.
    """

    pre_geocoded: dict[str, Coordinates] = field(default_factory=dict)
    pre_resolved: set[str] = field(default_factory=set)
    addresses: list[ResolvedAddress] = field(default_factory=list)
    parcel_geometries: dict[str, GeoJson] = field(default_factory=dict)
    transit_stops: dict[str, TransitStop] = field(default_factory=dict)


@dataclass
class FinalizedMessage:
    id: str
    text: str
    locality: str
    created_at: datetime
    addresses: list[ResolvedAddress] = field(default_factory=list)
    geo_json: Optional[GeoJson] = None
    timespan_start: Optional[datetime] = None
    timespan_end: Optional[datetime] = None
    categories: list[str] = field(default_factory=list)
    is_relevant: bool = False
    city_wide: bool = False
    finalized_at: Optional[datetime] = None
    ingest_errors: list[dict[str, str]] = field(default_factory=list)
    source: Optional[str] = None
    source_url: Optional[str] = None

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "FinalizedMessage":
        return cls(
            id=data["id"],
            text=data.get("text", ""),
            locality=data.get("locality", ""),
            created_at=_parse_iso(data.get("createdAt")),
            addresses=[ResolvedAddress.from_document(item) for item in data.get("addresses", [])],
            geo_json=data.get("geoJson"),
            timespan_start=_parse_iso(data.get("timespanStart")),
            timespan_end=_parse_iso(data.get("timespanEnd")),
            categories=list(data.get("categories", [])),
            is_relevant=bool(data.get("isRelevant", False)),
            city_wide=bool(data.get("cityWide", False)),
            finalized_at=_parse_iso(data.get("finalizedAt")),
            ingest_errors=list(data.get("ingestErrors", [])),
            source=data.get("source"),
            source_url=data.get("sourceUrl"),
        )


@dataclass(frozen=True)
class IngestOptions:
    """Per-submission options supplied by the caller."""

    locality: str
    source: str = "api"
    source_url: Optional[str] = None
    crawled_at: Optional[datetime] = None
    precomputed_geo_json: Optional[GeoJson] = None
    markdown_text: Optional[str] = None
    timespan_start: Optional[datetime] = None
    timespan_end: Optional[datetime] = None
    categories: Optional[list[str]] = None
    is_relevant: Optional[bool] = None
    city_wide: Optional[bool] = None


@dataclass(frozen=True)
class IngestResult:
    messages: list[FinalizedMessage]
    total_categorized: int
    total_relevant: int
    total_irrelevant: int


@dataclass(frozen=True)
class Interest:
    id: str
    user_id: str
    center: Coordinates
    radius: float
    created_at: datetime

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "Interest":
        return cls(
            id=data["id"],
            user_id=data["userId"],
            center=Coordinates.from_dict(data["coordinates"]),
            radius=float(data["radius"]),
            created_at=_parse_iso(data["createdAt"]),
        )


@dataclass(frozen=True)
class Subscription:
    id: str
    user_id: str
    token: str
    device_info: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "Subscription":
        return cls(
            id=data["id"],
            user_id=data["userId"],
            token=data["token"],
            device_info=dict(data.get("deviceInfo") or {}),
        )


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class DeliveryResult:
    status: DeliveryStatus
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is DeliveryStatus.SUCCESS


@dataclass(frozen=True)
class DeviceNotification:
    subscription_id: str
    sent_at: datetime
    success: bool
    error: Optional[str] = None
    device_info: dict[str, str] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = {
            "subscriptionId": self.subscription_id,
            "sentAt": self.sent_at.isoformat(),
            "success": self.success,
        }
        if self.device_info:
            document["deviceInfo"] = self.device_info
        if self.error:
            document["error"] = self.error
        return document


@dataclass(frozen=True)
class NotificationPayload:
    title: str
    body: str
    url: str
    message_id: str
    interest_id: str
    match_id: str


@dataclass
class NotificationMatch:
    user_id: str
    message_id: str
    interest_id: str
    distance: float
    matched_at: Optional[datetime] = None
    notified: bool = False
    notified_at: Optional[datetime] = None
    id: Optional[str] = None
    device_notifications: list[DeviceNotification] = field(default_factory=list)
    message_snapshot: Optional[dict[str, str]] = None

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = {
            "userId": self.user_id,
            "messageId": self.message_id,
            "interestId": self.interest_id,
            "distance": self.distance,
            "matchedAt": _iso(self.matched_at),
            "notified": self.notified,
        }
        if self.notified_at:
            document["notifiedAt"] = _iso(self.notified_at)
        if self.device_notifications:
            document["deviceNotifications"] = [d.to_document() for d in self.device_notifications]
        if self.message_snapshot:
            document["messageSnapshot"] = self.message_snapshot
        return document

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "NotificationMatch":
        return cls(
            id=data.get("id"),
            user_id=data["userId"],
            message_id=data["messageId"],
            interest_id=data["interestId"],
            distance=float(data.get("distance") or 0.0),
            matched_at=_parse_iso(data.get("matchedAt")),
            notified=bool(data.get("notified", False)),
            notified_at=_parse_iso(data.get("notifiedAt")),
            message_snapshot=data.get("messageSnapshot"),
        )
