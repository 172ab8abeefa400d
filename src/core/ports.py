"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for extraction, geocoding, storage and
delivery adapters so that the core can be reused with different backends.
Every network-facing adapter must answer within its own configured timeout;
the orchestrator additionally bounds each call with ``asyncio.wait_for``.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

from core.models import (
    Coordinates,
    DeliveryResult,
    GeoJson,
    NotificationPayload,
    ResolvedAddress,
    TransitStop,
)


class ExtractionClient(Protocol):
    """Text-understanding service. Each call returns the raw JSON response text.

    Transport failures are raised as ``ExtractionError``; schema checking is
    done by the core parse functions.
    """

    async def filter_and_split(self, text: str) -> str:
        ...

    async def categorize(self, text: str) -> str:
        ...

    async def extract_locations(self, text: str) -> str:
        ...


class PointGeocoder(Protocol):
    """General address resolver. Returns None when the address is not found."""

    async def geocode(self, address: str) -> Optional[ResolvedAddress]:
        ...


class IntersectionResolver(Protocol):
    """Resolve ``"<street> ∩ <cross street>"`` queries to coordinates.

    Unresolved queries are absent from the returned mapping.
    """

    async def resolve_intersections(self, queries: Sequence[str]) -> dict[str, Coordinates]:
        ...


class StreetGeometryProvider(Protocol):
    """Optional centerline lookup between two resolved endpoints."""

    async def street_geometry(
        self, street: str, start: Coordinates, end: Coordinates
    ) -> Optional[list[list[float]]]:
        ...


class ParcelRegistry(Protocol):
    """Resolve cadastral identifiers to Polygon geometries."""

    async def resolve_parcels(self, identifiers: Sequence[str]) -> dict[str, GeoJson]:
        ...


class TransitStopRegistry(Protocol):
    """Resolve transit stop codes to a point and a display name."""

    async def resolve_stops(self, codes: Sequence[str]) -> dict[str, TransitStop]:
        ...


class DocumentStore(Protocol):
    """Document storage keyed by collection and opaque id.

    Writes are single-document and idempotent when repeated with the same id.
    """

    def find_by_id(self, collection: str, document_id: str) -> Optional[dict[str, Any]]:
        ...

    def insert(self, collection: str, document_id: Optional[str], document: dict[str, Any]) -> str:
        ...

    def update(self, collection: str, document_id: str, fields: dict[str, Any]) -> None:
        ...

    def upsert(self, collection: str, document_id: str, document: dict[str, Any]) -> None:
        ...

    def append(self, collection: str, document_id: str, field: str, value: Any) -> None:
        ...

    def find(self, collection: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        ...

    def delete(self, collection: str, document_id: str) -> None:
        ...


class NotificationSender(Protocol):
    """Push delivery to a single device token."""

    async def send(self, token: str, payload: NotificationPayload) -> DeliveryResult:
        ...
