"""Append-only audit events, one variant per pipeline stage.

Each event is written to the message document as soon as its stage
completes, so a crash mid-pipeline leaves inspectable partial state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from core.models import ExtractedLocations, FilteredMessage


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StageEvent:
    step: str
    timestamp: datetime = field(default_factory=_now)

    def summary(self) -> dict[str, Any]:
        return {}

    def to_document(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "timestamp": self.timestamp.isoformat(),
            "summary": self.summary(),
        }


@dataclass(frozen=True)
class FilterSplitEvent(StageEvent):
    step: str = "filterAndSplit"
    is_relevant: bool = False
    is_one_of_many: bool = False
    responsible_entity: str = ""
    text_length: int = 0

    @classmethod
    def from_message(cls, message: FilteredMessage) -> "FilterSplitEvent":
        return cls(
            is_relevant=message.is_relevant,
            is_one_of_many=message.is_one_of_many,
            responsible_entity=message.responsible_entity,
            text_length=len(message.plain_text),
        )

    def summary(self) -> dict[str, Any]:
        return {
            "isRelevant": self.is_relevant,
            "isOneOfMany": self.is_one_of_many,
            "responsibleEntity": self.responsible_entity or "(none)",
            "textLength": self.text_length,
        }


@dataclass(frozen=True)
class CategorizeEvent(StageEvent):
    step: str = "categorize"
    categories: tuple[str, ...] = ()

    def summary(self) -> dict[str, Any]:
        return {"categoriesCount": len(self.categories), "categories": list(self.categories)}


@dataclass(frozen=True)
class ExtractLocationsEvent(StageEvent):
    step: str = "extractLocations"
    locations: Optional[ExtractedLocations] = None

    def summary(self) -> dict[str, Any]:
        if self.locations is None:
            return {"success": False}
        return {
            "success": True,
            "pinsCount": len(self.locations.pins),
            "streetsCount": len(self.locations.streets),
            "cadastralCount": len(self.locations.cadastral_parcels),
            "busStopsCount": len(self.locations.bus_stop_codes),
            "cityWide": self.locations.city_wide,
        }


@dataclass(frozen=True)
class GeocodeEvent(StageEvent):
    step: str = "geocode"
    resolved: int = 0
    outliers_removed: int = 0
    features: int = 0
    success: bool = True

    def summary(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "resolvedAddresses": self.resolved,
            "outliersRemoved": self.outliers_removed,
            "features": self.features,
        }


@dataclass(frozen=True)
class BoundaryFilterEvent(StageEvent):
    step: str = "boundaryFilter"
    features_before: int = 0
    features_after: int = 0

    def summary(self) -> dict[str, Any]:
        return {"featuresBefore": self.features_before, "featuresAfter": self.features_after}


@dataclass(frozen=True)
class FinalizeEvent(StageEvent):
    step: str = "finalize"
    has_geometry: bool = False
    error_count: int = 0

    def summary(self) -> dict[str, Any]:
        return {"hasGeometry": self.has_geometry, "errorCount": self.error_count}
