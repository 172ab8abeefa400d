"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass(frozen=True)
class LocalityConfig:
    """Locality the pipeline ingests for."""

    locality: str
    timezone: str = "Europe/Sofia"
    boundary_path: Optional[str] = None


@dataclass(frozen=True)
class GeocodingConfig:
    """Thresholds used by geocoding orchestration and cleanup."""

    coordinate_precision: int = 6
    dedup_distance_meters: float = 50.0
    outlier_distance_meters: float = 1000.0
    transit_stop_label: str = "Спирка"


@dataclass(frozen=True)
class IngestConfig:
    """Orchestrator settings."""

    collaborator_timeout_seconds: float = 60.0
    timespan_floor: datetime = field(
        default_factory=lambda: datetime(2025, 1, 1, tzinfo=timezone.utc)
    )
    max_error_payload_chars: int = 1000


@dataclass(frozen=True)
class NotificationConfig:
    """Notification payload settings consumed by the matcher and senders."""

    app_url: str = "http://localhost:3000"
    preview_chars: int = 100
    title: str = "Ново съобщение в Cityscope"
