"""Transit stop registry built from a GTFS ``stops.txt`` file."""

from __future__ import annotations

import csv
import logging
from typing import Sequence

from core.models import Coordinates, TransitStop

LOGGER = logging.getLogger(__name__)


class GtfsStopRegistry:
    """TransitStopRegistry keyed by ``stop_code``."""

    def __init__(self, stops: dict[str, TransitStop]) -> None:
        self._stops = stops

    @classmethod
    def from_file(cls, path: str) -> "GtfsStopRegistry":
        stops: dict[str, TransitStop] = {}
        skipped = 0
        # GTFS exports often start with a BOM.
        with open(path, "r", encoding="utf-8-sig", newline="") as handle:
            for row in csv.DictReader(handle):
                code = (row.get("stop_code") or "").strip()
                if not code:
                    skipped += 1
                    continue
                try:
                    coordinates = Coordinates(lat=float(row["stop_lat"]), lng=float(row["stop_lon"]))
                except (KeyError, TypeError, ValueError):
                    skipped += 1
                    continue
                stops[code] = TransitStop(code=code, name=(row.get("stop_name") or "").strip(), coordinates=coordinates)
        LOGGER.info("Loaded %d transit stop(s) from %s (%d skipped)", len(stops), path, skipped)
        return cls(stops)

    def __len__(self) -> int:
        return len(self._stops)

    async def resolve_stops(self, codes: Sequence[str]) -> dict[str, TransitStop]:
        found: dict[str, TransitStop] = {}
        for code in codes:
            stop = self._stops.get(str(code).strip())
            if stop is None:
                LOGGER.info("Transit stop %s not found", code)
                continue
            found[code] = stop
        return found
