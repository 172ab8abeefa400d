"""Resolved-address deduplication and outlier rejection (core domain)."""

from __future__ import annotations

import logging
from typing import Iterable, List, MutableMapping

from core.geo import distance_between
from core.models import Coordinates, ResolvedAddress

LOGGER = logging.getLogger(__name__)

DEFAULT_DEDUP_DISTANCE_METERS = 50.0
DEFAULT_OUTLIER_DISTANCE_METERS = 1000.0


def normalize_address_text(text: str) -> str:
    """Normalize address text for duplicate detection."""

    return text.strip().lower()


def deduplicate_addresses(
    addresses: Iterable[ResolvedAddress],
    distance_threshold: float = DEFAULT_DEDUP_DISTANCE_METERS,
) -> List[ResolvedAddress]:
    """Collapse addresses with the same normalized text or closer than the threshold.

    The first occurrence wins, so the result is stable across repeated runs.
    """

    kept: dict[str, ResolvedAddress] = {}
    for address in addresses:
        key = normalize_address_text(address.original_text)
        if key in kept:
            continue
        if any(
            distance_between(address.coordinates, existing.coordinates) < distance_threshold
            for existing in kept.values()
        ):
            continue
        kept[key] = address
    return list(kept.values())


def _min_distance_to_others(index: int, addresses: List[ResolvedAddress]) -> float:
    target = addresses[index].coordinates
    return min(
        distance_between(target, other.coordinates)
        for position, other in enumerate(addresses)
        if position != index
    )


def filter_outliers(
    addresses: List[ResolvedAddress],
    max_distance: float = DEFAULT_OUTLIER_DISTANCE_METERS,
) -> List[ResolvedAddress]:
    """Drop addresses farther than ``max_distance`` from every other address.

    Sets with fewer than two addresses are returned unchanged.
    """

    if len(addresses) < 2:
        return list(addresses)

    kept: List[ResolvedAddress] = []
    outliers: list[tuple[ResolvedAddress, float]] = []
    for index, address in enumerate(addresses):
        distance = _min_distance_to_others(index, addresses)
        if distance > max_distance:
            outliers.append((address, distance))
        else:
            kept.append(address)

    if outliers:
        LOGGER.warning(
            "Filtered %d outlier coordinate(s): %s",
            len(outliers),
            ", ".join(
                f"{address.original_text} ({address.coordinates.lat:.6f}, "
                f"{address.coordinates.lng:.6f}, {distance / 1000:.2f} km)"
                for address, distance in outliers
            ),
        )
    return kept


def prune_outliers_from_map(
    pre_geocoded: MutableMapping[str, Coordinates],
    before: Iterable[ResolvedAddress],
    after: Iterable[ResolvedAddress],
) -> List[str]:
    """Remove map entries dropped by outlier filtering and return their keys.

    Only keys present in ``before`` and absent from ``after`` are removed; keys
    missing from ``before`` (for example collapsed by deduplication) stay.
    """

    before_texts = {address.original_text for address in before}
    after_texts = {address.original_text for address in after}
    removed = [key for key in pre_geocoded if key in before_texts and key not in after_texts]
    for key in removed:
        del pre_geocoded[key]
    return removed
