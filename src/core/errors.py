"""Exception taxonomy for the ingest and notification pipelines."""

from __future__ import annotations

from typing import Iterable


class CityscopeError(Exception):
    """Base class for all domain errors."""


class ValidationError(CityscopeError):
    """Extraction response did not conform to the expected schema."""


class InconsistencyError(CityscopeError):
    """Extraction marked a message relevant but returned no text."""


class ExtractionError(CityscopeError):
    """The extraction service failed or did not answer in time."""


class SplitFilterError(CityscopeError):
    """Filter & split failed; fatal for the whole submission."""


class GeocodingFailure(CityscopeError):
    """No reference of a message resolved to displayable geometry."""

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Failed to geocode all addresses: {', '.join(self.missing)}")


class GeoJsonValidationError(CityscopeError):
    """Assembled GeoJSON was rejected by the structural validator."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("Generated GeoJSON is invalid: " + "; ".join(self.errors))


class UnknownLocalityError(CityscopeError):
    """Locality id is not present in the registry."""
