"""Per-message ingest error accumulator.

A collector is created for each submessage and passed explicitly through
every stage. Entries are logged as they are recorded and persisted next to
the message when it is finalized.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

LOGGER = logging.getLogger(__name__)


class IngestErrorType(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    EXCEPTION = "exception"


@dataclass(frozen=True)
class IngestErrorEntry:
    type: IngestErrorType
    text: str

    def to_document(self) -> dict[str, str]:
        return {"type": self.type.value, "text": self.text}


@dataclass
class IngestErrorCollector:
    entries: list[IngestErrorEntry] = field(default_factory=list)

    def record(self, error_type: IngestErrorType, text: str) -> None:
        self.entries.append(IngestErrorEntry(type=error_type, text=text))

    def warn(self, text: str) -> None:
        LOGGER.warning(text)
        self.record(IngestErrorType.WARNING, text)

    def error(self, text: str) -> None:
        LOGGER.error(text)
        self.record(IngestErrorType.ERROR, text)

    def exception(self, text: str) -> None:
        LOGGER.error("%s (exception)", text)
        self.record(IngestErrorType.EXCEPTION, text)

    def has(self, error_type: IngestErrorType) -> bool:
        return any(entry.type is error_type for entry in self.entries)

    def to_field(self) -> dict[str, Any]:
        """Return ``{"ingestErrors": [...]}`` or an empty dict when nothing was recorded."""

        if not self.entries:
            return {}
        return {"ingestErrors": [entry.to_document() for entry in self.entries]}


def format_error_text(error: BaseException) -> str:
    message = str(error)
    return message if message else error.__class__.__name__


def truncate_payload(text: str, max_length: int) -> tuple[str, int]:
    """Return (summary, original_length), clipping with an ellipsis."""

    original_length = len(text)
    if original_length <= max_length:
        return text, original_length
    return f"{text[:max_length]}…", original_length


def recorder_or_default(collector: Optional[IngestErrorCollector]) -> IngestErrorCollector:
    """Use the given collector, or a throwaway one that only logs."""

    return collector if collector is not None else IngestErrorCollector()
