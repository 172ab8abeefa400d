"""Extraction service adapters.

Both clients return the raw JSON text of each stage; parsing happens in the
core. The concrete client is chosen once by the composition root.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import urllib.error
import urllib.request
from typing import Mapping, Optional

from core.errors import ExtractionError

LOGGER = logging.getLogger(__name__)

FILTER_SPLIT = "filter-split"
CATEGORIZE = "categorize"
EXTRACT_LOCATIONS = "extract-locations"


class HttpExtractionClient:
    """POSTs ``{"text": ...}`` to ``<endpoint>/<stage>`` and returns the response body."""

    def __init__(self, endpoint: str, api_key: Optional[str] = None, timeout: float = 60.0) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    def _post(self, stage: str, text: str) -> str:
        data = json.dumps({"text": text}, ensure_ascii=False).encode("utf-8")
        request = urllib.request.Request(f"{self._endpoint}/{stage}", data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        if self._api_key:
            request.add_header("Authorization", f"Bearer {self._api_key}")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise ExtractionError(f"Extraction service error {e.code} on {stage}: {body[:200]}") from e
        except (urllib.error.URLError, OSError) as e:
            raise ExtractionError(f"Extraction service unreachable on {stage}: {e}") from e

    async def _request(self, stage: str, text: str) -> str:
        LOGGER.debug("Calling extraction stage %s (%d chars)", stage, len(text))
        return await asyncio.to_thread(self._post, stage, text)

    async def filter_and_split(self, text: str) -> str:
        return await self._request(FILTER_SPLIT, text)

    async def categorize(self, text: str) -> str:
        return await self._request(CATEGORIZE, text)

    async def extract_locations(self, text: str) -> str:
        return await self._request(EXTRACT_LOCATIONS, text)


class FixtureExtractionClient:
    """Serves canned responses from ``<directory>/<stage>/<fixture>.json``.

    The fixture name is the first entry of ``patterns`` whose keyword occurs
    in the lowercased text, or ``default``.
    """

    def __init__(self, directory: str, patterns: Optional[Mapping[str, str]] = None) -> None:
        self._directory = directory
        self._patterns = dict(patterns or {})

    def fixture_name(self, text: str) -> str:
        lowered = text.lower()
        for keyword, name in self._patterns.items():
            if keyword.lower() in lowered:
                return name
        return "default"

    def _read(self, stage: str, text: str) -> str:
        name = self.fixture_name(text)
        path = os.path.join(self._directory, stage, f"{name}.json")
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return handle.read()
        except OSError as exc:
            raise ExtractionError(f"No {stage} fixture named {name!r}: {exc}") from exc

    async def filter_and_split(self, text: str) -> str:
        return self._read(FILTER_SPLIT, text)

    async def categorize(self, text: str) -> str:
        return self._read(CATEGORIZE, text)

    async def extract_locations(self, text: str) -> str:
        return self._read(EXTRACT_LOCATIONS, text)
