"""Deterministic message document ids."""

from __future__ import annotations

import base64
import re
import uuid
from typing import Optional

_UNSAFE_CHARS = re.compile(r"[/+=]")


def encode_document_id(url: str) -> str:
    """Encode a source URL as a store-safe id.

    Standard base64 of the UTF-8 URL with ``/``, ``+`` and ``=`` replaced by
    ``_``, so crawling the same URL again maps onto the same document.
    """

    encoded = base64.b64encode(url.encode("utf-8")).decode("ascii")
    return _UNSAFE_CHARS.sub("_", encoded)


def message_id_for(source_url: Optional[str], index: int = 0, total: int = 1) -> str:
    """Return the document id for submessage ``index`` of ``total``.

    Submissions without a source URL get a random id. When a submission was
    split into several messages each gets a ``_<n>`` suffix (1-based).
    """

    base = encode_document_id(source_url) if source_url else uuid.uuid4().hex
    if total > 1:
        return f"{base}_{index + 1}"
    return base
