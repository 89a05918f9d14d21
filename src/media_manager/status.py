"""Media processing states and the sentinel-based "still processing" contract.

Records carry an explicit :class:`MediaStatus`, but clients only see the
legacy sentinel values written at ingest. :func:`is_processing` is the single
predicate shared by the status endpoint, the pipeline and the poller; every
stage writes ``status`` in the same update that replaces the sentinels, so
the two views cannot drift apart.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any, Final


class MediaStatus(str, Enum):
    """Lifecycle states of a media record."""

    INGESTED = "ingested"
    RESIZED = "resized"
    ENRICHED = "enriched"
    ENRICHED_FALLBACK = "enriched_fallback"

    @property
    def is_terminal(self) -> bool:
        return self in (MediaStatus.ENRICHED, MediaStatus.ENRICHED_FALLBACK)


class MediaSource(str, Enum):
    """Where an uploaded file came from."""

    LOCAL = "local"
    EXTERNAL_DRIVE = "external-drive"


PROCESSING_TAG: Final[str] = "processing"
PROCESSING_TITLE: Final[str] = "Processing..."
PROCESSING_DESCRIPTION: Final[str] = "Processing..."
PROCESSING_ALT_TEXT: Final[str] = "Image being processed"

PLACEHOLDER_FIELDS: Final[Mapping[str, Any]] = {
    "medium_url": "",
    "thumbnail_url": "",
    "tags": [PROCESSING_TAG],
    "title": PROCESSING_TITLE,
    "description": PROCESSING_DESCRIPTION,
    "alt_text": PROCESSING_ALT_TEXT,
    "status": MediaStatus.INGESTED.value,
}


def is_processing(original_url: str | None, tags: Iterable[str] | None, description: str | None) -> bool:
    """Return ``True`` while a record still carries any processing sentinel."""

    if not original_url:
        return True
    if tags is not None and PROCESSING_TAG in tags:
        return True
    return description == PROCESSING_DESCRIPTION


def is_processing_payload(payload: Mapping[str, Any]) -> bool:
    """Evaluate :func:`is_processing` on a camelCase API record."""

    return is_processing(payload.get("originalUrl"), payload.get("tags"), payload.get("description"))


def strip_sentinel_tags(tags: Iterable[str]) -> list[str]:
    """Drop the processing sentinel and blank entries from user-supplied tags."""

    cleaned: list[str] = []
    for tag in tags:
        text = str(tag).strip()
        if not text or text == PROCESSING_TAG or text in cleaned:
            continue
        cleaned.append(text)
    return cleaned


__all__ = [
    "MediaSource",
    "MediaStatus",
    "PLACEHOLDER_FIELDS",
    "PROCESSING_ALT_TEXT",
    "PROCESSING_DESCRIPTION",
    "PROCESSING_TAG",
    "PROCESSING_TITLE",
    "is_processing",
    "is_processing_payload",
    "strip_sentinel_tags",
]
