"""Catalog store: the single ``media`` table and the queries over it."""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sqlalchemy import String, case, cast, delete, func, or_, select, update

from media_manager.db import MediaItem, open_primary_session
from media_manager.status import (
    PLACEHOLDER_FIELDS,
    PROCESSING_TAG,
    MediaSource,
    MediaStatus,
    is_processing,
)
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "catalog"})

_METADATA_FIELDS = frozenset({"tags", "title", "description", "alt_text"})
_URL_FIELDS = frozenset({"original_url", "medium_url", "thumbnail_url"})


@dataclass(frozen=True)
class StatusView:
    """Answer to "is this record still processing?"."""

    record: MediaItem
    processing: bool


@dataclass(frozen=True)
class SearchPage:
    """One page of search results plus the total match count."""

    items: list[MediaItem]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


def record_is_processing(item: MediaItem) -> bool:
    return is_processing(item.original_url, item.tags, item.description)


def record_to_payload(item: MediaItem) -> dict[str, Any]:
    """Serialize a record with the camelCase keys used on the wire."""

    return {
        "id": item.id,
        "originalUrl": item.original_url,
        "mediumUrl": item.medium_url,
        "thumbnailUrl": item.thumbnail_url,
        "source": item.source,
        "tags": list(item.tags or []),
        "title": item.title,
        "description": item.description,
        "altText": item.alt_text,
        "status": item.status,
        "createdAt": item.created_at,
    }


class CatalogStore:
    """Persist and query media records.

    Every write is a targeted partial update keyed by media id and committed
    before the method returns, so callers may rely on the change being durable.
    """

    def __init__(self, target: str | Path) -> None:
        self._target = target

    def insert_placeholder(
        self,
        media_id: str,
        original_url: str,
        source: MediaSource = MediaSource.LOCAL,
        now: float | None = None,
    ) -> MediaItem:
        """Insert a freshly ingested record carrying the processing sentinels."""

        if not original_url:
            raise ValueError("original_url is required at ingest")

        timestamp = time.time() if now is None else now
        fields = dict(PLACEHOLDER_FIELDS)
        fields["tags"] = list(fields["tags"])
        item = MediaItem(
            id=media_id,
            original_url=original_url,
            source=MediaSource(source).value,
            created_at=timestamp,
            updated_at=timestamp,
            **fields,
        )
        with open_primary_session(self._target) as session:
            session.add(item)
            session.commit()

        LOGGER.info("media_placeholder_inserted", extra={"media_id": media_id, "source": item.source})
        return item

    def get(self, media_id: str) -> MediaItem | None:
        with open_primary_session(self._target) as session:
            return session.get(MediaItem, media_id)

    def status(self, media_id: str) -> StatusView | None:
        """Point lookup plus a freshly computed processing flag."""

        item = self.get(media_id)
        if item is None:
            return None
        return StatusView(record=item, processing=record_is_processing(item))

    def _update(self, media_id: str, values: dict[str, Any]) -> bool:
        values["updated_at"] = time.time()
        with open_primary_session(self._target) as session:
            result = session.execute(
                update(MediaItem)
                .where(MediaItem.id == media_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        return bool(result.rowcount)

    def apply_variants(self, media_id: str, medium_url: str, thumbnail_url: str) -> bool:
        """Record the resized variant URLs and advance an ingested record to ``resized``.

        Records that already reached a later state keep their status so that a
        redelivered resize job cannot move a record backwards.
        """

        return self._update(
            media_id,
            {
                "medium_url": medium_url,
                "thumbnail_url": thumbnail_url,
                "status": case(
                    (MediaItem.status == MediaStatus.INGESTED.value, MediaStatus.RESIZED.value),
                    else_=MediaItem.status,
                ),
            },
        )

    def apply_enrichment(
        self,
        media_id: str,
        *,
        tags: Sequence[str],
        title: str | None,
        description: str | None,
        alt_text: str | None,
        status: MediaStatus,
    ) -> bool:
        """Replace every descriptive sentinel in a single update."""

        return self._update(
            media_id,
            {
                "tags": list(tags),
                "title": title,
                "description": description,
                "alt_text": alt_text,
                "status": MediaStatus(status).value,
            },
        )

    def update_fields(self, media_id: str, **fields: Any) -> MediaItem | None:
        """Apply a user edit of metadata and/or URLs; returns the updated record."""

        unknown = set(fields) - _METADATA_FIELDS - _URL_FIELDS
        if unknown:
            raise ValueError(f"unsupported media fields: {sorted(unknown)}")
        if not fields:
            raise ValueError("no fields to update")
        if "original_url" in fields and not fields["original_url"]:
            raise ValueError("original_url cannot be cleared")

        if not self._update(media_id, dict(fields)):
            return None
        return self.get(media_id)

    def delete(self, media_id: str) -> bool:
        with open_primary_session(self._target) as session:
            result = session.execute(delete(MediaItem).where(MediaItem.id == media_id))
            session.commit()
        return bool(result.rowcount)

    def list_media(
        self,
        *,
        search: str | None = None,
        source: str | None = None,
        page: int = 1,
        limit: int = 20,
        order: str = "desc",
    ) -> list[MediaItem]:
        """Paginated listing ordered by creation time."""

        page = max(1, page)
        limit = max(1, limit)

        stmt = select(MediaItem)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(MediaItem.description.like(pattern), MediaItem.alt_text.like(pattern)))
        if source:
            stmt = stmt.where(MediaItem.source == source)

        ordering = MediaItem.created_at.asc() if order == "asc" else MediaItem.created_at.desc()
        stmt = stmt.order_by(ordering, MediaItem.id).limit(limit).offset((page - 1) * limit)

        with open_primary_session(self._target) as session:
            return list(session.execute(stmt).scalars().all())

    def search(
        self,
        *,
        query: str | None = None,
        tags: Sequence[str] = (),
        source: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> SearchPage:
        """Text and tag search.

        ``query`` matches title, description, alt text or any tag as a
        case-insensitive substring. Every entry of ``tags`` must match at
        least one tag of the record, also as a substring.
        """

        limit = max(1, limit)
        offset = max(0, offset)
        needle = (query or "").strip().lower()
        filter_tags = [tag.strip().lower() for tag in tags if tag and tag.strip()]

        # Tags live in a JSON array; substring matches run against its text form.
        tags_text = cast(MediaItem.tags, String)

        stmt = select(MediaItem)
        if source and source != "all":
            stmt = stmt.where(MediaItem.source == source)
        for wanted in filter_tags:
            stmt = stmt.where(tags_text.icontains(wanted, autoescape=True))
        if needle:
            stmt = stmt.where(
                or_(
                    MediaItem.title.icontains(needle, autoescape=True),
                    MediaItem.description.icontains(needle, autoescape=True),
                    MediaItem.alt_text.icontains(needle, autoescape=True),
                    tags_text.icontains(needle, autoescape=True),
                )
            )

        count_stmt = select(func.count()).select_from(stmt.subquery())
        page_stmt = stmt.order_by(MediaItem.created_at.desc(), MediaItem.id).limit(limit).offset(offset)

        with open_primary_session(self._target) as session:
            total = int(session.execute(count_stmt).scalar_one())
            items = list(session.execute(page_stmt).scalars().all())

        return SearchPage(items=items, total=total, limit=limit, offset=offset)

    def all_tags(self) -> list[str]:
        """Sorted distinct tags across the catalog, excluding the processing sentinel."""

        with open_primary_session(self._target) as session:
            rows = session.execute(select(MediaItem.tags)).scalars().all()

        collected: set[str] = set()
        for tags in rows:
            for tag in tags or []:
                text = str(tag).strip() if isinstance(tag, str) else ""
                if text and text != PROCESSING_TAG:
                    collected.add(text)
        return sorted(collected)


__all__ = [
    "CatalogStore",
    "SearchPage",
    "StatusView",
    "record_is_processing",
    "record_to_payload",
]
