"""SQLAlchemy schema definitions and session management."""

from __future__ import annotations

import json
from pathlib import Path
from threading import Lock
from typing import Any

from sqlalchemy import JSON, Float, Index, Integer, String, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from media_manager.db_helpers import normalize_database_url, sqlite_database_path
from utils.logging import get_logger

LOGGER = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class MediaItem(Base):
    """One catalog entry: an uploaded image, its variants and its metadata."""

    __tablename__ = "media"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    original_url: Mapped[str] = mapped_column(String, nullable=False)
    medium_url: Mapped[str | None] = mapped_column(String, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    alt_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("idx_media_created_at", "created_at"),
        Index("idx_media_source", "source"),
        Index("idx_media_status", "status"),
    )


class PipelineJob(Base):
    """Execution ledger for one pipeline stage of one media record.

    Keyed by ``(media_id, stage)`` so redelivered jobs can be recognized and
    operators can find records whose resize stage failed.
    """

    __tablename__ = "pipeline_jobs"

    media_id: Mapped[str] = mapped_column(String, primary_key=True)
    stage: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("idx_pipeline_jobs_status", "status"),)


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _dump_json(value: Any) -> str:
    # Tag search matches substrings of the stored text, which must hold tags verbatim.
    return json.dumps(value, ensure_ascii=False)


def _configure_sqlite_connection(dbapi_connection: Any, connection_record: Any) -> None:
    """Let the API process and the Celery workers share one SQLite file."""

    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout = 30000")
    finally:
        cursor.close()


def _build_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, json_serializer=_dump_json)

    db_path = sqlite_database_path(url)
    if db_path is not None:
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.error("db_parent_directory_error", extra={"path": str(db_path), "error": str(exc)})
            raise

    engine = create_engine(
        url,
        connect_args={"timeout": 30.0, "check_same_thread": False},
        json_serializer=_dump_json,
    )
    event.listen(engine, "connect", _configure_sqlite_connection)
    return engine


def _create_schema(engine: Engine, url: str) -> None:
    try:
        Base.metadata.create_all(engine)
    except OperationalError as exc:
        # Several Celery workers may race to create the tables on startup.
        if "already exists" not in str(exc).lower():
            raise
        LOGGER.info("db_create_all_table_exists_race", extra={"target": url, "error": str(exc)})


def _get_engine(target: str | Path) -> Engine:
    """Return the cached engine for ``target``, creating the schema on first use."""

    url = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(url)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        if url not in _ENGINE_CACHE:
            engine = _build_engine(url)
            _create_schema(engine, url)
            _ENGINE_CACHE[url] = engine
        return _ENGINE_CACHE[url]


def open_primary_session(target: str | Path) -> Session:
    """Open a SQLAlchemy session for the catalog database."""

    return Session(_get_engine(target), expire_on_commit=False)


__all__ = [
    "Base",
    "MediaItem",
    "PipelineJob",
    "open_primary_session",
]
