"""Database target parsing and dialect helpers for the catalog and job ledger."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session

POSTGRES_DRIVER = "postgresql+psycopg"

_UPSERT_FACTORIES = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


def _sqlite_url(path: Path) -> str:
    if not path.is_absolute():
        path = Path.cwd() / path
    return f"sqlite:///{path.resolve()}"


def normalize_database_url(target: str | Path) -> str:
    """Turn a ``databases.primary_url`` value into an absolute SQLAlchemy URL.

    Bare paths and relative ``sqlite:///`` URLs resolve against the working
    directory. ``postgres://`` and driverless ``postgresql://`` URLs, as handed
    out by managed Postgres hosts, are pinned to the psycopg driver.
    """

    if isinstance(target, Path):
        return _sqlite_url(target)

    raw = str(target).strip()
    if not raw:
        raise ValueError("database target cannot be empty")
    if "://" not in raw:
        return _sqlite_url(Path(raw))

    url = make_url(raw)
    if url.drivername.startswith("sqlite"):
        if url.database in (None, "", ":memory:"):
            return raw
        return _sqlite_url(Path(url.database))
    if url.drivername in {"postgres", "postgresql"}:
        _, rest = raw.split("://", 1)
        return f"{POSTGRES_DRIVER}://{rest}"
    return raw


def sqlite_database_path(target: str | Path) -> Path | None:
    """Return the database file behind a SQLite target, or ``None`` for other backends."""

    url = make_url(normalize_database_url(target))
    if not url.drivername.startswith("sqlite") or url.database in (None, "", ":memory:"):
        return None
    return Path(url.database)


def upsert_insert(session: Session, table: Any) -> Any:
    """Return an INSERT for the session's dialect that supports ``on_conflict_do_update``."""

    dialect = session.get_bind().dialect.name
    factory = _UPSERT_FACTORIES.get(dialect)
    if factory is None:
        raise NotImplementedError(f"Unsupported dialect for upsert: {dialect}")
    return factory(table)


__all__ = ["POSTGRES_DRIVER", "normalize_database_url", "sqlite_database_path", "upsert_insert"]
