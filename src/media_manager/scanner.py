"""Filesystem scanner for bulk ingest from local folders or external drives."""

from __future__ import annotations

import mimetypes
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "scanner"})

IMAGE_EXTENSIONS: frozenset[str] = frozenset({".jpg", ".jpeg", ".png", ".webp", ".gif"})


@dataclass(frozen=True)
class FileInfo:
    """A discovered image file and the mimetype sent along with its upload."""

    path: Path
    size_bytes: int
    mimetype: str


def guess_mimetype(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "image/jpeg"


def _is_hidden(path: Path, root: Path) -> bool:
    # Covers .DS_Store, AppleDouble "._name" files and dot-directories on removable drives.
    return any(part.startswith(".") for part in path.relative_to(root).parts)


def scan_roots(roots: Iterable[Path], extensions: frozenset[str] | None = None) -> Iterator[FileInfo]:
    """Yield the image files under ``roots``, sorted by path within each root.

    Missing roots are logged and skipped. ``extensions`` are lowercased and
    include the leading dot; :data:`IMAGE_EXTENSIONS` is used when omitted.
    """

    allowed = extensions or IMAGE_EXTENSIONS

    for root in roots:
        if not root.is_dir():
            LOGGER.warning("scan_root_missing", extra={"root": str(root)})
            continue

        found = 0
        for path in sorted(root.rglob("*")):
            if path.suffix.lower() not in allowed or not path.is_file() or _is_hidden(path, root):
                continue
            found += 1
            yield FileInfo(path=path, size_bytes=path.stat().st_size, mimetype=guess_mimetype(path))

        LOGGER.info("scan_root_complete", extra={"root": str(root), "files": found})


__all__ = ["IMAGE_EXTENSIONS", "FileInfo", "guess_mimetype", "scan_roots"]
