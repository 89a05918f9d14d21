"""Durable blob storage with public URL issuance.

Two backends share the :class:`ObjectStore` interface: an S3-compatible
bucket (AWS S3, DigitalOcean Spaces, MinIO) and a local directory served by
the web UI under ``/files``.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from media_manager.config import Settings, StorageConfig
from utils.logging import get_logger

if TYPE_CHECKING:
    from botocore.client import BaseClient

LOGGER = get_logger(__name__, extra={"component": "object_store"})

_LOCAL_PUBLIC_BASE_URL = "http://localhost:5000/files"


class StorageWriteError(RuntimeError):
    """Raised when a blob cannot be written to the object store."""


class StorageDeleteError(RuntimeError):
    """Raised when a blob cannot be removed from the object store."""


class Variant(str, Enum):
    ORIGINAL = "original"
    MEDIUM = "medium"
    THUMBNAIL = "thumbnail"


def key_for(media_id: str, variant: Variant | str, extension: str, suffix: str | None = None) -> str:
    """Return the deterministic object key for one variant of a media record.

    ``suffix`` distinguishes replacement images uploaded by an edit from the
    blobs written at ingest, e.g. ``medium/<id>-edited.jpg``.
    """

    name = Variant(variant).value
    ext = extension.lower().lstrip(".") or "jpg"
    stem = f"{media_id}-{suffix}" if suffix else media_id
    return f"{name}/{stem}.{ext}"


class ObjectStore(ABC):
    """Blob storage keyed by path-like strings."""

    def __init__(self, public_base_url: str) -> None:
        self._public_base_url = public_base_url.rstrip("/")

    def public_url(self, key: str) -> str:
        return f"{self._public_base_url}/{quote(key)}"

    def key_for_url(self, url: str | None) -> str | None:
        """Map a URL issued by :meth:`public_url` back to its key."""

        if not url:
            return None
        prefix = f"{self._public_base_url}/"
        if not url.startswith(prefix):
            return None
        key = unquote(url[len(prefix) :])
        return key or None

    @abstractmethod
    def put(self, data: bytes, key: str, content_type: str) -> str:
        """Store ``data`` under ``key`` (overwriting) and return its public URL."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the blob stored under ``key``."""


class LocalObjectStore(ObjectStore):
    """Filesystem-backed store for development and tests."""

    def __init__(self, root: Path, public_base_url: str) -> None:
        super().__init__(public_base_url)
        self._root = root.resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise ValueError(f"Refusing to use unsafe object key: {key!r}")
        return path

    def put(self, data: bytes, key: str, content_type: str) -> str:
        try:
            path = self.path_for(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except (OSError, ValueError) as exc:
            raise StorageWriteError(f"Failed to write {key}: {exc}") from exc

        LOGGER.info("object_stored", extra={"key": key, "bytes": len(data), "content_type": content_type})
        return self.public_url(key)

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except (OSError, ValueError) as exc:
            raise StorageDeleteError(f"Failed to delete {key}: {exc}") from exc


class S3ObjectStore(ObjectStore):
    """S3-compatible bucket storage using boto3."""

    def __init__(
        self,
        *,
        bucket: str,
        endpoint_url: str | None = None,
        region: str = "us-east-1",
        public_base_url: str | None = None,
        public_read: bool = True,
        client: BaseClient | Any | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 object store requires a bucket name")

        if public_base_url is None:
            if endpoint_url:
                public_base_url = f"{endpoint_url.rstrip('/')}/{bucket}"
            else:
                public_base_url = f"https://{bucket}.s3.{region}.amazonaws.com"
        super().__init__(public_base_url)

        self._bucket = bucket
        self._public_read = public_read
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                region_name=region,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                config=Config(max_pool_connections=50, retries={"max_attempts": 3, "mode": "adaptive"}),
            )
        self._client = client

    def put(self, data: bytes, key: str, content_type: str) -> str:
        params: dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if self._public_read:
            params["ACL"] = "public-read"

        try:
            self._client.put_object(**params)
        except (ClientError, BotoCoreError) as exc:
            LOGGER.error("object_store_put_error", extra={"bucket": self._bucket, "key": key, "error": str(exc)})
            raise StorageWriteError(f"Failed to upload s3://{self._bucket}/{key}: {exc}") from exc

        LOGGER.info("object_stored", extra={"key": key, "bytes": len(data), "content_type": content_type})
        return self.public_url(key)

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageDeleteError(f"Failed to delete s3://{self._bucket}/{key}: {exc}") from exc


def delete_quietly(store: ObjectStore, key: str | None) -> bool:
    """Delete ``key`` and report success; failures are logged, never raised."""

    if not key:
        return False
    try:
        store.delete(key)
    except StorageDeleteError as exc:
        LOGGER.error("object_delete_error", extra={"key": key, "error": str(exc)})
        return False
    return True


def build_object_store(settings: Settings) -> ObjectStore:
    """Instantiate the configured backend."""

    cfg: StorageConfig = settings.storage
    if cfg.backend == "local":
        return LocalObjectStore(Path(cfg.local_root), cfg.public_base_url or _LOCAL_PUBLIC_BASE_URL)
    if cfg.backend == "s3":
        return S3ObjectStore(
            bucket=cfg.bucket,
            endpoint_url=cfg.endpoint_url,
            region=cfg.region,
            public_base_url=cfg.public_base_url or None,
            public_read=cfg.public_read,
            access_key_id=os.getenv(cfg.access_key_env) or None,
            secret_access_key=os.getenv(cfg.secret_key_env) or None,
        )
    raise ValueError(f"Unsupported storage backend: {cfg.backend!r}")


__all__ = [
    "LocalObjectStore",
    "ObjectStore",
    "S3ObjectStore",
    "StorageDeleteError",
    "StorageWriteError",
    "Variant",
    "build_object_store",
    "delete_quietly",
    "key_for",
]
