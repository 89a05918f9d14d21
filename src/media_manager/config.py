"""Configuration loader and typed settings for the media manager."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from media_manager.ml.model_presets import (
    BLIP_IMAGE_CAPTIONING_BASE,
    BLIP_PRESETS,
    SIGLIP2_BASE_PATCH16_224,
    SIGLIP_PRESETS,
)
from media_manager.status import PROCESSING_DESCRIPTION, PROCESSING_TAG


@dataclass
class EmbeddingModelConfig:
    """Configuration for the zero-shot tagging model (SigLIP)."""

    backend: str = "siglip"
    model_name: str = SIGLIP2_BASE_PATCH16_224
    preset: str | None = None
    device: str = "auto"

    def resolved_model_name(self) -> str:
        """Return the concrete model name to load.

        Resolution order:
        1. If ``preset`` is set, resolve via :data:`SIGLIP_PRESETS`.
        2. Otherwise, use ``model_name``.
        3. Fallback to the default SigLIP2 base checkpoint.
        """
        if self.preset:
            preset_name = SIGLIP_PRESETS.get(self.preset)
            if preset_name is None:
                raise ValueError(f"Unsupported SigLIP preset: {self.preset!r}")
            return preset_name

        if self.model_name:
            return self.model_name

        return SIGLIP2_BASE_PATCH16_224


@dataclass
class CaptionModelConfig:
    """Configuration for the captioning model (BLIP)."""

    backend: str = "blip"
    model_name: str = BLIP_IMAGE_CAPTIONING_BASE
    preset: str | None = None
    device: str = "auto"
    max_new_tokens: int = 50

    def resolved_model_name(self) -> str:
        """Return the concrete model name to load for captioning."""
        if self.preset:
            preset_name = BLIP_PRESETS.get(self.preset)
            if preset_name is None:
                raise ValueError(f"Unsupported BLIP preset: {self.preset!r}")
            return preset_name

        if self.model_name:
            return self.model_name

        return BLIP_IMAGE_CAPTIONING_BASE


@dataclass
class TagLabelConfig:
    """Candidate labels scored by SigLIP to produce image tags."""

    label_groups: dict[str, list[str]] = field(
        default_factory=lambda: {
            "animal": ["cat", "dog", "bird", "horse", "animal"],
            "person": ["person", "people", "portrait", "crowd"],
            "scene": ["outdoor", "indoor", "landscape", "city", "beach", "mountain", "night"],
            "food": ["food", "drink", "dessert"],
            "object": ["car", "building", "plant", "flower", "electronics", "book"],
            "style": ["illustration", "screenshot", "document", "black and white"],
        }
    )
    score_threshold: float = 0.08

    @property
    def candidate_labels(self) -> list[str]:
        """Flatten label groups into a unique list of candidate labels."""

        labels: list[str] = []
        seen: set[str] = set()

        for group_labels in self.label_groups.values():
            for label in group_labels:
                text = str(label).strip()
                if not text or text in seen:
                    continue
                seen.add(text)
                labels.append(text)

        return labels


@dataclass
class ModelsConfig:
    """Bundle of model configuration for the local enrichment backend."""

    embedding: EmbeddingModelConfig = field(default_factory=EmbeddingModelConfig)
    caption: CaptionModelConfig = field(default_factory=CaptionModelConfig)
    tag_labels: TagLabelConfig = field(default_factory=TagLabelConfig)


@dataclass
class FallbackMetadata:
    """Generic metadata written when enrichment cannot produce a result."""

    tags: list[str] = field(default_factory=lambda: ["image"])
    title: str = "Uploaded Image"
    description: str = "Uploaded image"
    alt_text: str = "Uploaded image"


@dataclass
class EnrichmentConfig:
    """AI enrichment provider settings."""

    backend: str = "blip"
    openai_model: str = "gpt-4o"
    openai_base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    request_timeout_seconds: float = 60.0
    max_tokens: int = 1000
    temperature: float = 0.3
    max_tags: int = 12
    fallback: FallbackMetadata = field(default_factory=FallbackMetadata)


@dataclass
class DatabaseConfig:
    """Database connection target for the catalog."""

    primary_url: str = "sqlite:///data/media.db"


@dataclass
class StorageConfig:
    """Object store backend settings.

    Credentials for the ``s3`` backend are read from the environment variables
    named here so that settings files never carry secrets.
    """

    backend: str = "local"
    local_root: str = "data/objects"
    public_base_url: str = ""
    bucket: str = ""
    endpoint_url: str | None = None
    region: str = "us-east-1"
    access_key_env: str = "DO_SPACES_ACCESS_KEY_ID"
    secret_key_env: str = "DO_SPACES_SECRET_ACCESS_KEY"
    public_read: bool = True


@dataclass
class QueueConfig:
    """Celery worker and queue configuration."""

    broker_url: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"
    resize_queue: str = "resize"
    enrich_queue: str = "enrich"
    default_concurrency: int = 2
    enrich_retry_delay_seconds: int = 10
    eager: bool = False


@dataclass
class PipelineConfig:
    """Knobs for the two processing stages."""

    download_timeout_seconds: float = 30.0
    enrich_max_retries: int = 3


@dataclass
class PollingConfig:
    """Status polling cadence used by the reconciliation loop."""

    interval_seconds: float = 3.0
    timeout_seconds: float = 300.0
    api_base_url: str = "http://localhost:5000"


@dataclass
class WebConfig:
    """HTTP API settings."""

    max_upload_bytes: int = 10 * 1024 * 1024


@dataclass
class Settings:
    """Top-level application settings."""

    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    web: WebConfig = field(default_factory=WebConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover
        return module_path.parent


def _build_default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    repo_candidate = (_project_root() / "config" / "settings.yaml").resolve()

    candidates: list[Path] = []
    for candidate in (cwd_candidate, repo_candidate):
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


_DEFAULT_SETTINGS_PATHS = _build_default_settings_paths()


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("MEDIA_MANAGER_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    for candidate in _DEFAULT_SETTINGS_PATHS:
        if candidate.exists():
            return candidate
    return _DEFAULT_SETTINGS_PATHS[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    The loader is deliberately forgiving: a missing or malformed file, or a
    value of the wrong type, leaves the corresponding default in place.
    """
    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    with path.open("r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}

    if not isinstance(raw, dict):
        return settings

    databases_raw = _as_dict(raw.get("databases"))
    if isinstance(databases_raw.get("primary_url"), str):
        settings.databases.primary_url = databases_raw["primary_url"]

    storage_raw = _as_dict(raw.get("storage"))
    storage_cfg = settings.storage
    for key in ("backend", "local_root", "public_base_url", "bucket", "region", "access_key_env", "secret_key_env"):
        if isinstance(storage_raw.get(key), str):
            setattr(storage_cfg, key, storage_raw[key])
    if isinstance(storage_raw.get("endpoint_url"), str):
        storage_cfg.endpoint_url = storage_raw["endpoint_url"]
    if isinstance(storage_raw.get("public_read"), bool):
        storage_cfg.public_read = storage_raw["public_read"]

    queue_raw = _as_dict(raw.get("queues"))
    queue_cfg = settings.queues
    for key in ("broker_url", "result_backend", "resize_queue", "enrich_queue"):
        if isinstance(queue_raw.get(key), str):
            setattr(queue_cfg, key, queue_raw[key])
    if isinstance(queue_raw.get("default_concurrency"), int):
        queue_cfg.default_concurrency = queue_raw["default_concurrency"]
    if isinstance(queue_raw.get("enrich_retry_delay_seconds"), int):
        queue_cfg.enrich_retry_delay_seconds = queue_raw["enrich_retry_delay_seconds"]
    if isinstance(queue_raw.get("eager"), bool):
        queue_cfg.eager = queue_raw["eager"]

    pipeline_raw = _as_dict(raw.get("pipeline"))
    pipeline_cfg = settings.pipeline
    if _is_number(pipeline_raw.get("download_timeout_seconds")):
        pipeline_cfg.download_timeout_seconds = float(pipeline_raw["download_timeout_seconds"])
    if isinstance(pipeline_raw.get("enrich_max_retries"), int):
        pipeline_cfg.enrich_max_retries = max(0, pipeline_raw["enrich_max_retries"])

    models_raw = _as_dict(raw.get("models"))
    embedding_raw = _as_dict(models_raw.get("embedding"))
    caption_raw = _as_dict(models_raw.get("caption"))
    tag_labels_raw = _as_dict(models_raw.get("tag_labels"))

    embedding_cfg = settings.models.embedding
    for key in ("backend", "model_name", "preset", "device"):
        if isinstance(embedding_raw.get(key), str):
            setattr(embedding_cfg, key, embedding_raw[key])

    caption_cfg = settings.models.caption
    for key in ("backend", "model_name", "preset", "device"):
        if isinstance(caption_raw.get(key), str):
            setattr(caption_cfg, key, caption_raw[key])
    if isinstance(caption_raw.get("max_new_tokens"), int):
        caption_cfg.max_new_tokens = caption_raw["max_new_tokens"]

    tag_labels_cfg = settings.models.tag_labels
    label_groups_raw = _as_dict(tag_labels_raw.get("label_groups"))
    if label_groups_raw:
        parsed_label_groups: dict[str, list[str]] = {}
        for group_name, labels in label_groups_raw.items():
            if isinstance(labels, list):
                parsed_label_groups[str(group_name)] = [str(label) for label in labels]
        if parsed_label_groups:
            tag_labels_cfg.label_groups = parsed_label_groups
    if _is_number(tag_labels_raw.get("score_threshold")):
        tag_labels_cfg.score_threshold = float(tag_labels_raw["score_threshold"])

    enrichment_raw = _as_dict(raw.get("enrichment"))
    enrichment_cfg = settings.enrichment
    for key in ("backend", "openai_model", "openai_base_url", "api_key_env"):
        if isinstance(enrichment_raw.get(key), str):
            setattr(enrichment_cfg, key, enrichment_raw[key])
    if _is_number(enrichment_raw.get("request_timeout_seconds")):
        enrichment_cfg.request_timeout_seconds = float(enrichment_raw["request_timeout_seconds"])
    if isinstance(enrichment_raw.get("max_tokens"), int):
        enrichment_cfg.max_tokens = enrichment_raw["max_tokens"]
    if _is_number(enrichment_raw.get("temperature")):
        enrichment_cfg.temperature = float(enrichment_raw["temperature"])
    if isinstance(enrichment_raw.get("max_tags"), int):
        enrichment_cfg.max_tags = max(1, enrichment_raw["max_tags"])

    fallback_raw = _as_dict(enrichment_raw.get("fallback"))
    fallback_cfg = enrichment_cfg.fallback
    if isinstance(fallback_raw.get("tags"), list):
        tags = [str(tag).strip() for tag in fallback_raw["tags"] if str(tag).strip() not in ("", PROCESSING_TAG)]
        if tags:
            fallback_cfg.tags = tags
    for key in ("title", "description", "alt_text"):
        if isinstance(fallback_raw.get(key), str):
            setattr(fallback_cfg, key, fallback_raw[key])
    if fallback_cfg.description == PROCESSING_DESCRIPTION:
        # The fallback must settle the record.
        fallback_cfg.description = FallbackMetadata.description

    polling_raw = _as_dict(raw.get("polling"))
    polling_cfg = settings.polling
    if _is_number(polling_raw.get("interval_seconds")):
        polling_cfg.interval_seconds = float(polling_raw["interval_seconds"])
    if _is_number(polling_raw.get("timeout_seconds")):
        polling_cfg.timeout_seconds = float(polling_raw["timeout_seconds"])
    if isinstance(polling_raw.get("api_base_url"), str):
        polling_cfg.api_base_url = polling_raw["api_base_url"]

    web_raw = _as_dict(raw.get("web"))
    if isinstance(web_raw.get("max_upload_bytes"), int):
        settings.web.max_upload_bytes = web_raw["max_upload_bytes"]

    return settings


__all__ = [
    "CaptionModelConfig",
    "DatabaseConfig",
    "EmbeddingModelConfig",
    "EnrichmentConfig",
    "FallbackMetadata",
    "ModelsConfig",
    "PipelineConfig",
    "PollingConfig",
    "QueueConfig",
    "Settings",
    "StorageConfig",
    "TagLabelConfig",
    "WebConfig",
    "load_settings",
]
