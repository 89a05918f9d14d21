"""AI enrichment: turn one image into tags, a title, a description and alt text.

Two layers are exposed. :meth:`EnrichmentClient.analyze` is strict and raises
:class:`EnrichmentError` whenever the provider fails or answers with an
incomplete payload; the pipeline relies on this so its own retry budget
applies. :meth:`EnrichmentClient.analyze_or_fallback` never raises and returns
:data:`CLIENT_FALLBACK` instead.
"""

from __future__ import annotations

import base64
import io
import json
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx
import inflect
from PIL import Image, UnidentifiedImageError

from media_manager.config import EnrichmentConfig, Settings, TagLabelConfig, load_settings
from media_manager.status import PROCESSING_DESCRIPTION, PROCESSING_TAG
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "enrichment"})

SYSTEM_PROMPT = (
    "You analyze images for a media library. Return a JSON object with the keys "
    '"tags" (a list of short keywords covering objects, people, actions, style, mood and colors), '
    '"title" (3-8 words), "description" (1-2 sentences) and "altText" '
    "(specific, detailed text for accessibility). Return only the JSON object."
)
USER_PROMPT = "Analyze this image and provide tags, title, description, and alt text."

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*|\s*```", re.IGNORECASE)
_TITLE_MAX_WORDS = 8


class EnrichmentError(RuntimeError):
    """Raised when the provider fails or returns an unusable payload."""


@dataclass(frozen=True)
class EnrichmentResult:
    tags: list[str] = field(default_factory=list)
    title: str = ""
    description: str = ""
    alt_text: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"tags": list(self.tags), "title": self.title, "description": self.description, "altText": self.alt_text}


CLIENT_FALLBACK = EnrichmentResult(
    tags=["image", "media"],
    title="Uploaded Image",
    description="Image uploaded to media manager",
    alt_text="Uploaded image",
)

_INFLECT_ENGINE: Any | None = None


def _get_inflect_engine() -> Any:
    global _INFLECT_ENGINE
    if _INFLECT_ENGINE is None:
        _INFLECT_ENGINE = inflect.engine()
    return _INFLECT_ENGINE


def _normalize_tag(tag: str) -> str:
    text = " ".join(str(tag).strip().lower().split())
    if not text:
        return text

    engine = _get_inflect_engine()
    singular = engine.singular_noun(text)
    if singular:
        text = singular

    return text


def normalize_tags(tags: Iterable[Any], max_tags: int | None = None) -> list[str]:
    """Trim, lowercase, singularize and de-duplicate tags, keeping first-seen order.

    The processing sentinel tag is dropped so enriched records always settle.
    """

    normalized: list[str] = []
    seen: set[str] = set()
    for tag in tags:
        if not isinstance(tag, str):
            continue
        text = _normalize_tag(tag)
        if not text or text == PROCESSING_TAG or text in seen:
            continue
        seen.add(text)
        normalized.append(text)
        if max_tags is not None and len(normalized) >= max_tags:
            break
    return normalized


def _strip_code_fence(content: str) -> str:
    return _FENCE_PATTERN.sub("", content).strip()


def title_from_caption(caption: str, max_words: int = _TITLE_MAX_WORDS) -> str:
    """Derive a short display title from a free-form caption."""

    words = caption.strip().rstrip(".").split()
    if not words:
        return ""
    title = " ".join(words[:max_words])
    return title[0].upper() + title[1:]


def _sentence(text: str) -> str:
    text = text.strip()
    if not text:
        return text
    text = text[0].upper() + text[1:]
    return text if text.endswith((".", "!", "?")) else f"{text}."


def parse_enrichment_payload(content: str, max_tags: int | None = None) -> EnrichmentResult:
    """Parse a provider reply into an :class:`EnrichmentResult`.

    The reply may be wrapped in a markdown code fence. ``tags``,
    ``description`` and ``altText`` must be present and non-empty; a missing
    ``title`` is derived from the description.
    """

    if not content or not content.strip():
        raise EnrichmentError("Empty response from enrichment provider")

    try:
        payload = json.loads(_strip_code_fence(content))
    except json.JSONDecodeError as exc:
        raise EnrichmentError(f"Enrichment response is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise EnrichmentError("Enrichment response must be a JSON object")

    raw_tags = payload.get("tags")
    description = payload.get("description")
    alt_text = payload.get("altText")
    title = payload.get("title")

    if not isinstance(raw_tags, list) or not raw_tags:
        raise EnrichmentError("Invalid response structure: missing tags")
    if not isinstance(description, str) or not description.strip():
        raise EnrichmentError("Invalid response structure: missing description")
    if not isinstance(alt_text, str) or not alt_text.strip():
        raise EnrichmentError("Invalid response structure: missing altText")
    if description.strip() == PROCESSING_DESCRIPTION:
        raise EnrichmentError("Invalid response structure: description is the processing placeholder")

    tags = normalize_tags(raw_tags, max_tags=max_tags)
    if not tags:
        raise EnrichmentError("Invalid response structure: no usable tags")

    if not isinstance(title, str) or not title.strip():
        title = title_from_caption(description)

    return EnrichmentResult(
        tags=tags,
        title=title.strip(),
        description=description.strip(),
        alt_text=alt_text.strip(),
    )


class EnrichmentClient(ABC):
    """Base class for enrichment providers."""

    name = "base"

    @abstractmethod
    def analyze(self, image_bytes: bytes) -> EnrichmentResult:
        """Analyze ``image_bytes`` or raise :class:`EnrichmentError`."""

    def analyze_or_fallback(self, image_bytes: bytes) -> EnrichmentResult:
        try:
            return self.analyze(image_bytes)
        except EnrichmentError as exc:
            LOGGER.error("enrichment_client_fallback", extra={"backend": self.name, "error": str(exc)})
            return CLIENT_FALLBACK


def _decode_image(image_bytes: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            image.load()
            return image.copy()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise EnrichmentError(f"Cannot decode image for enrichment: {exc}") from exc


class BlipEnrichmentClient(EnrichmentClient):
    """Local enrichment from a BLIP caption plus SigLIP zero-shot tags.

    The analyzer is created on first use so importing this module (and
    building the pipeline in the web process) does not load any model.
    """

    name = "blip"

    def __init__(self, settings: Settings, analyzer: Any | None = None) -> None:
        self._settings = settings
        self._analyzer = analyzer

    @property
    def tag_labels(self) -> TagLabelConfig:
        return self._settings.models.tag_labels

    def _get_analyzer(self) -> Any:
        if self._analyzer is None:
            from media_manager.ml.siglip_blip import SiglipBlipAnalyzer

            self._analyzer = SiglipBlipAnalyzer(settings=self._settings)
        return self._analyzer

    def analyze(self, image_bytes: bytes) -> EnrichmentResult:
        image = _decode_image(image_bytes)
        labels = self.tag_labels.candidate_labels

        try:
            analysis = self._get_analyzer().analyze(image, labels, self.tag_labels.score_threshold)
        except (RuntimeError, ValueError, OSError) as exc:
            raise EnrichmentError(f"Local model inference failed: {exc}") from exc

        caption = (analysis.caption or "").strip()
        tags = normalize_tags(analysis.detected_labels, max_tags=self._settings.enrichment.max_tags)
        if not caption:
            raise EnrichmentError("Caption model returned an empty caption")
        if not tags:
            raise EnrichmentError("No tag scored above the configured threshold")

        description = _sentence(caption)
        LOGGER.info(
            "blip_enrichment_complete",
            extra={"tags": tags, "caption": caption, "confidence": round(analysis.confidence, 4)},
        )
        return EnrichmentResult(
            tags=tags,
            title=title_from_caption(caption),
            description=description,
            alt_text=description,
        )


def _sniff_mime(image_bytes: bytes) -> str:
    if image_bytes.startswith(b"\x89PNG"):
        return "image/png"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    if image_bytes[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "image/jpeg"


class OpenAIEnrichmentClient(EnrichmentClient):
    """Chat-completions vision request with the image sent inline as a data URL."""

    name = "openai"

    def __init__(
        self,
        config: EnrichmentConfig,
        client: httpx.Client | None = None,
        api_key: str | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._api_key = api_key if api_key is not None else os.getenv(config.api_key_env, "")

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._config.request_timeout_seconds)
        return self._client

    def _build_request(self, image_bytes: bytes) -> dict[str, Any]:
        encoded = base64.b64encode(image_bytes).decode("ascii")
        data_url = f"data:{_sniff_mime(image_bytes)};base64,{encoded}"
        return {
            "model": self._config.openai_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": USER_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_url, "detail": "high"}},
                    ],
                },
            ],
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature,
        }

    def analyze(self, image_bytes: bytes) -> EnrichmentResult:
        if not self._api_key:
            raise EnrichmentError(f"Missing API key; set {self._config.api_key_env}")

        url = f"{self._config.openai_base_url.rstrip('/')}/chat/completions"
        try:
            response = self._get_client().post(
                url,
                json=self._build_request(image_bytes),
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise EnrichmentError(f"Enrichment request failed: {exc}") from exc

        if not response.is_success:
            raise EnrichmentError(f"Enrichment provider answered {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise EnrichmentError("No content received from enrichment provider") from exc

        result = parse_enrichment_payload(content or "", max_tags=self._config.max_tags)
        LOGGER.info("openai_enrichment_complete", extra={"model": self._config.openai_model, "tags": result.tags})
        return result


def build_enrichment_client(settings: Settings | None = None) -> EnrichmentClient:
    """Construct the enrichment backend named by ``settings.enrichment.backend``."""

    cfg = settings or load_settings()
    backend = cfg.enrichment.backend.lower()
    if backend == "blip":
        return BlipEnrichmentClient(cfg)
    if backend == "openai":
        return OpenAIEnrichmentClient(cfg.enrichment)
    raise ValueError(f"Unsupported enrichment backend: {cfg.enrichment.backend!r}")


__all__ = [
    "CLIENT_FALLBACK",
    "BlipEnrichmentClient",
    "EnrichmentClient",
    "EnrichmentError",
    "EnrichmentResult",
    "OpenAIEnrichmentClient",
    "build_enrichment_client",
    "normalize_tags",
    "parse_enrichment_payload",
    "title_from_caption",
]
