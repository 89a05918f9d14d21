"""Resize uploaded images into the fixed medium and thumbnail variants."""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Final, Literal

from PIL import Image, ImageOps, UnidentifiedImageError
from PIL.Image import Resampling

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "transcoder"})

ImageFormat = Literal["jpeg", "png", "webp"]

_PIL_FORMATS: Final[dict[str, str]] = {"jpeg": "JPEG", "png": "PNG", "webp": "WEBP"}
_CONTENT_TYPES: Final[dict[str, str]] = {"jpeg": "image/jpeg", "png": "image/png", "webp": "image/webp"}


class TranscodeError(RuntimeError):
    """Raised when an input buffer cannot be decoded or re-encoded."""


@dataclass(frozen=True)
class TranscodeOptions:
    """Target bounds for one variant; ``max_size`` applies to the longer side."""

    max_size: int
    quality: int = 85
    format: ImageFormat = "jpeg"


MEDIUM: Final[TranscodeOptions] = TranscodeOptions(max_size=800, quality=85)
THUMBNAIL: Final[TranscodeOptions] = TranscodeOptions(max_size=200, quality=80)


@dataclass(frozen=True)
class Variants:
    medium: bytes
    thumbnail: bytes


def _get_resample_filter() -> Resampling:
    return Resampling.LANCZOS


def _prepare_mode(image: Image.Image, fmt: ImageFormat) -> Image.Image:
    if fmt == "jpeg":
        if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        if image.mode != "RGB":
            return image.convert("RGB")
        return image
    if fmt == "webp" and image.mode not in ("RGB", "RGBA"):
        return image.convert("RGBA" if "transparency" in image.info else "RGB")
    return image


def build_thumbnail_image(image: Image.Image, max_side: int) -> Image.Image:
    """Produce a copy constrained to ``max_side`` pixels; never enlarges."""

    safe_side = max(1, int(max_side))
    resized = image.copy()
    resized.thumbnail((safe_side, safe_side), resample=_get_resample_filter())
    return resized


def _encode(image: Image.Image, options: TranscodeOptions) -> bytes:
    fmt = options.format
    prepared = _prepare_mode(build_thumbnail_image(image, options.max_size), fmt)

    save_kwargs: dict[str, object] = {"format": _PIL_FORMATS[fmt]}
    if fmt == "jpeg":
        save_kwargs.update(quality=int(options.quality), optimize=True, progressive=True)
    elif fmt == "webp":
        save_kwargs.update(quality=int(options.quality))
    else:
        save_kwargs.update(optimize=True)

    buffer = io.BytesIO()
    prepared.save(buffer, **save_kwargs)
    return buffer.getvalue()


def _open_oriented(data: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as raw:
            raw.load()
            oriented = ImageOps.exif_transpose(raw)
            return oriented if oriented is not raw else raw.copy()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise TranscodeError(f"Cannot decode image: {exc}") from exc


def transcode(data: bytes, options: TranscodeOptions) -> bytes:
    """Re-encode ``data`` within ``options.max_size``.

    EXIF orientation is applied before resizing, aspect ratio is preserved and
    images already inside the bounds keep their dimensions.
    """

    if options.format not in _PIL_FORMATS:
        raise ValueError(f"Unsupported output format: {options.format!r}")

    image = _open_oriented(data)
    try:
        return _encode(image, options)
    except (OSError, ValueError) as exc:
        LOGGER.error(
            "transcode_error",
            extra={"max_size": options.max_size, "quality": options.quality, "format": options.format, "error": str(exc)},
        )
        raise TranscodeError(f"Cannot encode image as {options.format}: {exc}") from exc


def generate_variants(data: bytes, fmt: ImageFormat = "jpeg") -> Variants:
    """Compute both fixed presets from one decoded source image."""

    image = _open_oriented(data)
    try:
        medium = _encode(image, TranscodeOptions(MEDIUM.max_size, MEDIUM.quality, fmt))
        thumbnail = _encode(image, TranscodeOptions(THUMBNAIL.max_size, THUMBNAIL.quality, fmt))
    except (OSError, ValueError) as exc:
        LOGGER.error("transcode_error", extra={"format": fmt, "error": str(exc)})
        raise TranscodeError(f"Cannot encode image variants as {fmt}: {exc}") from exc
    return Variants(medium=medium, thumbnail=thumbnail)


def file_extension(filename: str | None, default: str = "jpg") -> str:
    if not filename or "." not in filename:
        return default
    ext = filename.rsplit(".", 1)[-1].strip().lower()
    return ext or default


def image_format_for(filename: str | None) -> ImageFormat:
    """Pick the output format from an upload name: png and webp stay, everything else is jpeg."""

    ext = file_extension(filename)
    if ext == "png":
        return "png"
    if ext == "webp":
        return "webp"
    return "jpeg"


def content_type_for(fmt: ImageFormat) -> str:
    return _CONTENT_TYPES[fmt]


__all__ = [
    "MEDIUM",
    "THUMBNAIL",
    "ImageFormat",
    "TranscodeError",
    "TranscodeOptions",
    "Variants",
    "build_thumbnail_image",
    "content_type_for",
    "file_extension",
    "generate_variants",
    "image_format_for",
    "transcode",
]
