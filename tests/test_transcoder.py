"""Tests for variant generation and format selection."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from conftest import make_image_bytes
from media_manager.transcoder import (
    MEDIUM,
    THUMBNAIL,
    TranscodeError,
    TranscodeOptions,
    content_type_for,
    file_extension,
    generate_variants,
    image_format_for,
    transcode,
)


def _open(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def test_presets_match_fixed_bounds() -> None:
    assert (MEDIUM.max_size, MEDIUM.quality) == (800, 85)
    assert (THUMBNAIL.max_size, THUMBNAIL.quality) == (200, 80)


@pytest.mark.parametrize(
    ("size", "medium", "thumbnail"),
    [
        ((1600, 1200), (800, 600), (200, 150)),
        ((1200, 1600), (600, 800), (150, 200)),
        ((4000, 1000), (800, 200), (200, 50)),
    ],
)
def test_variants_fit_bounds_and_keep_aspect_ratio(size, medium, thumbnail) -> None:
    variants = generate_variants(make_image_bytes(size))

    assert _open(variants.medium).size == medium
    assert _open(variants.thumbnail).size == thumbnail


def test_small_images_are_never_enlarged() -> None:
    variants = generate_variants(make_image_bytes((120, 80)))

    assert _open(variants.medium).size == (120, 80)
    assert _open(variants.thumbnail).size == (120, 80)


def test_exif_orientation_is_applied_before_resizing() -> None:
    exif = Image.Exif()
    exif[0x0112] = 6  # rotated 90 degrees clockwise
    buffer = io.BytesIO()
    Image.new("RGB", (1200, 400), (10, 20, 30)).save(buffer, format="JPEG", exif=exif.tobytes())

    variants = generate_variants(buffer.getvalue())

    assert _open(variants.medium).size == (267, 800)
    assert _open(variants.thumbnail).size == (67, 200)


def test_transparent_png_becomes_jpeg_on_white() -> None:
    buffer = io.BytesIO()
    Image.new("RGBA", (50, 50), (255, 0, 0, 0)).save(buffer, format="PNG")

    output = _open(transcode(buffer.getvalue(), TranscodeOptions(max_size=800)))

    assert output.format == "JPEG"
    assert output.mode == "RGB"
    assert output.getpixel((25, 25)) == pytest.approx((255, 255, 255), abs=3)


@pytest.mark.parametrize("fmt", ["png", "webp"])
def test_transcode_honors_output_format(fmt) -> None:
    output = _open(transcode(make_image_bytes((900, 300), mode="RGBA", fmt="PNG"), TranscodeOptions(800, 85, fmt)))

    assert output.format == fmt.upper()
    assert output.size == (800, 267)


def test_undecodable_input_raises_transcode_error() -> None:
    with pytest.raises(TranscodeError):
        generate_variants(b"not an image at all")


def test_decompression_bomb_raises_transcode_error(monkeypatch) -> None:
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

    with pytest.raises(TranscodeError):
        generate_variants(make_image_bytes((200, 200)))


def test_unknown_format_is_rejected() -> None:
    with pytest.raises(ValueError):
        transcode(make_image_bytes((10, 10)), TranscodeOptions(100, 85, "tiff"))  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("filename", "extension", "fmt"),
    [
        ("photo.JPG", "jpg", "jpeg"),
        ("scan.png", "png", "png"),
        ("clip.webp", "webp", "webp"),
        ("anim.gif", "gif", "jpeg"),
        ("no-extension", "jpg", "jpeg"),
        (None, "jpg", "jpeg"),
    ],
)
def test_extension_and_format_from_filename(filename, extension, fmt) -> None:
    assert file_extension(filename) == extension
    assert image_format_for(filename) == fmt


def test_content_types() -> None:
    assert content_type_for("jpeg") == "image/jpeg"
    assert content_type_for("png") == "image/png"
    assert content_type_for("webp") == "image/webp"
