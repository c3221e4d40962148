"""PillowCodec encoding, resizing and failure classification."""

import io

import pytest
from PIL import Image

from tests.fakes import make_image_bytes
from transcoder.conversion.codec import PillowCodec
from transcoder.conversion.models import ConversionOptions
from transcoder.conversion.resize import calculate_aspect_dimensions
from transcoder.errors import CodecError, FailureReason


def _open(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


@pytest.fixture
def codec():
    return PillowCodec(webp_effort=0)


def test_webp_keeps_aspect_ratio(codec, png_bytes):
    out = _open(codec.encode(png_bytes, ConversionOptions(format="webp", quality=70, width=20)))
    assert out.format == "WEBP"
    assert out.size == (20, 10)


def test_height_only(codec, png_bytes):
    out = _open(codec.encode(png_bytes, ConversionOptions(format="png", height=5)))
    assert out.size == (10, 5)


def test_crop_fills_exact_box(codec, png_bytes):
    options = ConversionOptions(format="png", width=10, height=10, resize_mode="crop")
    assert _open(codec.encode(png_bytes, options)).size == (10, 10)


def test_exact_resize_without_aspect(codec, png_bytes):
    options = ConversionOptions(format="png", width=7, height=9, maintain_aspect_ratio=False)
    assert _open(codec.encode(png_bytes, options)).size == (7, 9)


def test_no_resize_keeps_size(codec, png_bytes):
    assert _open(codec.encode(png_bytes, ConversionOptions(format="jpeg"))).size == (40, 20)


def test_rgba_to_jpeg(codec):
    data = make_image_bytes(mode="RGBA")
    out = _open(codec.encode(data, ConversionOptions(format="jpeg", quality=90)))
    assert out.format == "JPEG"
    assert out.mode == "RGB"


def test_png_keeps_alpha(codec):
    data = make_image_bytes(mode="RGBA")
    assert _open(codec.encode(data, ConversionOptions(format="png"))).mode == "RGBA"


def test_corrupt_input(codec):
    with pytest.raises(CodecError) as exc:
        codec.encode(b"definitely not an image", ConversionOptions())
    assert exc.value.reason == FailureReason.CORRUPT_INPUT


def test_truncated_input(codec, png_bytes):
    with pytest.raises(CodecError) as exc:
        codec.encode(png_bytes[: len(png_bytes) // 2], ConversionOptions())
    assert exc.value.reason == FailureReason.CORRUPT_INPUT


def test_decompression_bomb(codec, monkeypatch):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 10)
    data = make_image_bytes(size=(20, 20))
    with pytest.raises(CodecError) as exc:
        codec.encode(data, ConversionOptions())
    assert exc.value.reason == FailureReason.DIMENSION_TOO_LARGE


def test_calculate_aspect_dimensions():
    assert calculate_aspect_dimensions(400, 200, target_width=100) == (100, 50)
    assert calculate_aspect_dimensions(400, 200, target_height=50) == (100, 50)
    assert calculate_aspect_dimensions(400, 200, 100, 100) == (100, 50)
