from __future__ import annotations

import pytest

from mdconvert_backend.image_sniff import ImageDimensions, detect_image_mime, read_image_dimensions

from conftest import make_gif, make_jpeg, make_png, make_webp_vp8, make_webp_vp8l, make_webp_vp8x


@pytest.mark.parametrize(
    "data, expected",
    [
        (make_png(), "image/png"),
        (make_jpeg(), "image/jpeg"),
        (make_gif(), "image/gif"),
        (make_webp_vp8x(), "image/webp"),
        (b"<html><body>not an image</body></html>", None),
        (b"<svg xmlns='http://www.w3.org/2000/svg'/>", None),
        (b"RIFF\x00\x00\x00\x00WAVEfmt ", None),
        (b"", None),
    ],
)
def test_detect_image_mime_uses_magic_bytes(data: bytes, expected) -> None:
    assert detect_image_mime(data) == expected


def test_png_dimensions() -> None:
    assert read_image_dimensions(make_png(640, 480), "image/png") == ImageDimensions(640, 480)


def test_gif_dimensions() -> None:
    assert read_image_dimensions(make_gif(320, 200), "image/gif") == ImageDimensions(320, 200)


def test_jpeg_dimensions_skip_leading_segments() -> None:
    assert read_image_dimensions(make_jpeg(1024, 768), "image/jpeg") == ImageDimensions(1024, 768)


def test_jpeg_dht_marker_is_not_mistaken_for_frame_header() -> None:
    dht = b"\xff\xc4\x00\x07\x00\x00\x00\x00\x00"
    data = b"\xff\xd8" + dht + make_jpeg(50, 60)[2:]
    assert read_image_dimensions(data, "image/jpeg") == ImageDimensions(50, 60)


@pytest.mark.parametrize(
    "data",
    [make_webp_vp8(300, 150), make_webp_vp8l(300, 150), make_webp_vp8x(300, 150)],
    ids=["vp8", "vp8l", "vp8x"],
)
def test_webp_dimensions(data: bytes) -> None:
    assert read_image_dimensions(data, "image/webp") == ImageDimensions(300, 150)


def test_truncated_headers_are_unverified() -> None:
    assert read_image_dimensions(make_png()[:20], "image/png") is None
    assert read_image_dimensions(b"\xff\xd8\xff\xe0", "image/jpeg") is None
    assert read_image_dimensions(make_webp_vp8x()[:25], "image/webp") is None


def test_unknown_webp_chunk_is_unverified() -> None:
    data = b"RIFF\x20\x00\x00\x00WEBPVP8Z" + b"\x00" * 20
    assert read_image_dimensions(data, "image/webp") is None


def test_pixels() -> None:
    assert ImageDimensions(4096, 4096).pixels == 16 * 1024 * 1024
