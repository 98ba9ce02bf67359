"""Identify raster images by their own bytes.

Transport metadata (Content-Type, file extension) is never consulted here: the
format comes from the magic number and the dimensions come from the format's
header fields, so a decompression bomb can be refused before anything decodes it.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Optional


logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SIGNATURE = b"\xff\xd8\xff"
GIF_SIGNATURE = b"GIF8"

# SOF markers carry the frame size; C4 (DHT), C8 (JPG) and CC (DAC) do not.
_JPEG_SOF_MARKERS = frozenset(range(0xC0, 0xD0)) - {0xC4, 0xC8, 0xCC}
# Markers with no length field.
_JPEG_STANDALONE_MARKERS = frozenset(range(0xD0, 0xDA)) | {0x01}


@dataclass(frozen=True)
class ImageDimensions:
    width: int
    height: int

    @property
    def pixels(self) -> int:
        return self.width * self.height


def detect_image_mime(data: bytes) -> Optional[str]:
    """Return the MIME type implied by the magic number, or None."""
    if data.startswith(PNG_SIGNATURE):
        return "image/png"
    if data.startswith(JPEG_SIGNATURE):
        return "image/jpeg"
    if data.startswith(GIF_SIGNATURE):
        return "image/gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def _png_dimensions(data: bytes) -> Optional[ImageDimensions]:
    if len(data) < 24:
        return None
    width, height = struct.unpack(">II", data[16:24])
    return ImageDimensions(width, height)


def _gif_dimensions(data: bytes) -> Optional[ImageDimensions]:
    if len(data) < 10:
        return None
    width, height = struct.unpack("<HH", data[6:10])
    return ImageDimensions(width, height)


def _jpeg_dimensions(data: bytes) -> Optional[ImageDimensions]:
    i = 2
    length = len(data)
    while i + 9 < length:
        if data[i] != 0xFF:
            i += 1
            continue
        marker = data[i + 1]
        if marker == 0xFF:
            # fill byte
            i += 1
            continue
        if marker in _JPEG_SOF_MARKERS:
            height, width = struct.unpack(">HH", data[i + 5 : i + 9])
            return ImageDimensions(width, height)
        if marker in _JPEG_STANDALONE_MARKERS:
            i += 2
            continue
        (segment_length,) = struct.unpack(">H", data[i + 2 : i + 4])
        if segment_length < 2:
            return None
        i += 2 + segment_length
    return None


def _webp_dimensions(data: bytes) -> Optional[ImageDimensions]:
    if len(data) < 30:
        return None
    chunk = data[12:16]
    if chunk == b"VP8 ":
        width, height = struct.unpack("<HH", data[26:30])
        return ImageDimensions(width & 0x3FFF, height & 0x3FFF)
    if chunk == b"VP8L":
        if data[20] != 0x2F:
            return None
        (bits,) = struct.unpack("<I", data[21:25])
        return ImageDimensions((bits & 0x3FFF) + 1, ((bits >> 14) & 0x3FFF) + 1)
    if chunk == b"VP8X":
        width = int.from_bytes(data[24:27], "little") + 1
        height = int.from_bytes(data[27:30], "little") + 1
        return ImageDimensions(width, height)
    return None


_DIMENSION_PARSERS = {
    "image/png": _png_dimensions,
    "image/jpeg": _jpeg_dimensions,
    "image/gif": _gif_dimensions,
    "image/webp": _webp_dimensions,
}


def read_image_dimensions(data: bytes, mime_type: str) -> Optional[ImageDimensions]:
    """Parse intrinsic width/height from the image header.

    Returns None when the header is truncated or uses a layout we do not read;
    callers must then treat the image as unverified.
    """
    parser = _DIMENSION_PARSERS.get(mime_type)
    if parser is None:
        return None
    try:
        return parser(data)
    except (struct.error, IndexError) as exc:
        logger.info("Failed to parse dimensions for %s: %s", mime_type, exc)
        return None
