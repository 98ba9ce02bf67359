from __future__ import annotations

import asyncio
import struct
from typing import Callable, Optional

import httpx
import pytest

from mdconvert_backend.browser import BrowserLauncher, LocalProvisioner
from mdconvert_backend.image_sniff import PNG_SIGNATURE


def make_png(width: int = 1, height: int = 1, size: Optional[int] = None) -> bytes:
    ihdr = struct.pack(">II", width, height) + b"\x08\x02\x00\x00\x00"
    data = PNG_SIGNATURE + struct.pack(">I", 13) + b"IHDR" + ihdr + b"\x00\x00\x00\x00"
    data += struct.pack(">I", 0) + b"IEND" + b"\xaeB`\x82"
    if size is not None and size > len(data):
        data += b"\x00" * (size - len(data))
    return data


def make_jpeg(width: int = 1, height: int = 1) -> bytes:
    app0 = b"\xff\xe0" + struct.pack(">H", 16) + b"JFIF\x00" + b"\x01\x01\x00\x00\x01\x00\x01\x00\x00"
    sof0 = b"\xff\xc0" + struct.pack(">HBHHB", 17, 8, height, width, 3) + b"\x01\x22\x00\x02\x11\x01\x03\x11\x01"
    return b"\xff\xd8" + app0 + sof0 + b"\xff\xd9"


def make_gif(width: int = 1, height: int = 1) -> bytes:
    return b"GIF89a" + struct.pack("<HH", width, height) + b"\x00\x00\x00"


def _riff(chunk: bytes) -> bytes:
    return b"RIFF" + struct.pack("<I", 4 + len(chunk)) + b"WEBP" + chunk


def make_webp_vp8x(width: int = 1, height: int = 1) -> bytes:
    payload = b"\x00\x00\x00\x00" + (width - 1).to_bytes(3, "little") + (height - 1).to_bytes(3, "little")
    return _riff(b"VP8X" + struct.pack("<I", len(payload)) + payload)


def make_webp_vp8l(width: int = 1, height: int = 1) -> bytes:
    bits = (width - 1) | ((height - 1) << 14)
    payload = b"\x2f" + struct.pack("<I", bits) + b"\x00" * 8
    return _riff(b"VP8L" + struct.pack("<I", len(payload)) + payload)


def make_webp_vp8(width: int = 1, height: int = 1) -> bytes:
    payload = b"\x00\x00\x00" + b"\x9d\x01\x2a" + struct.pack("<HH", width, height) + b"\x00" * 4
    return _riff(b"VP8 " + struct.pack("<I", len(payload)) + payload)


Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def requested() -> list[str]:
    """URLs seen by a mock transport."""
    return []


@pytest.fixture
def mock_client_factory(requested: list[str]):
    def factory(handler: Handler) -> Callable[[], httpx.AsyncClient]:
        async def recording_handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            response = handler(request)
            if not isinstance(response, httpx.Response):
                response = await response
            return response

        return lambda: httpx.AsyncClient(transport=httpx.MockTransport(recording_handler))

    return factory


class FakeSandbox:
    """Stands in for the headless browser and records what it was asked to print."""

    def __init__(self, *, delay: float = 0, error: Optional[Exception] = None) -> None:
        self.launcher = BrowserLauncher(LocalProvisioner())
        self.delay = delay
        self.error = error
        self.rendered: list[str] = []

    async def render(self, html: str, *, request_id: str = "-") -> bytes:
        self.rendered.append(html)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return b"%PDF-1.7 fake"
