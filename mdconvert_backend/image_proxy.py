"""Inline remote images referenced by rendered HTML.

Every distinct ``<img src>`` pointing at a remote URL is fetched server-side,
checked, and replaced by a ``data:`` URI, so the renderers downstream never
need network access for images. Checks applied per image:

- HTTPS only, and the URL must pass :func:`is_url_safe` (no internal hosts)
- redirects are followed by hand, re-validating every hop (max 3)
- SVG is never inlined (it can carry script)
- 2MB per image, 8MB per document, 20 images per document
- the format comes from magic bytes, never from Content-Type
- dimension limits guard against decompression bombs
- 5s per fetch, 5 fetches in flight

Any per-image failure leaves that ``<img>`` as it was; it never fails the
conversion.
"""

from __future__ import annotations

import asyncio
import base64
import enum
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from bs4 import BeautifulSoup
from bs4.element import Tag

from .config import (
    IMAGE_FETCH_CONCURRENCY,
    IMAGE_FETCH_TIMEOUT,
    IMAGE_PROXY_USER_AGENT,
    MAX_IMAGE_DIMENSION,
    MAX_IMAGE_PIXELS,
    MAX_IMAGE_SIZE,
    MAX_IMAGES_PER_DOC,
    MAX_REDIRECTS,
    MAX_TOTAL_IMAGE_BYTES,
    MAX_UNVERIFIED_IMAGE_SIZE,
)
from .image_sniff import detect_image_mime, read_image_dimensions
from .security import is_url_safe


logger = logging.getLogger(__name__)

_REQUEST_HEADERS = {"User-Agent": IMAGE_PROXY_USER_AGENT, "Accept": "image/*"}


class ResolutionState(str, enum.Enum):
    PENDING = "pending"
    INLINED = "inlined"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass
class ImageCandidate:
    original_url: str
    state: ResolutionState = ResolutionState.PENDING


@dataclass(frozen=True)
class InlinedImage:
    data_uri: str
    byte_size: int
    mime_type: str


class ImageRejected(Exception):
    """A single image was refused. ``blocked`` separates policy from I/O failures."""

    def __init__(self, reason: str, detail: str = "", *, blocked: bool = True) -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail
        self.blocked = blocked


def _short(url: str, limit: int = 100) -> str:
    return url if len(url) <= limit else url[:limit] + "..."


def is_svg_url(url: str) -> bool:
    lowered = url.lower()
    return lowered.endswith(".svg") or ".svg?" in lowered or ".svg#" in lowered


def is_image_data_uri(value: str) -> bool:
    return value.strip().lower().startswith("data:image/")


def is_data_uri(value: str) -> bool:
    return value.strip().lower().startswith("data:")


@dataclass(frozen=True)
class _Hop:
    status: int
    location: Optional[str] = None
    body: Optional[bytes] = None


async def _fetch_once(client: httpx.AsyncClient, url: str) -> _Hop:
    async with client.stream("GET", url, headers=_REQUEST_HEADERS, follow_redirects=False) as response:
        if 300 <= response.status_code < 400:
            return _Hop(response.status_code, location=response.headers.get("location"))

        if not response.is_success:
            raise ImageRejected("http_status", str(response.status_code), blocked=False)

        declared = response.headers.get("content-length", "").strip()
        if declared.isdigit() and int(declared) > MAX_IMAGE_SIZE:
            raise ImageRejected("too_large", f"content-length {declared}")

        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) > MAX_IMAGE_SIZE:
                raise ImageRejected("too_large", f"more than {MAX_IMAGE_SIZE} bytes downloaded")
        return _Hop(response.status_code, body=bytes(buffer))


async def fetch_with_redirect_validation(client: httpx.AsyncClient, url: str) -> bytes:
    """GET ``url`` following at most MAX_REDIRECTS hops, each one re-validated."""
    current = url
    for hop_count in range(MAX_REDIRECTS + 1):
        if not is_url_safe(current):
            if hop_count:
                raise ImageRejected("unsafe_redirect", _short(current))
            raise ImageRejected("blocked_url", _short(current))

        try:
            hop = await asyncio.wait_for(_fetch_once(client, current), timeout=IMAGE_FETCH_TIMEOUT)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise ImageRejected("timeout", _short(current), blocked=False) from exc
        except httpx.HTTPError as exc:
            raise ImageRejected("network_error", f"{_short(current)}: {exc}", blocked=False) from exc

        if hop.body is not None:
            return hop.body

        if not hop.location:
            raise ImageRejected("redirect_without_location", _short(current), blocked=False)
        try:
            current = str(httpx.URL(current).join(hop.location))
        except httpx.InvalidURL as exc:
            raise ImageRejected("unsafe_redirect", _short(hop.location)) from exc
        logger.info("Following redirect to: %s", _short(current))

    raise ImageRejected("redirect_limit", _short(url))


def build_inlined_image(data: bytes) -> InlinedImage:
    """Validate downloaded bytes and encode them as a data URI."""
    if len(data) > MAX_IMAGE_SIZE:
        raise ImageRejected("too_large", f"{len(data)} bytes")

    mime_type = detect_image_mime(data)
    if mime_type is None:
        raise ImageRejected("bad_magic")

    dimensions = read_image_dimensions(data, mime_type)
    if dimensions is not None:
        if dimensions.width > MAX_IMAGE_DIMENSION or dimensions.height > MAX_IMAGE_DIMENSION:
            raise ImageRejected("too_many_pixels", f"{dimensions.width}x{dimensions.height}")
        if dimensions.pixels > MAX_IMAGE_PIXELS:
            raise ImageRejected("too_many_pixels", f"{dimensions.pixels} pixels")
    elif len(data) > MAX_UNVERIFIED_IMAGE_SIZE:
        raise ImageRejected("unverified_dimensions", f"{len(data)} bytes")

    encoded = base64.b64encode(data).decode("ascii")
    return InlinedImage(
        data_uri=f"data:{mime_type};base64,{encoded}",
        byte_size=len(data),
        mime_type=mime_type,
    )


async def fetch_image(client: httpx.AsyncClient, url: str) -> InlinedImage:
    if is_svg_url(url):
        raise ImageRejected("svg", _short(url))
    data = await fetch_with_redirect_validation(client, url)
    return build_inlined_image(data)


async def _resolve(client: httpx.AsyncClient, candidate: ImageCandidate) -> Optional[InlinedImage]:
    try:
        image = await fetch_image(client, candidate.original_url)
    except ImageRejected as exc:
        candidate.state = ResolutionState.BLOCKED if exc.blocked else ResolutionState.FAILED
        logger.info("Rejected image (%s): %s", exc.reason, exc.detail or _short(candidate.original_url))
        return None
    return image


def _new_client() -> httpx.AsyncClient:
    # No ambient proxy settings or .netrc credentials for outbound image fetches.
    return httpx.AsyncClient(
        follow_redirects=False,
        timeout=httpx.Timeout(IMAGE_FETCH_TIMEOUT),
        trust_env=False,
    )


async def proxy_images(html: str, *, client: Optional[httpx.AsyncClient] = None) -> str:
    """Replace safely-resolvable remote ``<img src>`` values with data URIs.

    Unresolved images are left untouched for the downstream consumer to deal
    with; non-image ``data:`` URIs lose their ``src``.
    """
    if "<img" not in html.lower():
        return html

    soup = BeautifulSoup(html, "html.parser")
    images = [img for img in soup.find_all("img") if isinstance(img, Tag) and img.get("src") is not None]
    if not images:
        return html

    changed = False
    remote: dict[str, None] = {}
    for img in images:
        src = str(img["src"])
        if is_data_uri(src):
            if not is_image_data_uri(src):
                logger.info("Rejected image (non_image_data_uri)")
                del img["src"]
                changed = True
            continue
        remote.setdefault(src)
    remote_urls = list(remote)

    if len(remote_urls) > MAX_IMAGES_PER_DOC:
        logger.info(
            "Rejected image (image_limit): %d of %d distinct URLs over the cap of %d",
            len(remote_urls) - MAX_IMAGES_PER_DOC,
            len(remote_urls),
            MAX_IMAGES_PER_DOC,
        )
    candidates = [ImageCandidate(url) for url in remote_urls[:MAX_IMAGES_PER_DOC]]
    logger.info("Processing %d external images", len(candidates))

    resolved: dict[str, InlinedImage] = {}
    if candidates:
        owns_client = client is None
        if client is None:
            client = _new_client()
        try:
            resolved = await _resolve_all(client, candidates)
        finally:
            if owns_client:
                await client.aclose()

    for img in images:
        src = img.get("src")
        if src is not None and src in resolved:
            img["src"] = resolved[src].data_uri
            changed = True

    return str(soup) if changed else html


async def _resolve_all(client: httpx.AsyncClient, candidates: list[ImageCandidate]) -> dict[str, InlinedImage]:
    resolved: dict[str, InlinedImage] = {}
    total_bytes = 0
    for start in range(0, len(candidates), IMAGE_FETCH_CONCURRENCY):
        batch = candidates[start : start + IMAGE_FETCH_CONCURRENCY]
        results = await asyncio.gather(*(_resolve(client, candidate) for candidate in batch))
        for candidate, image in zip(batch, results):
            if image is None:
                continue
            if total_bytes + image.byte_size > MAX_TOTAL_IMAGE_BYTES:
                candidate.state = ResolutionState.BLOCKED
                logger.info("Rejected image (total_budget): %s", _short(candidate.original_url))
                continue
            total_bytes += image.byte_size
            candidate.state = ResolutionState.INLINED
            resolved[candidate.original_url] = image
    logger.info("Total embedded image bytes: %d", total_bytes)
    return resolved
