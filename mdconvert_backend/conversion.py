from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator

from .config import (
    DOCX_MEDIA_TYPE,
    DOCX_TIMEOUT,
    MAX_CONTENT_SIZE,
    MAX_RENDERED_HTML_SIZE,
    PDF_MEDIA_TYPE,
    PDF_TIMEOUT,
)
from .docx_export import export_to_docx
from .docx_sanitizer import replace_unresolved_images, sanitize_for_docx
from .errors import (
    ContentTooLargeError,
    ConversionError,
    GenerationFailedError,
    GenerationTimeoutError,
    InvalidContentError,
)
from .filenames import derive_output_filename, strip_source_extension
from .image_proxy import proxy_images
from .markdown_render import render_markdown, scrub_dangerous_urls
from .pdf_render import PdfRenderSandbox, build_pdf_html


logger = logging.getLogger(__name__)


class ConvertRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    markdown: StrictStr = Field(min_length=1)
    filename: Optional[str] = None

    @field_validator("filename", mode="before")
    @classmethod
    def _ignore_non_string_filename(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None


@dataclass(frozen=True)
class ConversionResult:
    content: bytes
    filename: str
    media_type: str


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


def parse_request(payload: Any) -> ConvertRequest:
    """Validate a decoded JSON body; anything malformed is INVALID_CONTENT."""
    if not isinstance(payload, dict):
        raise InvalidContentError()
    try:
        return ConvertRequest.model_validate(payload)
    except ValidationError as exc:
        raise InvalidContentError() from exc


def enforce_content_size(markdown_text: str, limit: int = MAX_CONTENT_SIZE) -> int:
    size = len(markdown_text.encode("utf-8"))
    if size > limit:
        raise ContentTooLargeError(f"Content exceeds maximum size of {limit // (1024 * 1024)}MB.")
    return size


def _document_title(filename: Optional[str]) -> str:
    name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    return strip_source_extension(name) or "Document"


class DocumentConverter:
    """Runs one conversion request end to end.

    Holds no per-request state; the only shared piece is the PDF sandbox's
    browser launcher, whose executable path is memoized process-wide.
    """

    def __init__(
        self,
        pdf_sandbox: PdfRenderSandbox,
        *,
        image_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        pdf_timeout: float = PDF_TIMEOUT,
        docx_timeout: float = DOCX_TIMEOUT,
    ) -> None:
        self.pdf_sandbox = pdf_sandbox
        self._image_client_factory = image_client_factory
        self.pdf_timeout = pdf_timeout
        self.docx_timeout = docx_timeout

    async def convert_pdf(self, payload: Any, *, request_id: Optional[str] = None) -> ConversionResult:
        request = self._validate(payload, request_id or "-")
        content = await self._race(self._pdf_pipeline(request.markdown, request_id or "-"), self.pdf_timeout, "PDF")
        return ConversionResult(content, derive_output_filename(request.filename, "pdf"), PDF_MEDIA_TYPE)

    async def convert_docx(self, payload: Any, *, request_id: Optional[str] = None) -> ConversionResult:
        request = self._validate(payload, request_id or "-")
        title = _document_title(request.filename)
        content = await self._race(
            self._docx_pipeline(request.markdown, title, request_id or "-"), self.docx_timeout, "DOCX"
        )
        return ConversionResult(content, derive_output_filename(request.filename, "docx"), DOCX_MEDIA_TYPE)

    def _validate(self, payload: Any, request_id: str) -> ConvertRequest:
        request = parse_request(payload)
        size = enforce_content_size(request.markdown)
        logger.info("[%s] Content size: %d bytes", request_id, size)
        return request

    async def render_html(self, markdown_text: str, request_id: str = "-") -> str:
        """Markdown -> sanitized HTML with dangerous URL schemes removed."""
        started = time.monotonic()
        html = await asyncio.to_thread(render_markdown, markdown_text)
        html = await asyncio.to_thread(scrub_dangerous_urls, html)
        logger.info(
            "[%s] Markdown converted in %.0fms (%d bytes of HTML)",
            request_id,
            (time.monotonic() - started) * 1000,
            len(html),
        )
        return html

    async def inline_images(self, html: str) -> str:
        if self._image_client_factory is None:
            return await proxy_images(html)
        async with self._image_client_factory() as client:
            return await proxy_images(html, client=client)

    async def _pdf_pipeline(self, markdown_text: str, request_id: str) -> bytes:
        html = await self.render_html(markdown_text, request_id)
        html_size = len(html.encode("utf-8"))
        if html_size > MAX_RENDERED_HTML_SIZE:
            raise ContentTooLargeError(
                f"Rendered document exceeds maximum size of {MAX_RENDERED_HTML_SIZE // (1024 * 1024)}MB."
            )
        html = await self.inline_images(html)
        return await self.pdf_sandbox.render(build_pdf_html(html), request_id=request_id)

    async def _docx_pipeline(self, markdown_text: str, title: str, request_id: str) -> bytes:
        html = await self.render_html(markdown_text, request_id)
        html = await self.inline_images(html)
        html = replace_unresolved_images(html)
        html = sanitize_for_docx(html)
        started = time.monotonic()
        content = await asyncio.to_thread(export_to_docx, html, title)
        logger.info(
            "[%s] DOCX generated in %.0fms (%d bytes)", request_id, (time.monotonic() - started) * 1000, len(content)
        )
        return content

    async def _race(self, pipeline: Awaitable[bytes], timeout: float, label: str) -> bytes:
        try:
            return await asyncio.wait_for(pipeline, timeout=timeout)
        except ConversionError:
            raise
        except asyncio.TimeoutError as exc:
            raise GenerationTimeoutError(
                f"{label} generation timed out. Please try again with a smaller document."
            ) from exc
        except Exception as exc:
            logger.exception("%s generation failed", label)
            raise GenerationFailedError(f"{label} generation failed. Please try again.") from exc
