from __future__ import annotations

import asyncio
import json
import logging
import os
import platform
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from mdconvert_backend import config
from mdconvert_backend.browser import BrowserLauncher, build_provisioner
from mdconvert_backend.conversion import ConversionResult, DocumentConverter, new_request_id
from mdconvert_backend.errors import ContentTooLargeError, ConversionError, InvalidContentError
from mdconvert_backend.filenames import content_disposition
from mdconvert_backend.pdf_render import PdfRenderSandbox


logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("mdconvert.server")

# How often a running conversion checks whether the client went away.
DISCONNECT_POLL_INTERVAL = 0.5

# JSON escaping can inflate the markdown field (\uXXXX per character), so the
# raw body gets a looser cap; the exact UTF-8 check happens after parsing.
MAX_REQUEST_BODY_BYTES = 6 * config.MAX_CONTENT_SIZE + 64 * 1024


def build_converter() -> DocumentConverter:
    # The provisioner is chosen once here and injected; nothing else reads BROWSER_MODE.
    provisioner = build_provisioner(
        config.BROWSER_MODE,
        pack_url=config.CHROMIUM_PACK_URL,
        install_dir=config.CHROMIUM_DIR,
    )
    return DocumentConverter(PdfRenderSandbox(BrowserLauncher(provisioner)))


@asynccontextmanager
async def lifespan(app: FastAPI):
    converter: DocumentConverter = app.state.converter
    logger.info(
        "Converter ready: browser=%s max_content=%d pdf_timeout=%gs docx_timeout=%gs",
        converter.pdf_sandbox.launcher.provisioner.name,
        config.MAX_CONTENT_SIZE,
        converter.pdf_timeout,
        converter.docx_timeout,
    )
    yield


app = FastAPI(lifespan=lifespan)
app.state.converter = build_converter()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(ConversionError)
async def _conversion_error(request: Request, exc: ConversionError) -> JSONResponse:
    return JSONResponse({"error": exc.code, "message": exc.message}, status_code=exc.status_code)


async def _read_payload(request: Request) -> Any:
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > MAX_REQUEST_BODY_BYTES:
        raise ContentTooLargeError()
    # Chunked bodies carry no length up front; count while reading instead.
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > MAX_REQUEST_BODY_BYTES:
            raise ContentTooLargeError()
    try:
        return json.loads(bytes(body))
    except ValueError as exc:
        raise InvalidContentError() from exc


async def _cancel_on_disconnect(request: Request, pipeline: Awaitable[ConversionResult]) -> ConversionResult | None:
    """Run ``pipeline`` and cancel it if the client disconnects first.

    Cancellation reaches the outbound image fetches and the browser teardown;
    nothing partial is kept. Returns None when the client is gone.
    """
    task = asyncio.ensure_future(pipeline)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await request.is_disconnected():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                return None
    finally:
        if not task.done():
            task.cancel()


def _document_response(result: ConversionResult) -> Response:
    headers = {
        "Content-Disposition": content_disposition(result.filename),
        "Cache-Control": "no-store",
        "X-Content-Type-Options": "nosniff",
    }
    return Response(content=result.content, media_type=result.media_type, headers=headers)


async def _convert(request: Request, kind: str) -> Response:
    converter: DocumentConverter = request.app.state.converter
    request_id = new_request_id()
    started = time.monotonic()
    logger.info("[%s] %s generation request started", request_id, kind.upper())

    payload = await _read_payload(request)
    convert = converter.convert_pdf if kind == "pdf" else converter.convert_docx
    try:
        result = await _cancel_on_disconnect(request, convert(payload, request_id=request_id))
    except ConversionError as exc:
        logger.info(
            "[%s] %s generation failed with %s after %.0fms",
            request_id,
            kind.upper(),
            exc.code,
            (time.monotonic() - started) * 1000,
        )
        raise

    if result is None:
        logger.info("[%s] Client disconnected, conversion cancelled", request_id)
        return Response(status_code=499)

    logger.info(
        "[%s] %s generation completed in %.0fms: %s (%d bytes)",
        request_id,
        kind.upper(),
        (time.monotonic() - started) * 1000,
        result.filename,
        len(result.content),
    )
    return _document_response(result)


@app.post("/api/convert/pdf")
async def convert_pdf(request: Request) -> Response:
    return await _convert(request, "pdf")


@app.post("/api/convert/docx")
async def convert_docx(request: Request) -> Response:
    return await _convert(request, "docx")


@app.get("/api/convert/pdf")
async def pdf_diagnostics(request: Request) -> JSONResponse:
    """Deployment health check: environment, cached Chromium path, live path resolution."""
    converter: DocumentConverter = request.app.state.converter
    launcher = converter.pdf_sandbox.launcher
    started = time.monotonic()
    info: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": {
            "browser_mode": config.BROWSER_MODE,
            "python": platform.python_version(),
            "platform": platform.platform(),
            "region": os.environ.get("MDCONVERT_REGION"),
        },
        "config": {
            "chromium_pack_url": config.CHROMIUM_PACK_URL,
            "max_content_size": config.MAX_CONTENT_SIZE,
            "pdf_timeout": converter.pdf_timeout,
            "docx_timeout": converter.docx_timeout,
        },
        "cache": launcher.diagnostics(),
    }

    resolve_started = time.monotonic()
    try:
        executable_path = await launcher.executable_path.get()
        info["chromium"] = {
            "status": "ok",
            "executable_path": executable_path or "playwright default",
            "resolution_time_ms": round((time.monotonic() - resolve_started) * 1000),
        }
    except Exception as exc:
        logger.warning("Chromium path resolution failed: %s", exc)
        info["chromium"] = {
            "status": "error",
            "error": str(exc),
            "resolution_time_ms": round((time.monotonic() - resolve_started) * 1000),
        }

    info["total_time_ms"] = round((time.monotonic() - started) * 1000)
    return JSONResponse(info, headers={"Cache-Control": "no-store"})


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "8010"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
