"""Print untrusted HTML to PDF in a locked-down headless Chromium.

Lifecycle for every render, torn down unconditionally:

    launch -> new context/page -> scripting off -> request interceptor
    -> set_content(networkidle) -> scripting on just long enough to await
    document.fonts.ready -> scripting off -> offline -> page.pdf(A4)
    -> close page, context, browser

The interceptor lets through only stylesheet/font requests to the font CDN
hosts and inline ``data:image/*`` URIs. Offline mode is switched on after
the font wait, so nothing the interceptor missed can go out during printing.
"""

from __future__ import annotations

import asyncio
import html as _html
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar
from urllib.parse import urlsplit

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .browser import BrowserLauncher
from .config import (
    BROWSER_LAUNCH_TIMEOUT,
    CONTENT_LOAD_TIMEOUT,
    FONT_CDN_HOSTS,
    FONT_READY_TIMEOUT,
    PDF_RENDER_TIMEOUT,
)
from .errors import RenderTimeoutError
from .image_proxy import is_data_uri, is_image_data_uri
from .security import normalize_hostname


logger = logging.getLogger(__name__)

T = TypeVar("T")

ALLOWED_RESOURCE_TYPES = frozenset({"stylesheet", "font"})

FONT_STYLESHEET_URL = (
    "https://fonts.googleapis.com/css2?family=Noto+Sans:wght@400;600;700"
    "&family=Noto+Sans+Mono&display=swap"
)

FONTS_READY_JS = "async () => { if (document.fonts && document.fonts.ready) { await document.fonts.ready; } }"

PDF_MARGIN = {"top": "20mm", "right": "20mm", "bottom": "20mm", "left": "20mm"}

PDF_STYLES = """
body {
  font-family: 'Noto Sans', system-ui, -apple-system, 'Segoe UI', Roboto, Arial, sans-serif;
  line-height: 1.6;
  color: #1e293b;
  margin: 0;
  padding: 0;
}
h1, h2, h3, h4, h5, h6 { margin: 1.5rem 0 0.5rem; font-weight: 600; line-height: 1.25; }
h1 { font-size: 1.5rem; }
h2 { font-size: 1.25rem; }
h3 { font-size: 1.125rem; }
p { margin: 0.75rem 0; }
a { color: #059669; text-decoration: none; }
ul, ol { margin: 0.75rem 0; padding-left: 1.5rem; }
li { margin: 0.25rem 0; }
code {
  font-family: 'Noto Sans Mono', ui-monospace, Menlo, Consolas, monospace;
  font-size: 0.875em;
  background-color: #f1f5f9;
  padding: 0.125rem 0.25rem;
  border-radius: 0.25rem;
}
pre {
  font-family: 'Noto Sans Mono', ui-monospace, Menlo, Consolas, monospace;
  font-size: 0.875em;
  background-color: #1e293b;
  color: #f8fafc;
  padding: 1rem;
  border-radius: 0.5rem;
  white-space: pre-wrap;
  margin: 1rem 0;
}
pre code { background-color: transparent; padding: 0; color: inherit; }
blockquote { border-left: 4px solid #e2e8f0; margin: 1rem 0; padding-left: 1rem; color: #64748b; font-style: italic; }
table { width: 100%; border-collapse: collapse; margin: 1rem 0; }
th, td { border: 1px solid #e2e8f0; padding: 0.5rem 0.75rem; text-align: left; }
th { background-color: #f8fafc; font-weight: 600; }
hr { border: none; border-top: 1px solid #e2e8f0; margin: 2rem 0; }
img { max-width: 100%; height: auto; }
""".strip()


def build_pdf_html(content: str, title: str = "Document") -> str:
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n<head>\n  <meta charset="UTF-8">\n'
        f"  <title>{_html.escape(title)}</title>\n"
        f'  <link rel="stylesheet" href="{_html.escape(FONT_STYLESHEET_URL)}">\n'
        f"  <style>\n{PDF_STYLES}\n  </style>\n"
        "</head>\n<body>\n  <article>\n"
        f"{content}\n"
        "  </article>\n</body>\n</html>"
    )


def is_request_allowed(url: str, resource_type: str, font_hosts: Iterable[str] = FONT_CDN_HOSTS) -> bool:
    """Allow-list decision for a request issued by the page being printed.

    The hostname is compared after parsing, never by substring, so
    ``https://fonts.gstatic.com@evil.example/`` or
    ``https://evil.example/fonts.gstatic.com`` do not pass.
    """
    if is_data_uri(url):
        return is_image_data_uri(url)
    try:
        parsed = urlsplit(url)
        hostname = parsed.hostname
    except ValueError:
        return False
    if parsed.scheme != "https" or not hostname:
        return False
    if normalize_hostname(hostname) not in set(font_hosts):
        return False
    return resource_type in ALLOWED_RESOURCE_TYPES


async def _set_scripting(cdp: Any, *, enabled: bool) -> None:
    await cdp.send("Emulation.setScriptExecutionDisabled", {"value": not enabled})


class PdfRenderSandbox:
    def __init__(
        self,
        launcher: BrowserLauncher,
        *,
        playwright_factory: Callable[[], Any] = async_playwright,
        launch_timeout: float = BROWSER_LAUNCH_TIMEOUT,
        load_timeout: float = CONTENT_LOAD_TIMEOUT,
        font_timeout: float = FONT_READY_TIMEOUT,
        render_timeout: float = PDF_RENDER_TIMEOUT,
        font_hosts: Iterable[str] = FONT_CDN_HOSTS,
    ) -> None:
        self.launcher = launcher
        self._playwright_factory = playwright_factory
        self.launch_timeout = launch_timeout
        self.load_timeout = load_timeout
        self.font_timeout = font_timeout
        self.render_timeout = render_timeout
        self.font_hosts = frozenset(font_hosts)

    async def render(self, html: str, *, request_id: str = "-") -> bytes:
        """Print ``html`` to an A4 PDF and return the bytes.

        Raises RenderTimeoutError when launch, load or render overruns its
        budget; any other failure propagates as-is.
        """
        async with self._playwright_factory() as playwright:
            browser = context = page = None
            try:
                started = time.monotonic()
                browser = await self._stage("launch", self.launch_timeout, self.launcher.launch(playwright))
                logger.info("[%s] Browser launched in %.0fms", request_id, (time.monotonic() - started) * 1000)

                context = await browser.new_context(
                    java_script_enabled=True,
                    accept_downloads=False,
                    service_workers="block",
                    viewport={"width": 794, "height": 1123},
                    device_scale_factor=2,
                )
                page = await context.new_page()
                cdp = await context.new_cdp_session(page)
                await _set_scripting(cdp, enabled=False)
                await page.route("**/*", self._intercept)

                started = time.monotonic()
                await self._stage(
                    "load",
                    self.load_timeout,
                    page.set_content(html, wait_until="networkidle", timeout=self.load_timeout * 1000),
                )
                logger.info("[%s] Page content set in %.0fms", request_id, (time.monotonic() - started) * 1000)

                await self._wait_for_fonts(page, cdp, request_id)
                await context.set_offline(True)

                started = time.monotonic()
                pdf_bytes = await self._stage(
                    "render",
                    self.render_timeout,
                    page.pdf(format="A4", margin=PDF_MARGIN, print_background=True),
                )
                logger.info(
                    "[%s] PDF generated in %.0fms (%d bytes)",
                    request_id,
                    (time.monotonic() - started) * 1000,
                    len(pdf_bytes),
                )
                return pdf_bytes
            finally:
                await self._teardown(request_id, page=page, context=context, browser=browser)

    async def _stage(self, stage: str, timeout: float, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except (asyncio.TimeoutError, PlaywrightTimeoutError) as exc:
            raise RenderTimeoutError(stage, timeout) from exc

    async def _wait_for_fonts(self, page: Any, cdp: Any, request_id: str) -> None:
        # Scripting is on only for the duration of this wait.
        await _set_scripting(cdp, enabled=True)
        try:
            await asyncio.wait_for(page.evaluate(FONTS_READY_JS), timeout=self.font_timeout)
        except asyncio.TimeoutError:
            logger.info("[%s] Fonts not ready after %gs, continuing", request_id, self.font_timeout)
        except PlaywrightError as exc:
            logger.info("[%s] Font readiness check failed, continuing: %s", request_id, exc)
        finally:
            await _set_scripting(cdp, enabled=False)

    async def _intercept(self, route: Any) -> None:
        request = route.request
        if is_request_allowed(request.url, request.resource_type, self.font_hosts):
            await route.continue_()
            return
        logger.debug("Blocked renderer request (%s): %s", request.resource_type, request.url[:100])
        await route.abort()

    async def _teardown(self, request_id: str, **handles: Optional[Any]) -> None:
        for label, handle in handles.items():
            if handle is None:
                continue
            try:
                await handle.close()
            except Exception:
                logger.warning("[%s] Failed to close %s", request_id, label, exc_info=True)
