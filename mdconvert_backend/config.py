from __future__ import annotations

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


# Request limits. Input size is checked before any rendering work starts.
MAX_CONTENT_SIZE = _env_int("MDCONVERT_MAX_CONTENT_SIZE", 1 * 1024 * 1024)  # 1MB
MAX_RENDERED_HTML_SIZE = _env_int("MDCONVERT_MAX_RENDERED_HTML_SIZE", 10 * 1024 * 1024)  # 10MB

# Image proxy limits.
MAX_IMAGE_SIZE = _env_int("MDCONVERT_MAX_IMAGE_SIZE", 2 * 1024 * 1024)  # 2MB per image
MAX_TOTAL_IMAGE_BYTES = _env_int("MDCONVERT_MAX_TOTAL_IMAGE_BYTES", 8 * 1024 * 1024)  # 8MB per document
MAX_IMAGE_DIMENSION = 4096
MAX_IMAGE_PIXELS = 16 * 1024 * 1024
# Ceiling for images whose header we could not read dimensions from.
MAX_UNVERIFIED_IMAGE_SIZE = 500 * 1024
MAX_IMAGES_PER_DOC = _env_int("MDCONVERT_MAX_IMAGES_PER_DOC", 20)
MAX_REDIRECTS = 3
IMAGE_FETCH_CONCURRENCY = 5
IMAGE_FETCH_TIMEOUT = _env_float("MDCONVERT_IMAGE_FETCH_TIMEOUT", 5.0)
IMAGE_PROXY_USER_AGENT = "MDConvert-ImageProxy/1.0"

# Render sandbox budgets (seconds).
BROWSER_LAUNCH_TIMEOUT = _env_float("MDCONVERT_BROWSER_LAUNCH_TIMEOUT", 10.0)
CONTENT_LOAD_TIMEOUT = _env_float("MDCONVERT_CONTENT_LOAD_TIMEOUT", 10.0)
FONT_READY_TIMEOUT = _env_float("MDCONVERT_FONT_READY_TIMEOUT", 3.0)
PDF_RENDER_TIMEOUT = _env_float("MDCONVERT_PDF_RENDER_TIMEOUT", 10.0)

# Overall per-request ceilings (seconds).
PDF_TIMEOUT = _env_float("MDCONVERT_PDF_TIMEOUT", 15.0)
DOCX_TIMEOUT = _env_float("MDCONVERT_DOCX_TIMEOUT", 10.0)

# The only hosts the PDF renderer may contact, and only for CSS/fonts.
FONT_CDN_HOSTS = frozenset(
    host.strip().lower()
    for host in os.environ.get("MDCONVERT_FONT_CDN_HOSTS", "fonts.googleapis.com,fonts.gstatic.com").split(",")
    if host.strip()
)

# Browser provisioning.
# "local": Playwright's own Chromium build (playwright install chromium).
# "serverless": a minimal Chromium pack downloaded once into CHROMIUM_DIR.
# The pack is a tar (optionally gzip/xz compressed) holding a chromium or
# headless_shell executable.
BROWSER_MODE = os.environ.get("MDCONVERT_BROWSER_MODE", "local").strip().lower()
CHROMIUM_PACK_URL = os.environ.get("MDCONVERT_CHROMIUM_PACK_URL", "").strip()
_chromium_dir_raw = os.environ.get("MDCONVERT_CHROMIUM_DIR")
if _chromium_dir_raw and _chromium_dir_raw.strip():
    CHROMIUM_DIR = Path(_chromium_dir_raw)
else:
    CHROMIUM_DIR = Path("/tmp/mdconvert-chromium")
CHROMIUM_DOWNLOAD_TIMEOUT = _env_float("MDCONVERT_CHROMIUM_DOWNLOAD_TIMEOUT", 60.0)

LOG_LEVEL = os.environ.get("MDCONVERT_LOG_LEVEL", "INFO").upper()

PDF_MEDIA_TYPE = "application/pdf"
DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
