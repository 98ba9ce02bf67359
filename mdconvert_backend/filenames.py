from __future__ import annotations

import re
from typing import Optional
from urllib.parse import quote


_SOURCE_EXT_RE = re.compile(r"\.(md|markdown|txt)$", re.IGNORECASE)
_UNSAFE_ASCII_RE = re.compile(r'[^\x20-\x7e]|["\\]')


def strip_source_extension(filename: str) -> str:
    return _SOURCE_EXT_RE.sub("", filename)


def derive_output_filename(filename: Optional[str], extension: str) -> str:
    """Swap a Markdown extension for ``extension`` (``"pdf"``, ``"docx"``).

    Falls back to ``document.<extension>`` when no usable name was supplied.
    """
    # Only the basename; the client may send a full path.
    name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    stem = strip_source_extension(name)
    if not stem:
        return f"document.{extension}"
    return f"{stem}.{extension}"


def content_disposition(filename: str) -> str:
    """Build an attachment header with an ASCII fallback plus the RFC 5987 form."""
    ascii_name = _UNSAFE_ASCII_RE.sub("-", filename)
    encoded = quote(filename, safe="")
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{encoded}"
