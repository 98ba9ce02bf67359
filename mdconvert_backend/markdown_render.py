from __future__ import annotations

import logging
import re

import bleach
import markdown
from bs4 import BeautifulSoup
from bs4.element import Tag


logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = ["extra", "sane_lists"]

ALLOWED_TAGS = [
    "a", "abbr", "b", "blockquote", "br", "code", "dd", "del", "div", "dl", "dt",
    "em", "h1", "h2", "h3", "h4", "h5", "h6", "hr", "i", "img", "input", "ins",
    "kbd", "li", "ol", "p", "pre", "q", "s", "samp", "span", "strike", "strong",
    "sub", "sup", "table", "tbody", "td", "tfoot", "th", "thead", "tr", "ul",
]
ALLOWED_ATTRS = {
    "*": ["id", "title"],
    "a": ["href", "title", "name"],
    "img": ["src", "alt", "title", "width", "height"],
    "input": ["type", "checked", "disabled"],
    "td": ["align", "colspan", "rowspan"],
    "th": ["align", "colspan", "rowspan"],
    "ol": ["start"],
    "code": ["class"],
}
# data: stays so inline images survive; non-image data URIs are removed by
# scrub_dangerous_urls below.
ALLOWED_PROTOCOLS = ["http", "https", "mailto", "data"]

# Elements dropped together with their content before bleach runs
# (bleach.clean(strip=True) would keep their text).
_DROP_WITH_CONTENT = ["script", "style", "noscript", "template", "iframe", "object", "embed"]

_URL_ATTRIBUTES = ("href", "src")
_DANGEROUS_SCHEMES = ("javascript:", "vbscript:", "file:")
_URL_NOISE_RE = re.compile(r"[\x00-\x20\x7f]+")


def render_markdown(markdown_text: str) -> str:
    """Render Markdown to sanitized HTML: no scripts, no event handlers."""
    raw_html = markdown.markdown(markdown_text or "", extensions=MARKDOWN_EXTENSIONS)

    lowered = raw_html.lower()
    if any(f"<{name}" in lowered for name in _DROP_WITH_CONTENT):
        soup = BeautifulSoup(raw_html, "html.parser")
        for tag in soup.find_all(_DROP_WITH_CONTENT):
            tag.decompose()
        raw_html = str(soup)

    return bleach.clean(
        raw_html,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRS,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
        strip_comments=True,
    )


def is_dangerous_url(value: str) -> bool:
    """True for javascript:/vbscript:/file: and non-image data: URLs.

    Whitespace and control characters are ignored, since browsers skip them
    when reading a scheme (``java\\tscript:``).
    """
    normalized = _URL_NOISE_RE.sub("", value).lower()
    if normalized.startswith(_DANGEROUS_SCHEMES):
        return True
    return normalized.startswith("data:") and not normalized.startswith("data:image/")


def scrub_dangerous_urls(html: str) -> str:
    """Remove dangerous ``href``/``src`` values the renderer may have let through.

    An ``<img>`` losing its ``src`` stays in the tree without one; the DOCX
    path replaces such tags with a placeholder.
    """
    soup = BeautifulSoup(html, "html.parser")
    removed = 0
    for tag in soup.find_all(True):
        if not isinstance(tag, Tag):
            continue
        for attr in _URL_ATTRIBUTES:
            value = tag.get(attr)
            if isinstance(value, str) and is_dangerous_url(value):
                del tag[attr]
                removed += 1
    if not removed:
        return html
    logger.info("Removed %d dangerous URL attribute(s)", removed)
    return str(soup)
