from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup
from bs4.element import Comment, NavigableString, Tag

from .image_proxy import is_image_data_uri


logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "[Image not available]"

_EMPTY_CANDIDATES = ("p", "span", "div")
_PRESERVE_WHITESPACE = ("pre", "code", "textarea")
_BLANK_LINES_RE = re.compile(r"\n[ \t\r\f\v]*(?:\n[ \t\r\f\v]*)+")


@dataclass(frozen=True)
class DocxSanitizeResult:
    html: str
    comments_removed: int
    empty_elements_removed: int


def replace_unresolved_images(html_text: str) -> str:
    """Swap every ``<img>`` not already inlined for a text placeholder.

    That covers remote URLs the image proxy refused and ``<img>`` tags whose
    ``src`` was stripped upstream. The serializer then never fetches anything
    and never sees an ``<img>`` without ``src``.
    """
    raw = html_text or ""
    if "<img" not in raw.lower():
        return raw

    soup = BeautifulSoup(raw, "html.parser")
    replaced = 0
    for img in soup.find_all("img"):
        src = img.get("src")
        if isinstance(src, str) and is_image_data_uri(src):
            continue
        placeholder = soup.new_tag("span")
        placeholder.string = IMAGE_PLACEHOLDER
        img.replace_with(placeholder)
        replaced += 1

    if not replaced:
        return raw
    logger.info("Replaced %d unresolved image(s) with a placeholder", replaced)
    return str(soup)


def _is_empty(tag: Tag) -> bool:
    if any(isinstance(child, Tag) for child in tag.children):
        return False
    return not tag.get_text().strip()


def _inside_preformatted(node: NavigableString) -> bool:
    return any(parent.name in _PRESERVE_WHITESPACE for parent in node.parents if isinstance(parent, Tag))


def transform_for_docx(html_text: str) -> DocxSanitizeResult:
    """Normalize HTML into shapes the DOCX serializer handles.

    Rules:
    - Drop HTML comments.
    - Drop ``<p>``, ``<span>`` and ``<div>`` with no text and no child elements,
      repeating until nested empties are gone.
    - Collapse runs of blank lines to one newline outside preformatted blocks.
    """
    soup = BeautifulSoup(html_text or "", "html.parser")

    comments = [c for c in soup.find_all(string=lambda text: isinstance(text, Comment))]
    for comment in comments:
        comment.extract()

    removed = 0
    while True:
        empties = [t for t in soup.find_all(_EMPTY_CANDIDATES) if isinstance(t, Tag) and _is_empty(t)]
        if not empties:
            break
        for tag in empties:
            tag.decompose()
        removed += len(empties)

    for text in list(soup.find_all(string=True)):
        if isinstance(text, Comment) or _inside_preformatted(text):
            continue
        collapsed = _BLANK_LINES_RE.sub("\n", str(text))
        if collapsed != str(text):
            text.replace_with(NavigableString(collapsed))

    return DocxSanitizeResult(html=str(soup), comments_removed=len(comments), empty_elements_removed=removed)


def sanitize_for_docx(html_text: str) -> str:
    result = transform_for_docx(html_text)
    logger.debug(
        "DOCX sanitize removed %d comment(s), %d empty element(s)",
        result.comments_removed,
        result.empty_elements_removed,
    )
    return result.html
