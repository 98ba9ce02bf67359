from __future__ import annotations

import base64
import binascii
import io
import logging
from typing import Optional
from urllib.parse import unquote_to_bytes

from docx import Document
from docx.image.exceptions import UnrecognizedImageError
from docx.shared import Inches, Pt, RGBColor
from htmldocx import HtmlToDocx

from .docx_sanitizer import IMAGE_PLACEHOLDER
from .image_proxy import is_image_data_uri


logger = logging.getLogger(__name__)

MAX_PICTURE_WIDTH = Inches(6)
BASE_FONT = "Arial"
BASE_FONT_SIZE = Pt(11)
HEADING_COLORS = {
    "Heading 1": RGBColor(0x2E, 0x74, 0xB5),
    "Heading 2": RGBColor(0x2E, 0x74, 0xB5),
    "Heading 3": RGBColor(0x1F, 0x4D, 0x78),
}


def decode_data_image(src: str) -> Optional[io.BytesIO]:
    """Decode a ``data:image/*`` URI into an in-memory file, or None."""
    if not is_image_data_uri(src):
        return None
    header, sep, payload = src.strip().partition(",")
    if not sep:
        return None
    try:
        if header.lower().endswith(";base64"):
            data = base64.b64decode(payload, validate=False)
        else:
            data = unquote_to_bytes(payload)
    except (binascii.Error, ValueError):
        return None
    return io.BytesIO(data) if data else None


class SafeHtmlToDocx(HtmlToDocx):
    """HtmlToDocx that only embeds inline images.

    The stock image handler downloads http(s) URLs and opens any other ``src``
    as a local path. Here only ``data:image/*`` is decoded; everything else
    becomes the placeholder text.
    """

    def handle_img(self, current_attrs):
        if not self.options.get("images", True):
            self.skip = True
            self.skip_tag = "img"
            return

        image = decode_data_image(current_attrs.get("src") or "")
        if image is not None:
            try:
                run = self.doc.add_paragraph().add_run()
                shape = run.add_picture(image)
                if shape.width > MAX_PICTURE_WIDTH:
                    shape.height = int(shape.height * MAX_PICTURE_WIDTH / shape.width)
                    shape.width = MAX_PICTURE_WIDTH
                return
            except (UnrecognizedImageError, ValueError, ZeroDivisionError) as exc:
                logger.info("DOCX: could not embed inline image: %s", exc)
        self.doc.add_paragraph(IMAGE_PLACEHOLDER)

    def copy_settings_from(self, other):
        super().copy_settings_from(other)
        self.options = dict(other.options)

    def handle_table(self):
        # Same as the stock handler, except each cell is filled by this class
        # so images inside tables get the same treatment as everywhere else.
        table_soup = self.tables[self.table_no]
        rows, cols = self.get_table_dimensions(table_soup)
        self.table = self.doc.add_table(rows, cols)
        if self.table_style:
            self.table.style = self.table_style

        for cell_row, row in enumerate(self.get_table_rows(table_soup)):
            for cell_col, col in enumerate(self.get_table_columns(row)):
                cell_html = self.get_cell_html(col)
                if col.name == "th":
                    cell_html = "<b>%s</b>" % cell_html
                child_parser = type(self)()
                child_parser.copy_settings_from(self)
                child_parser.add_html_to_cell(cell_html, self.table.cell(cell_row, cell_col))

        # skip everything up to the matching closing tag
        self.instances_to_skip = len(table_soup.find_all("table"))
        self.skip_tag = "table"
        self.skip = True
        self.table = None


def _apply_base_styles(document) -> None:
    normal = document.styles["Normal"]
    normal.font.name = BASE_FONT
    normal.font.size = BASE_FONT_SIZE
    for style_name, color in HEADING_COLORS.items():
        try:
            document.styles[style_name].font.color.rgb = color
        except KeyError:
            continue


def export_to_docx(html_content: str, title: Optional[str] = None) -> bytes:
    """Serialize sanitized HTML to ``.docx`` bytes.

    The HTML must already have gone through the image placeholder pass and
    :func:`sanitize_for_docx`.
    """
    clean_html = f'<html><head><meta charset="utf-8"></head><body>{html_content}</body></html>'
    logger.info("Generating Word document from %d bytes of HTML...", len(clean_html.encode("utf-8")))

    doc = Document()
    _apply_base_styles(doc)
    doc.core_properties.title = title or "Document"

    parser = SafeHtmlToDocx()
    parser.table_style = "Table Grid"
    parser.add_html_to_document(clean_html, doc)

    for table in doc.tables:
        table.style = "Table Grid"

    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()
