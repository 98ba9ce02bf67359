from __future__ import annotations

import pytest

from mdconvert_backend.filenames import content_disposition, derive_output_filename


@pytest.mark.parametrize(
    "filename, extension, expected",
    [
        ("notes.md", "pdf", "notes.pdf"),
        ("Notes.MARKDOWN", "docx", "Notes.docx"),
        ("readme.txt", "pdf", "readme.pdf"),
        ("report", "pdf", "report.pdf"),
        ("archive.tar.md", "docx", "archive.tar.docx"),
        ("../../etc/passwd.md", "pdf", "passwd.pdf"),
        ("C:\\Users\\me\\draft.md", "docx", "draft.docx"),
        ("", "pdf", "document.pdf"),
        (None, "docx", "document.docx"),
        (".md", "pdf", "document.pdf"),
    ],
)
def test_derive_output_filename(filename, extension: str, expected: str) -> None:
    assert derive_output_filename(filename, extension) == expected


def test_content_disposition_ascii() -> None:
    assert content_disposition("notes.pdf") == "attachment; filename=\"notes.pdf\"; filename*=UTF-8''notes.pdf"


def test_content_disposition_non_ascii_has_fallback_and_encoded_form() -> None:
    header = content_disposition("résumé.docx")
    assert 'filename="r-sum-.docx"' in header
    assert "filename*=UTF-8''r%C3%A9sum%C3%A9.docx" in header
    header.encode("latin-1")


def test_content_disposition_quotes_and_backslashes() -> None:
    header = content_disposition('a"b\\c.pdf')
    assert 'filename="a-b-c.pdf"' in header
    assert "filename*=UTF-8''a%22b%5Cc.pdf" in header
