from __future__ import annotations

import pytest

from mdconvert_backend.markdown_render import is_dangerous_url, render_markdown, scrub_dangerous_urls


def test_script_and_event_handlers_are_removed() -> None:
    html = render_markdown("# T\n\n<script>alert(1)</script>\n\n<img src=x onerror=alert(2)>")

    assert "<h1>T</h1>" in html
    assert "<script" not in html
    assert "onerror" not in html
    assert "alert" not in html


def test_style_and_iframe_content_is_dropped() -> None:
    html = render_markdown('<style>body{display:none}</style>\n\n<iframe src="https://evil.example"></iframe>\n\nok')
    assert "display:none" not in html
    assert "iframe" not in html
    assert "ok" in html


def test_javascript_links_lose_their_href() -> None:
    html = render_markdown("[click](javascript:alert(1))")
    assert "javascript" not in html
    assert "click" in html


def test_markdown_features_render() -> None:
    html = render_markdown("## Table\n\n| a | b |\n|---|---|\n| 1 | 2 |\n\n- one\n- two\n\n`code`")
    assert "<h2>Table</h2>" in html
    assert "<table>" in html
    assert "<li>one</li>" in html
    assert "<code>code</code>" in html


def test_remote_image_reference_is_kept_for_the_proxy() -> None:
    html = render_markdown("![logo](https://cdn.example.com/logo.png)")
    assert 'src="https://cdn.example.com/logo.png"' in html
    assert 'alt="logo"' in html


@pytest.mark.parametrize(
    "value",
    [
        "javascript:alert(1)",
        "  JavaScript:alert(1)",
        "java\tscript:alert(1)",
        "vbscript:msgbox",
        "file:///etc/passwd",
        "data:text/html;base64,PHNjcmlwdD4=",
        "DATA:application/pdf,xyz",
    ],
)
def test_dangerous_urls(value: str) -> None:
    assert is_dangerous_url(value) is True


@pytest.mark.parametrize(
    "value",
    ["https://example.com/a.png", "mailto:someone@example.com", "data:image/png;base64,AAAA", "/relative", "#anchor"],
)
def test_harmless_urls(value: str) -> None:
    assert is_dangerous_url(value) is False


def test_scrub_removes_dangerous_attributes_only() -> None:
    html = (
        '<a href="  JaVa&#x09;Script:alert(1)">a</a>'
        '<a href="https://example.com">b</a>'
        '<img src="data:text/html;base64,PHNjcmlwdD4=">'
        '<img src="data:image/png;base64,AAAA">'
        '<img src="file:///etc/passwd">'
    )

    scrubbed = scrub_dangerous_urls(html)

    assert "Script:" not in scrubbed
    assert "data:text/html" not in scrubbed
    assert "file:" not in scrubbed
    assert 'href="https://example.com"' in scrubbed
    assert 'src="data:image/png;base64,AAAA"' in scrubbed


def test_scrub_returns_input_when_nothing_to_remove() -> None:
    html = '<p><a href="https://example.com">ok</a></p>'
    assert scrub_dangerous_urls(html) is html
