from __future__ import annotations

import io

import pytest
from docx import Document

from chatarbor.errors import ContentError
from chatarbor.extraction import extract_text


def test_markdown_title_comes_from_heading():
    document = extract_text("guide.md", b"\n# Interview Guide\n\nBe on time.\n")

    assert document.title == "Interview Guide"
    assert document.text == "# Interview Guide\n\nBe on time."


def test_plain_text_ignores_undecodable_bytes():
    document = extract_text("notes.txt", b"First line\xff\nSecond line")

    assert document.text == "First line\nSecond line"
    assert document.title == "First line"


def test_html_is_stripped_of_scripts():
    html = b"<html><head><title>Benefits</title><script>var x = 1;</script></head><body><p>Health cover</p></body></html>"

    document = extract_text("benefits.html", html)

    assert document.title == "Benefits"
    assert "Health cover" in document.text
    assert "var x" not in document.text


def test_docx_paragraphs_are_joined():
    buffer = io.BytesIO()
    docx = Document()
    docx.core_properties.title = ""
    docx.add_paragraph("Offer letters")
    docx.add_paragraph("")
    docx.add_paragraph("Read every clause.")
    docx.save(buffer)

    document = extract_text("offer.docx", buffer.getvalue())

    assert document.text == "Offer letters\n\nRead every clause."
    assert document.title == "Offer letters"


@pytest.mark.parametrize(
    "filename, data",
    [
        ("empty.txt", b"  \n  "),
        ("broken.pdf", b"definitely not a pdf"),
        ("broken.docx", b"not a zip archive"),
    ],
)
def test_unusable_files_raise_content_error(filename: str, data: bytes):
    with pytest.raises(ContentError):
        extract_text(filename, data)
