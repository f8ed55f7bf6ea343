"""Best-effort text extraction for uploaded knowledge files."""

from __future__ import annotations

import io
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

from bs4 import BeautifulSoup
from docx import Document as DocxDocument
from pypdf import PdfReader

from .errors import ContentError

logger = logging.getLogger(__name__)

_TITLE_MAX_CHARS = 160


@dataclass(slots=True)
class ExtractedDocument:
    text: str
    title: str | None
    content_type: str | None


def extract_text(filename: str, data: bytes, content_type: str | None = None) -> ExtractedDocument:
    """Reduce an uploaded file to UTF-8 text.

    PDF and DOCX files go through their parsers, HTML is stripped with
    BeautifulSoup and anything else is decoded as UTF-8 with undecodable bytes
    dropped. Raises ``ContentError`` when nothing usable remains.
    """

    suffix = Path(filename).suffix.lower()
    guessed_type = content_type or mimetypes.guess_type(filename)[0]

    if suffix == ".pdf":
        document = _extract_pdf(data, guessed_type)
    elif suffix == ".docx":
        document = _extract_docx(data)
    elif suffix in {".html", ".htm"} or (guessed_type and "html" in guessed_type):
        document = _extract_html(data)
    elif suffix in {".md", ".markdown"}:
        text = data.decode("utf-8", errors="ignore")
        document = ExtractedDocument(
            text=text,
            title=_derive_markdown_title(text),
            content_type=guessed_type or "text/markdown",
        )
    else:
        text = data.decode("utf-8", errors="ignore")
        document = ExtractedDocument(
            text=text,
            title=_derive_plain_title(text),
            content_type=guessed_type or "text/plain",
        )

    document.text = document.text.strip()
    if not document.text:
        raise ContentError(f"No extractable text in {filename}")
    logger.debug(
        "extraction.completed filename=%s content_type=%s chars=%s",
        filename,
        document.content_type,
        len(document.text),
    )
    return document


# Internal helpers ---------------------------------------------------------


def _extract_pdf(data: bytes, guessed_type: str | None) -> ExtractedDocument:
    try:
        reader = PdfReader(io.BytesIO(data))
        texts = [page.extract_text() or "" for page in reader.pages]
    except Exception as exc:
        raise ContentError(f"Failed to extract text from PDF: {exc}") from exc
    metadata = reader.metadata
    metadata_title = metadata.title if metadata is not None and metadata.title else None
    combined = "\n\n".join(filter(None, texts))
    return ExtractedDocument(
        text=combined,
        title=metadata_title or _derive_plain_title(combined),
        content_type=guessed_type or "application/pdf",
    )


def _extract_docx(data: bytes) -> ExtractedDocument:
    try:
        document = DocxDocument(io.BytesIO(data))
    except Exception as exc:
        raise ContentError(f"Failed to extract text from DOCX: {exc}") from exc
    paragraphs = [paragraph.text.strip() for paragraph in document.paragraphs if paragraph.text.strip()]
    text = "\n\n".join(paragraphs)
    core_title = document.core_properties.title or None
    base_title = core_title or (paragraphs[0] if paragraphs else None)
    return ExtractedDocument(
        text=text,
        title=base_title.strip()[:_TITLE_MAX_CHARS] if base_title else None,
        content_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    )


def _extract_html(data: bytes) -> ExtractedDocument:
    soup = BeautifulSoup(data, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.extract()
    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip()
    text = soup.get_text(separator="\n")
    return ExtractedDocument(
        text=text,
        title=title or _derive_plain_title(text),
        content_type="text/html",
    )


def _derive_markdown_title(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("#"):
            return stripped.lstrip("#").strip()[:_TITLE_MAX_CHARS] or None
        return stripped[:_TITLE_MAX_CHARS]
    return None


def _derive_plain_title(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped[:_TITLE_MAX_CHARS]
    return None


__all__ = ["ExtractedDocument", "extract_text"]
