"""Domain objects for knowledge sources, chunks and retrieval results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Union
from uuid import uuid4

from .errors import ErrorCategory, ValidationError

_TITLE_MAX_CHARS = 160


class SourceType(str, Enum):
    """Kinds of operator-submitted knowledge."""

    TEXT = "text"
    URL = "url"
    FILE = "file"

    @classmethod
    def parse(cls, raw: Any) -> "SourceType":
        value = str(raw or "").strip().lower()
        for member in cls:
            if member.value == value:
                return member
        raise ValidationError(f"Unsupported source type: {raw!r}")


class SourceStatus(str, Enum):
    """Indexing state of a knowledge source."""

    CREATED = "created"
    INDEXED = "indexed"
    UNINDEXED = "unindexed"


def _first_line(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped:
            return stripped[:_TITLE_MAX_CHARS]
    return None


@dataclass(slots=True, frozen=True)
class TextContent:
    """Pasted text; the body is the indexable text."""

    body: str
    source_type = SourceType.TEXT

    @property
    def label(self) -> str:
        return self.body

    @property
    def indexable_text(self) -> str:
        return self.body

    def default_title(self) -> str | None:
        return _first_line(self.body)


@dataclass(slots=True, frozen=True)
class UrlContent:
    """A scraped web page; the original URL is kept as the label."""

    url: str
    body: str
    source_type = SourceType.URL

    @property
    def label(self) -> str:
        return self.url

    @property
    def indexable_text(self) -> str:
        return self.body or self.url

    def default_title(self) -> str | None:
        return self.url[:_TITLE_MAX_CHARS] or _first_line(self.body)


@dataclass(slots=True, frozen=True)
class FileContent:
    """An uploaded file reduced to its extracted text."""

    filename: str
    body: str
    source_type = SourceType.FILE

    @property
    def label(self) -> str:
        return self.filename

    @property
    def indexable_text(self) -> str:
        return self.body or self.filename

    def default_title(self) -> str | None:
        return self.filename[:_TITLE_MAX_CHARS] or _first_line(self.body)


SourceContent = Union[TextContent, UrlContent, FileContent]


def content_from_payload(payload: Mapping[str, Any]) -> SourceContent:
    """Build a content variant from the ingestion API shape ``{type, content, data?}``."""

    source_type = SourceType.parse(payload.get("type"))
    label = str(payload.get("content") or "").strip()
    data = payload.get("data")
    body = str(data).strip() if data is not None else ""

    if source_type is SourceType.TEXT:
        text = body or label
        if not text:
            raise ValidationError("Text sources require non-empty content")
        return TextContent(body=text)
    if source_type is SourceType.URL:
        if not label:
            raise ValidationError("URL sources require the original URL as content")
        if not body:
            raise ValidationError("URL sources require scraped text in data; scrape the URL first")
        return UrlContent(url=label, body=body)
    if not label:
        raise ValidationError("File sources require a filename as content")
    if not body:
        raise ValidationError("File sources require extracted text in data")
    return FileContent(filename=label, body=body)


@dataclass(slots=True)
class KnowledgeSource:
    """An operator-submitted unit of knowledge."""

    id: str
    content: SourceContent
    created_at: str
    chunk_count: int = 0
    status: SourceStatus = SourceStatus.CREATED
    title: str | None = None

    @classmethod
    def create(
        cls,
        content: SourceContent,
        *,
        source_id: str | None = None,
        title: str | None = None,
    ) -> "KnowledgeSource":
        return cls(
            id=source_id or uuid4().hex,
            content=content,
            created_at=datetime.now(timezone.utc).isoformat(),
            title=(title or "").strip()[:_TITLE_MAX_CHARS] or None,
        )

    @property
    def source_type(self) -> SourceType:
        return self.content.source_type

    @property
    def label(self) -> str:
        return self.content.label

    @property
    def text(self) -> str:
        return self.content.indexable_text

    @property
    def display_title(self) -> str:
        return self.title or self.content.default_title() or ""

    def to_dict(self) -> dict[str, Any]:
        body = getattr(self.content, "body", None)
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.source_type.value,
            "content": self.label,
            "createdAt": self.created_at,
            "chunkCount": self.chunk_count,
            "status": self.status.value,
            "title": self.title,
            "displayTitle": self.display_title,
        }
        if self.source_type is not SourceType.TEXT and body:
            payload["data"] = body
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "KnowledgeSource":
        return cls(
            id=str(payload["id"]),
            content=content_from_payload(payload),
            created_at=str(payload.get("createdAt") or ""),
            chunk_count=int(payload.get("chunkCount") or 0),
            status=SourceStatus(payload.get("status") or SourceStatus.CREATED.value),
            title=payload.get("title") or None,
        )


@dataclass(slots=True, frozen=True)
class Chunk:
    """Immutable slice of a source's text; the unit stored in the vector index."""

    source_id: str
    ordinal: int
    total_chunks: int
    text: str

    @property
    def id(self) -> str:
        return chunk_id(self.source_id, self.ordinal)


def chunk_id(source_id: str, ordinal: int) -> str:
    return f"{source_id}:{ordinal}"


@dataclass(slots=True)
class RetrievalResult:
    """A ranked source returned from a search; never persisted."""

    source: KnowledgeSource
    similarity: float
    passage: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source.to_dict(), "similarity": round(self.similarity, 6)}


class ScrapeFailure(str, Enum):
    """Reasons a URL scrape can fail, each tied to an error category."""

    INVALID_URL = "invalid_url"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    BLOCKED_HOST = "blocked_host"
    PRIVATE_ADDRESS = "private_address"
    DNS_FAILURE = "dns_failure"
    ROBOTS_DISALLOWED = "robots_disallowed"
    TIMEOUT = "timeout"
    FETCH_FAILED = "fetch_failed"
    HTTP_STATUS = "http_status"
    UNSUPPORTED_CONTENT_TYPE = "unsupported_content_type"
    RESPONSE_TOO_LARGE = "response_too_large"
    NO_CONTENT = "no_content"
    CONTENT_TOO_SHORT = "content_too_short"
    CONTENT_TOO_LONG = "content_too_long"
    INJECTION_DETECTED = "injection_detected"

    @property
    def category(self) -> ErrorCategory:
        return _SCRAPE_FAILURE_CATEGORIES[self]


_SCRAPE_FAILURE_CATEGORIES: dict[ScrapeFailure, ErrorCategory] = {
    ScrapeFailure.INVALID_URL: ErrorCategory.VALIDATION,
    ScrapeFailure.UNSUPPORTED_SCHEME: ErrorCategory.VALIDATION,
    ScrapeFailure.BLOCKED_HOST: ErrorCategory.SECURITY,
    ScrapeFailure.PRIVATE_ADDRESS: ErrorCategory.SECURITY,
    ScrapeFailure.DNS_FAILURE: ErrorCategory.UPSTREAM,
    ScrapeFailure.ROBOTS_DISALLOWED: ErrorCategory.SECURITY,
    ScrapeFailure.TIMEOUT: ErrorCategory.UPSTREAM,
    ScrapeFailure.FETCH_FAILED: ErrorCategory.UPSTREAM,
    ScrapeFailure.HTTP_STATUS: ErrorCategory.UPSTREAM,
    ScrapeFailure.UNSUPPORTED_CONTENT_TYPE: ErrorCategory.VALIDATION,
    ScrapeFailure.RESPONSE_TOO_LARGE: ErrorCategory.CONTENT,
    ScrapeFailure.NO_CONTENT: ErrorCategory.CONTENT,
    ScrapeFailure.CONTENT_TOO_SHORT: ErrorCategory.CONTENT,
    ScrapeFailure.CONTENT_TOO_LONG: ErrorCategory.CONTENT,
    ScrapeFailure.INJECTION_DETECTED: ErrorCategory.SECURITY,
}


@dataclass(slots=True)
class ScrapeResult:
    """Transient outcome of a URL scrape."""

    success: bool
    content: str | None = None
    title: str | None = None
    failure: ScrapeFailure | None = None
    message: str | None = None

    @classmethod
    def ok(cls, content: str, *, title: str | None = None) -> "ScrapeResult":
        return cls(success=True, content=content, title=title)

    @classmethod
    def failed(cls, failure: ScrapeFailure, message: str) -> "ScrapeResult":
        return cls(success=False, failure=failure, message=message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.success:
            payload["content"] = self.content
            if self.title:
                payload["title"] = self.title
        else:
            payload["reason"] = self.failure.value if self.failure else None
            payload["category"] = self.failure.category.value if self.failure else None
            payload["message"] = self.message
        return payload


class IngestOutcome(str, Enum):
    """Per-item result of an ingestion or reindex call."""

    INDEXED = "indexed"
    PERSISTED_WITHOUT_VECTORS = "persisted_without_vectors"
    FAILED = "failed"


@dataclass(slots=True)
class IngestResult:
    id: str
    outcome: IngestOutcome
    chunk_count: int = 0
    reason: str | None = None
    source: KnowledgeSource | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "outcome": self.outcome.value,
            "chunkCount": self.chunk_count,
        }
        if self.reason:
            payload["reason"] = self.reason
        return payload


__all__ = [
    "SourceType",
    "SourceStatus",
    "TextContent",
    "UrlContent",
    "FileContent",
    "SourceContent",
    "content_from_payload",
    "KnowledgeSource",
    "Chunk",
    "chunk_id",
    "RetrievalResult",
    "ScrapeFailure",
    "ScrapeResult",
    "IngestOutcome",
    "IngestResult",
]
