"""Error taxonomy shared by the ingestion, retrieval and chat layers."""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Coarse classification used for logging and HTTP mapping."""

    VALIDATION = "validation"
    SECURITY = "security"
    UPSTREAM = "upstream"
    CONTENT = "content"


class KnowledgeBaseError(Exception):
    """Base class for errors raised by the knowledge pipeline."""

    category: ErrorCategory = ErrorCategory.VALIDATION

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class ValidationError(KnowledgeBaseError):
    """Malformed input rejected before any network or storage call."""

    category = ErrorCategory.VALIDATION


class SecurityRejection(KnowledgeBaseError):
    """Input refused because it looks like an attack (SSRF, robots, injection).

    The detailed message is for the audit log only; clients always receive the
    generic ``user_message``.
    """

    category = ErrorCategory.SECURITY
    USER_MESSAGE = "Blocked by security policy"

    def __init__(self, message: str) -> None:
        super().__init__(message, user_message=self.USER_MESSAGE)


class UpstreamUnavailable(KnowledgeBaseError):
    """An embedding, model or vector-store provider is unreachable or unconfigured."""

    category = ErrorCategory.UPSTREAM


class ContentError(KnowledgeBaseError):
    """Extracted content is unusable (empty, too short, too long)."""

    category = ErrorCategory.CONTENT


class SourceNotFound(KnowledgeBaseError):
    """No knowledge source exists with the requested id."""

    category = ErrorCategory.VALIDATION


__all__ = [
    "ErrorCategory",
    "KnowledgeBaseError",
    "ValidationError",
    "SecurityRejection",
    "UpstreamUnavailable",
    "ContentError",
    "SourceNotFound",
]
