"""ChatArbor knowledge base and retrieval-augmented chat service."""

from __future__ import annotations

from .config import Settings
from .models import KnowledgeSource, RetrievalResult, ScrapeResult, SourceType
from .vector_store import ChromaVectorStore, QueryMatch, VectorItem

__all__ = [
    "Settings",
    "EmbeddingService",
    "EmbeddingBackend",
    "ChromaVectorStore",
    "KnowledgeSource",
    "QueryMatch",
    "RetrievalResult",
    "ScrapeResult",
    "SourceType",
    "VectorItem",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name in {"EmbeddingService", "EmbeddingBackend"}:
        from .embeddings import EmbeddingBackend, EmbeddingService

        return {"EmbeddingService": EmbeddingService, "EmbeddingBackend": EmbeddingBackend}[name]
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'chatarbor' has no attribute {name}")
