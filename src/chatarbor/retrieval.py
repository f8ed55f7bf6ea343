"""Ranking strategies turning a query into ``RetrievalResult`` lists."""

from __future__ import annotations

import logging
import re
from typing import List, Protocol

from .config import Settings
from .errors import UpstreamUnavailable
from .models import KnowledgeSource, RetrievalResult
from .sources import SourceRepository
from .vector_store import ChromaVectorStore

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_MIN_KEYWORD_LENGTH = 3
_TITLE_WEIGHT = 2
# Chunks are ranked individually; fetch extra so several sources can surface.
_CHUNK_OVERSAMPLE = 4


class Retriever(Protocol):
    name: str

    async def search(self, query: str, *, top_k: int | None = None) -> List[RetrievalResult]: ...


def extract_keywords(query: str) -> List[str]:
    """Lower-cased query words of at least three characters, in query order."""

    return [token for token in _TOKEN_RE.findall(query.lower()) if len(token) >= _MIN_KEYWORD_LENGTH]


def keyword_similarity(
    source: KnowledgeSource,
    keywords: List[str],
    *,
    scale: float = 10.0,
) -> float:
    """Score keyword overlap: content hits plus double-weighted title hits.

    The sum is divided by the keyword count and ``scale`` and clamped to 1.
    """

    if not keywords:
        return 0.0
    content = source.text.lower()
    title = source.display_title.lower()
    score = 0
    for keyword in keywords:
        score += content.count(keyword) + title.count(keyword) * _TITLE_WEIGHT
    if score <= 0:
        return 0.0
    return min(score / len(keywords) / max(scale, 1e-9), 1.0)


class KeywordRetriever:
    """Vector-free ranking used when no vector index is configured or reachable."""

    name = "keyword"

    def __init__(self, repository: SourceRepository, *, top_k: int = 5, scale: float = 10.0) -> None:
        self._repository = repository
        self._top_k = top_k
        self._scale = scale

    async def search(self, query: str, *, top_k: int | None = None) -> List[RetrievalResult]:
        keywords = extract_keywords(query)
        if not keywords:
            return []
        limit = top_k or self._top_k
        results = []
        for source in self._repository.list():
            similarity = keyword_similarity(source, keywords, scale=self._scale)
            if similarity > 0:
                results.append(RetrievalResult(source=source, similarity=similarity))
        results.sort(key=lambda item: item.similarity, reverse=True)
        return results[:limit]


class VectorRetriever:
    """Nearest-neighbour ranking over chunk embeddings, aggregated per source."""

    name = "vector"

    def __init__(
        self,
        store: ChromaVectorStore,
        repository: SourceRepository,
        *,
        top_k: int = 5,
        min_similarity: float = 0.5,
    ) -> None:
        self._store = store
        self._repository = repository
        self._top_k = top_k
        self._min_similarity = min_similarity

    async def search(self, query: str, *, top_k: int | None = None) -> List[RetrievalResult]:
        limit = top_k or self._top_k
        matches = await self._store.query(query, top_k=limit * _CHUNK_OVERSAMPLE)

        best: dict[str, RetrievalResult] = {}
        for match in matches:
            similarity = match.similarity
            if similarity < self._min_similarity:
                continue
            source_id = _source_id_for(match.id, match.metadata)
            current = best.get(source_id)
            if current is not None and current.similarity >= similarity:
                continue
            source = current.source if current is not None else self._repository.get(source_id)
            if source is None:
                logger.debug("retrieval.orphan_vector id=%s", match.id)
                continue
            best[source_id] = RetrievalResult(source=source, similarity=similarity, passage=match.document)

        ranked = sorted(best.values(), key=lambda item: item.similarity, reverse=True)
        return ranked[:limit]


class FallbackRetriever:
    """Use the vector index, degrading to keyword scoring when it is unreachable."""

    def __init__(self, primary: VectorRetriever, fallback: KeywordRetriever) -> None:
        self._primary = primary
        self._fallback = fallback
        self.name = primary.name

    async def search(self, query: str, *, top_k: int | None = None) -> List[RetrievalResult]:
        try:
            return await self._primary.search(query, top_k=top_k)
        except UpstreamUnavailable as exc:
            logger.warning("retrieval.fallback strategy=%s error=%s", self._fallback.name, exc)
            return await self._fallback.search(query, top_k=top_k)


def build_retriever(
    settings: Settings,
    repository: SourceRepository,
    store: ChromaVectorStore | None,
) -> Retriever:
    """Pick the ranking strategy once, based on configuration."""

    keyword = KeywordRetriever(
        repository,
        top_k=settings.retrieval_top_k,
        scale=settings.keyword_score_scale,
    )
    if store is None:
        return keyword
    vector = VectorRetriever(
        store,
        repository,
        top_k=settings.retrieval_top_k,
        min_similarity=settings.retrieval_min_similarity,
    )
    return FallbackRetriever(vector, keyword)


def _source_id_for(chunk_id: str, metadata: dict | None) -> str:
    if metadata and metadata.get("source_id"):
        return str(metadata["source_id"])
    head, sep, _ = chunk_id.rpartition(":")
    return head if sep else chunk_id


__all__ = [
    "FallbackRetriever",
    "KeywordRetriever",
    "Retriever",
    "VectorRetriever",
    "build_retriever",
    "extract_keywords",
    "keyword_similarity",
]
