"""Knowledge base orchestration: ingest, edit, delete, reindex and search sources."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Sequence

from .chunker import build_chunks
from .config import Settings, clamp_batch_size
from .errors import KnowledgeBaseError, SourceNotFound, UpstreamUnavailable, ValidationError
from .models import (
    IngestOutcome,
    IngestResult,
    KnowledgeSource,
    RetrievalResult,
    SourceStatus,
    content_from_payload,
)
from .observability import MetricsRecorder
from .retrieval import Retriever
from .sources import SourceRepository
from .vector_store import ChromaVectorStore, VectorItem

logger = logging.getLogger(__name__)

_VECTOR_STORE_DISABLED = "vector store disabled"


class KnowledgeService:
    """Compose chunking, embedding and the vector index around a source repository.

    Source records are always persisted before indexing so content survives a
    vector-store outage; such sources are marked ``unindexed`` with a zero
    chunk count until a later reindex succeeds.
    """

    def __init__(
        self,
        repository: SourceRepository,
        retriever: Retriever,
        *,
        store: ChromaVectorStore | None = None,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        batch_size: int = 5,
        concurrency: int = 4,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._repository = repository
        self._retriever = retriever
        self._store = store
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._batch_size = clamp_batch_size(batch_size)
        self._concurrency = max(1, concurrency)
        self._metrics = metrics or MetricsRecorder(enabled=False)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: SourceRepository,
        retriever: Retriever,
        *,
        store: ChromaVectorStore | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> "KnowledgeService":
        return cls(
            repository,
            retriever,
            store=store,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            batch_size=settings.ingest_batch_size,
            concurrency=settings.ingest_concurrency,
            metrics=metrics,
        )

    @property
    def vector_store_enabled(self) -> bool:
        return self._store is not None

    @property
    def retrieval_strategy(self) -> str:
        return self._retriever.name

    @property
    def batch_size(self) -> int:
        return self._batch_size

    # Reads ---------------------------------------------------------------

    def list(self) -> List[KnowledgeSource]:
        return self._repository.list()

    def get(self, source_id: str) -> KnowledgeSource:
        source = self._repository.get(source_id)
        if source is None:
            raise SourceNotFound(f"Knowledge source {source_id} not found")
        return source

    # Writes --------------------------------------------------------------

    async def add(self, payload: Mapping[str, Any]) -> IngestResult:
        """Persist one source, then chunk, embed and index it."""

        source = _source_from_payload(payload)
        replacing = self._repository.get(source.id) is not None
        self._repository.save(source)
        result = await self._index(source, replace_existing=replacing)
        self._repository.save(result.source or source)
        self._record_outcomes([result], operation="add")
        return result

    async def add_bulk(self, payloads: Sequence[Mapping[str, Any]]) -> List[IngestResult]:
        """Ingest many sources in sequential batches with bounded parallelism per batch.

        Invalid items and indexing failures are reported per item and never
        abort their siblings or already committed batches.
        """

        results: List[IngestResult] = []
        started = time.perf_counter()
        for offset in range(0, len(payloads), self._batch_size):
            batch = payloads[offset : offset + self._batch_size]
            results.extend(await self._ingest_batch(batch, offset))
        self._metrics.record_timing("knowledge.bulk_duration", time.perf_counter() - started, items=len(payloads))
        self._record_outcomes(results, operation="bulk")
        return results

    async def update(self, source_id: str, payload: Mapping[str, Any]) -> IngestResult:
        """Replace a source's content and rebuild its chunks from scratch."""

        existing = self.get(source_id)
        merged = dict(payload)
        merged.setdefault("type", existing.source_type.value)
        content = content_from_payload(merged)
        title = str(payload.get("title") or "").strip() or existing.title
        updated = KnowledgeSource(
            id=existing.id,
            content=content,
            created_at=existing.created_at,
            title=title,
        )
        self._repository.save(updated)
        result = await self._index(updated, replace_existing=True)
        self._repository.save(result.source or updated)
        self._record_outcomes([result], operation="update")
        return result

    async def remove(self, source_id: str) -> None:
        """Delete a source record and, best effort, every vector derived from it."""

        if not self._repository.delete(source_id):
            raise SourceNotFound(f"Knowledge source {source_id} not found")
        if self._store is None:
            return
        try:
            await self._store.delete_where({"source_id": source_id})
        except UpstreamUnavailable as exc:
            logger.warning("knowledge.remove.vectors_failed id=%s error=%s", source_id, exc)
            self._metrics.increment("knowledge.vector_cleanup_failures")
        else:
            logger.info("knowledge.removed id=%s", source_id)

    async def reindex(self) -> List[IngestResult]:
        """Recompute chunks and replace the vectors of every stored source.

        Vectors whose source record no longer exists, for example because a
        delete ran during a vector-store outage, are purged first.
        """

        sources = self._repository.list()
        results: List[IngestResult] = []
        with self._metrics.track_timing("knowledge.reindex_duration", sources=len(sources)):
            await self._purge_orphaned_vectors({source.id for source in sources})
            for offset in range(0, len(sources), self._batch_size):
                batch = sources[offset : offset + self._batch_size]
                batch_results = await self._gather_bounded(
                    [self._index(source, replace_existing=True) for source in batch]
                )
                self._repository.save_many(result.source for result in batch_results if result.source)
                results.extend(batch_results)
        logger.info(
            "knowledge.reindexed sources=%s indexed=%s",
            len(sources),
            sum(1 for result in results if result.outcome is IngestOutcome.INDEXED),
        )
        self._record_outcomes(results, operation="reindex")
        return results

    async def search(self, query: str, *, top_k: int | None = None) -> List[RetrievalResult]:
        text = (query or "").strip()
        if not text:
            raise ValidationError("Query must not be empty")
        with self._metrics.track_timing("knowledge.search_duration", strategy=self._retriever.name):
            results = await self._retriever.search(text, top_k=top_k)
        logger.debug("knowledge.search strategy=%s hits=%s", self._retriever.name, len(results))
        return results

    # Internal helpers -------------------------------------------------

    async def _purge_orphaned_vectors(self, known_ids: set[str]) -> None:
        if self._store is None:
            return
        try:
            orphaned = sorted(await self._store.source_ids() - known_ids)
            for source_id in orphaned:
                await self._store.delete_where({"source_id": source_id})
        except UpstreamUnavailable as exc:
            logger.warning("knowledge.reindex.orphan_purge_failed error=%s", exc)
            self._metrics.increment("knowledge.vector_cleanup_failures")
            return
        if orphaned:
            logger.info("knowledge.reindex.orphans_purged count=%s ids=%s", len(orphaned), ",".join(orphaned))

    async def _ingest_batch(self, batch: Sequence[Mapping[str, Any]], offset: int) -> List[IngestResult]:
        prepared: list[tuple[KnowledgeSource, bool] | IngestResult] = []
        for index, payload in enumerate(batch):
            try:
                source = _source_from_payload(payload)
            except KnowledgeBaseError as exc:
                raw_id = payload.get("id") if isinstance(payload, Mapping) else None
                item_id = str(raw_id or f"item-{offset + index}")
                logger.info("knowledge.bulk.invalid id=%s error=%s", item_id, exc)
                prepared.append(IngestResult(id=item_id, outcome=IngestOutcome.FAILED, reason=exc.user_message))
                continue
            prepared.append((source, self._repository.get(source.id) is not None))

        to_index = [item for item in prepared if isinstance(item, tuple)]
        self._repository.save_many(source for source, _ in to_index)
        indexed = iter(
            await self._gather_bounded([self._index(source, replace_existing=replacing) for source, replacing in to_index])
        )
        results = [item if isinstance(item, IngestResult) else next(indexed) for item in prepared]
        self._repository.save_many(result.source for result in results if result.source)
        return results

    async def _gather_bounded(self, jobs: Iterable[Any]) -> List[IngestResult]:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _run(job: Any) -> IngestResult:
            async with semaphore:
                return await job

        return list(await asyncio.gather(*(_run(job) for job in jobs)))

    async def _index(self, source: KnowledgeSource, *, replace_existing: bool) -> IngestResult:
        if self._store is None:
            unindexed = _with_status(source, SourceStatus.UNINDEXED, 0)
            return IngestResult(
                id=source.id,
                outcome=IngestOutcome.PERSISTED_WITHOUT_VECTORS,
                reason=_VECTOR_STORE_DISABLED,
                source=unindexed,
            )

        chunks = build_chunks(
            source.id,
            source.text,
            chunk_size=self._chunk_size,
            chunk_overlap=self._chunk_overlap,
        )
        items = [
            VectorItem(
                id=chunk.id,
                text=chunk.text,
                metadata={
                    "source_id": source.id,
                    "ordinal": chunk.ordinal,
                    "total_chunks": chunk.total_chunks,
                    "type": source.source_type.value,
                    "title": source.display_title,
                    "created_at": source.created_at,
                },
            )
            for chunk in chunks
        ]
        try:
            if replace_existing:
                await self._store.delete_where({"source_id": source.id})
            await self._store.upsert(items)
        except UpstreamUnavailable as exc:
            logger.warning("knowledge.index_failed id=%s chunks=%s error=%s", source.id, len(items), exc)
            return IngestResult(
                id=source.id,
                outcome=IngestOutcome.PERSISTED_WITHOUT_VECTORS,
                reason=exc.user_message,
                source=_with_status(source, SourceStatus.UNINDEXED, 0),
            )
        except Exception as exc:
            logger.exception("knowledge.index_error id=%s", source.id)
            return IngestResult(
                id=source.id,
                outcome=IngestOutcome.FAILED,
                reason=str(exc) or exc.__class__.__name__,
                source=_with_status(source, SourceStatus.UNINDEXED, 0),
            )

        logger.info("knowledge.indexed id=%s type=%s chunks=%s", source.id, source.source_type.value, len(items))
        return IngestResult(
            id=source.id,
            outcome=IngestOutcome.INDEXED,
            chunk_count=len(items),
            source=_with_status(source, SourceStatus.INDEXED, len(items)),
        )

    def _record_outcomes(self, results: Sequence[IngestResult], *, operation: str) -> None:
        for outcome in IngestOutcome:
            count = sum(1 for result in results if result.outcome is outcome)
            if count:
                self._metrics.increment("knowledge.ingest", value=count, operation=operation, outcome=outcome.value)


def _source_from_payload(payload: Mapping[str, Any]) -> KnowledgeSource:
    if not isinstance(payload, Mapping):
        raise ValidationError("Each knowledge item must be an object")
    content = content_from_payload(payload)
    source_id = str(payload.get("id") or "").strip() or None
    return KnowledgeSource.create(content, source_id=source_id, title=str(payload.get("title") or ""))


def _with_status(source: KnowledgeSource, status: SourceStatus, chunk_count: int) -> KnowledgeSource:
    return replace(source, status=status, chunk_count=chunk_count)


__all__ = ["KnowledgeService"]
