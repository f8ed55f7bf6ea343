"""Chroma vector store client speaking the tenant/database/collection REST API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Mapping, Sequence
from urllib.parse import quote

import httpx

from .config import Settings
from .embeddings import EmbeddingService
from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

MetadataValue = str | int | float | bool


@dataclass(slots=True)
class VectorItem:
    """Document to be written to the collection."""

    id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: List[float] | None = None


@dataclass(slots=True)
class QueryMatch:
    """Nearest-neighbour hit returned from a similarity query."""

    id: str
    distance: float | None
    metadata: dict[str, Any] | None = None
    document: str | None = None

    @property
    def similarity(self) -> float:
        return distance_to_similarity(self.distance)


@dataclass(slots=True, frozen=True)
class CollectionRef:
    tenant: str
    database: str
    id: str


def distance_to_similarity(distance: float | None) -> float:
    """Convert a cosine distance into a similarity clamped to ``[0, 1]``."""

    if distance is None:
        return 0.0
    return max(0.0, min(1.0, 1.0 - float(distance)))


class CollectionResolver:
    """Once-initialised, resettable lazy value holding the working collection.

    Concurrent first callers share a single resolution; ``reset`` drops the
    cached value so the next caller resolves again.
    """

    def __init__(self, loader: Callable[[], Awaitable[CollectionRef]] | None = None) -> None:
        self._loader = loader
        self._value: CollectionRef | None = None
        self._lock = asyncio.Lock()

    def bind(self, loader: Callable[[], Awaitable[CollectionRef]]) -> None:
        if self._loader is None:
            self._loader = loader

    @property
    def resolved(self) -> CollectionRef | None:
        return self._value

    async def get(self) -> CollectionRef:
        if self._value is not None:
            return self._value
        async with self._lock:
            if self._value is None:
                if self._loader is None:
                    raise RuntimeError("CollectionResolver has no loader bound")
                self._value = await self._loader()
            return self._value

    def reset(self) -> None:
        self._value = None


class ChromaVectorStore:
    """High-level wrapper around the Chroma v2 HTTP API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        embeddings: EmbeddingService,
        *,
        tenant: str = "default_tenant",
        database: str = "default_database",
        collection_name: str = "knowledge_sources",
        resolver: CollectionResolver | None = None,
    ) -> None:
        self._client = client
        self._embeddings = embeddings
        self._tenant = tenant
        self._database = database
        self._collection_name = collection_name
        self._resolver = resolver or CollectionResolver()
        self._resolver.bind(self._discover_collection)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        embeddings: EmbeddingService,
        *,
        resolver: CollectionResolver | None = None,
    ) -> "ChromaVectorStore":
        """Instantiate the store using application settings."""

        client = httpx.AsyncClient(
            base_url=settings.chroma_url.rstrip("/"),
            headers=settings.chroma_headers(),
            timeout=settings.chroma_timeout,
        )
        return cls(
            client,
            embeddings,
            tenant=settings.chroma_tenant,
            database=settings.chroma_database,
            collection_name=settings.chroma_collection,
            resolver=resolver,
        )

    @property
    def collection_name(self) -> str:
        return self._collection_name

    @property
    def resolver(self) -> CollectionResolver:
        return self._resolver

    async def aclose(self) -> None:
        await self._client.aclose()

    async def resolve_collection(self) -> CollectionRef:
        """Return the memoised working collection, discovering or creating it once."""

        return await self._resolver.get()

    async def heartbeat(self) -> bool:
        try:
            await self._request("GET", "/api/v2/heartbeat")
        except UpstreamUnavailable as exc:
            logger.warning("vector_store.heartbeat_failed error=%s", exc)
            return False
        return True

    async def upsert(self, items: Sequence[VectorItem]) -> List[List[float]]:
        """Embed items lacking a vector and write them in a single batched call."""

        if not items:
            return []

        missing = [index for index, item in enumerate(items) if not item.embedding]
        computed = await self._embeddings.embed_many([items[index].text for index in missing])
        vectors: List[List[float]] = [list(item.embedding or []) for item in items]
        for index, vector in zip(missing, computed):
            vectors[index] = vector

        await self._collection_request(
            "/upsert",
            {
                "ids": [item.id for item in items],
                "documents": [item.text for item in items],
                "metadatas": [_clean_metadata(item.metadata) for item in items],
                "embeddings": vectors,
            },
        )
        logger.debug("vector_store.upsert collection=%s count=%s", self._collection_name, len(items))
        return vectors

    async def delete(self, ids: Sequence[str]) -> None:
        """Remove vectors by id; unknown ids are ignored."""

        if not ids:
            return
        await self._collection_request("/delete", {"ids": list(ids)})

    async def delete_where(self, where: Mapping[str, MetadataValue]) -> None:
        """Remove every vector whose metadata matches ``where``."""

        await self._collection_request("/delete", {"where": dict(where)})

    async def get(self, ids: Sequence[str]) -> List[str]:
        """Return the subset of ``ids`` that are present in the collection."""

        if not ids:
            return []
        data = await self._collection_request("/get", {"ids": list(ids), "include": ["metadatas"]})
        found = data.get("ids") if isinstance(data, dict) else None
        return [str(item) for item in found or []]

    async def source_ids(self) -> set[str]:
        """Return the ``source_id`` of every vector currently in the collection."""

        data = await self._collection_request("/get", {"include": ["metadatas"]})
        metadatas = data.get("metadatas") if isinstance(data, dict) else None
        return {
            str(metadata["source_id"])
            for metadata in metadatas or []
            if isinstance(metadata, dict) and metadata.get("source_id")
        }

    async def query(self, text: str, top_k: int = 5) -> List[QueryMatch]:
        """Embed ``text`` and return up to ``top_k`` nearest neighbours."""

        embedding = await self._embeddings.embed(text)
        data = await self._collection_request(
            "/query",
            {
                "query_embeddings": [embedding],
                "n_results": max(1, top_k),
                "include": ["distances", "metadatas", "documents"],
            },
        )
        ids = _first_row(data, "ids")
        distances = _first_row(data, "distances")
        metadatas = _first_row(data, "metadatas")
        documents = _first_row(data, "documents")
        matches: List[QueryMatch] = []
        for index, item_id in enumerate(ids):
            matches.append(
                QueryMatch(
                    id=str(item_id),
                    distance=distances[index] if index < len(distances) else None,
                    metadata=metadatas[index] if index < len(metadatas) else None,
                    document=documents[index] if index < len(documents) else None,
                )
            )
        return matches

    # Internal helpers -------------------------------------------------

    def _collections_path(self, tenant: str, database: str) -> str:
        return f"/api/v2/tenants/{quote(tenant, safe='')}/databases/{quote(database, safe='')}/collections"

    async def _discover_collection(self) -> CollectionRef:
        path = self._collections_path(self._tenant, self._database)
        try:
            listing = await self._request("GET", path)
        except UpstreamUnavailable as exc:
            logger.warning("vector_store.list_failed collection=%s error=%s", self._collection_name, exc)
            listing = None

        collections = listing if isinstance(listing, list) else (listing or {}).get("collections") or []
        for entry in collections:
            if isinstance(entry, dict) and entry.get("name") == self._collection_name and entry.get("id"):
                return self._to_ref(entry)

        # get_or_create makes a racing duplicate creation a no-op.
        created = await self._request(
            "POST",
            path,
            json={"name": self._collection_name, "get_or_create": True},
        )
        if isinstance(created, dict) and created.get("id"):
            logger.info(
                "vector_store.collection_ready collection=%s id=%s",
                self._collection_name,
                created["id"],
            )
            return self._to_ref(created)
        raise UpstreamUnavailable("Unable to obtain Chroma collection id")

    def _to_ref(self, entry: Mapping[str, Any]) -> CollectionRef:
        return CollectionRef(
            tenant=str(entry.get("tenant") or self._tenant),
            database=str(entry.get("database") or self._database),
            id=str(entry["id"]),
        )

    async def _collection_request(self, suffix: str, body: dict[str, Any]) -> Any:
        ref = await self.resolve_collection()
        path = f"{self._collections_path(ref.tenant, ref.database)}/{quote(ref.id, safe='')}{suffix}"
        try:
            return await self._request("POST", path, json=body)
        except UpstreamUnavailable as exc:
            if isinstance(exc.__cause__, httpx.HTTPStatusError) and exc.__cause__.response.status_code == 404:
                # Collection vanished underneath us; rediscover on next call.
                self._resolver.reset()
            raise

    async def _request(self, method: str, path: str, *, json: Any = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:200]
            raise UpstreamUnavailable(
                f"Chroma request failed {exc.response.status_code}: {detail}",
                user_message="Vector store unavailable",
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(
                f"Chroma request failed: {exc}",
                user_message="Vector store unavailable",
            ) from exc

        if "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return None


def _clean_metadata(metadata: Mapping[str, Any]) -> dict[str, MetadataValue]:
    return {
        key: value
        for key, value in metadata.items()
        if isinstance(value, (str, int, float, bool))
    }


def _first_row(data: Any, key: str) -> list[Any]:
    if not isinstance(data, dict):
        return []
    rows = data.get(key)
    if isinstance(rows, list) and rows and isinstance(rows[0], list):
        return rows[0]
    return []


__all__ = [
    "ChromaVectorStore",
    "CollectionRef",
    "CollectionResolver",
    "QueryMatch",
    "VectorItem",
    "distance_to_similarity",
]
