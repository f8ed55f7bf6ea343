from __future__ import annotations

import hashlib
import json
import math
import re
from typing import Any, AsyncGenerator, Sequence

import httpx
import pytest

from chatarbor.config import Settings
from chatarbor.embeddings import EmbeddingBackend, EmbeddingService
from chatarbor.llm import ChatMessage, ModelChunk, TokenUsage
from chatarbor.sources import InMemorySourceRepository
from chatarbor.vector_store import ChromaVectorStore

_TOKEN_RE = re.compile(r"\w+")
_COLLECTION_RE = re.compile(
    r"^/api/v2/tenants/(?P<tenant>[^/]+)/databases/(?P<database>[^/]+)/collections(?:/(?P<id>[^/]+)(?P<op>/\w+))?$"
)


class HashingEmbeddingProvider:
    """Bag-of-words embedder: shared words mean a smaller cosine distance."""

    backend = EmbeddingBackend.SIMULATED

    def __init__(self, dimension: int = 512) -> None:
        self.dimension = dimension
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        vector = [0.0] * self.dimension
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).hexdigest()
            vector[int(digest, 16) % self.dimension] += 1.0
        norm = math.sqrt(sum(value * value for value in vector))
        return [value / norm for value in vector] if norm else vector

    async def aclose(self) -> None:
        return None


class FakeChroma:
    """In-memory stand-in for the Chroma v2 REST API, served via MockTransport."""

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, Any]] = {}
        self.records: dict[str, dict[str, dict[str, Any]]] = {}
        self.requests: list[tuple[str, str]] = []
        self.fail = False
        self.created = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url="http://chroma.test", transport=self.transport())

    def add_collection(self, name: str, collection_id: str = "existing-id") -> None:
        self.collections[collection_id] = {
            "id": collection_id,
            "name": name,
            "tenant": "default_tenant",
            "database": "default_database",
        }
        self.records.setdefault(collection_id, {})

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if self.fail:
            return httpx.Response(500, json={"error": "unavailable"})
        if request.url.path == "/api/v2/heartbeat":
            return httpx.Response(200, json={"nanosecond heartbeat": 1})

        match = _COLLECTION_RE.match(request.url.path)
        if match is None:
            return httpx.Response(404, json={"error": "not found"})
        body = json.loads(request.content) if request.content else {}

        if match.group("id") is None:
            if request.method == "GET":
                return httpx.Response(200, json=list(self.collections.values()))
            for entry in self.collections.values():
                if entry["name"] == body["name"]:
                    return httpx.Response(200, json=entry)
            self.created += 1
            collection_id = f"col-{self.created}"
            self.add_collection(body["name"], collection_id)
            return httpx.Response(200, json=self.collections[collection_id])

        collection_id = match.group("id")
        if collection_id not in self.collections:
            return httpx.Response(404, json={"error": "collection not found"})
        records = self.records[collection_id]
        op = match.group("op")

        if op == "/upsert":
            for index, item_id in enumerate(body["ids"]):
                records[item_id] = {
                    "document": body["documents"][index],
                    "metadata": body["metadatas"][index],
                    "embedding": body["embeddings"][index],
                }
            return httpx.Response(200, json=True)
        if op == "/delete":
            if "ids" in body:
                doomed = [item_id for item_id in body["ids"] if item_id in records]
            else:
                where = body.get("where") or {}
                doomed = [
                    item_id
                    for item_id, record in records.items()
                    if all(record["metadata"].get(key) == value for key, value in where.items())
                ]
            for item_id in doomed:
                del records[item_id]
            return httpx.Response(200, json=doomed)
        if op == "/get":
            wanted = body.get("ids")
            found = [item_id for item_id in (records if wanted is None else wanted) if item_id in records]
            return httpx.Response(
                200, json={"ids": found, "metadatas": [records[item_id]["metadata"] for item_id in found]}
            )
        if op == "/query":
            query = body["query_embeddings"][0]
            scored = sorted(
                ((1.0 - _dot(query, record["embedding"]), item_id) for item_id, record in records.items()),
            )[: body["n_results"]]
            return httpx.Response(
                200,
                json={
                    "ids": [[item_id for _, item_id in scored]],
                    "distances": [[distance for distance, _ in scored]],
                    "metadatas": [[records[item_id]["metadata"] for _, item_id in scored]],
                    "documents": [[records[item_id]["document"] for _, item_id in scored]],
                },
            )
        return httpx.Response(404, json={"error": "unknown operation"})

    def stored_ids(self) -> list[str]:
        return sorted(item_id for records in self.records.values() for item_id in records)


def _dot(left: Sequence[float], right: Sequence[float]) -> float:
    return sum(a * b for a, b in zip(left, right))


class FakeChatModel:
    """Scripted streaming model that records what it was asked and whether it was closed."""

    name = "fake"

    def __init__(
        self,
        chunks: Sequence[str] = ("Hello", ", ", "world"),
        *,
        usage: TokenUsage | None = None,
        fail_after: int | None = None,
    ) -> None:
        self.chunks = list(chunks)
        self.usage = usage if usage is not None else TokenUsage(12, 3, 15)
        self.fail_after = fail_after
        self.messages: list[ChatMessage] = []
        self.system_instruction: str | None = None
        self.emitted = 0
        self.stream_closed = False
        self.client_closed = False

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        system_instruction: str | None = None,
    ) -> AsyncGenerator[ModelChunk, None]:
        self.messages = list(messages)
        self.system_instruction = system_instruction
        try:
            for index, text in enumerate(self.chunks):
                if self.fail_after is not None and index >= self.fail_after:
                    raise RuntimeError("model connection reset")
                self.emitted += 1
                yield ModelChunk(text=text)
            yield ModelChunk(usage=self.usage)
        finally:
            self.stream_closed = True

    async def aclose(self) -> None:
        self.client_closed = True


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=str(tmp_path),
        retrieval_min_similarity=0.2,
        observability_metrics_enabled=False,
    )


@pytest.fixture()
def repository() -> InMemorySourceRepository:
    return InMemorySourceRepository()


@pytest.fixture()
def embedder() -> HashingEmbeddingProvider:
    return HashingEmbeddingProvider()


@pytest.fixture()
def embedding_service(embedder: HashingEmbeddingProvider) -> EmbeddingService:
    return EmbeddingService(embedder, concurrency=2)


@pytest.fixture()
def fake_chroma() -> FakeChroma:
    return FakeChroma()


@pytest.fixture()
def vector_store(fake_chroma: FakeChroma, embedding_service: EmbeddingService) -> ChromaVectorStore:
    return ChromaVectorStore(fake_chroma.client(), embedding_service)
