"""Embedding service supporting OpenAI, Ollama and a deterministic simulated backend."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Sequence
from enum import Enum, auto
from typing import Final, List, Protocol

import httpx
from openai import APIError, AsyncOpenAI

from .config import Settings
from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

DEFAULT_DIMENSION: Final[int] = 768
_SEED_MODULUS: Final[int] = 1_000_000
_LCG_MULTIPLIER: Final[int] = 9301
_LCG_INCREMENT: Final[int] = 49297
_LCG_MODULUS: Final[int] = 233280


class EmbeddingBackend(Enum):
    """Supported embedding backends."""

    OPENAI = auto()
    OLLAMA = auto()
    SIMULATED = auto()


class EmbeddingProvider(Protocol):
    backend: EmbeddingBackend
    dimension: int

    async def embed(self, text: str) -> List[float]: ...

    async def aclose(self) -> None: ...


def simulated_embedding(text: str, dimension: int = DEFAULT_DIMENSION) -> List[float]:
    """Return a deterministic pseudo-random unit vector seeded from ``text``.

    The seed folds each character code weighted by its position; a linear
    congruential generator then fills the vector with values in ``[-1, 1)``
    before L2 normalisation.
    """

    seed = 0
    for index, char in enumerate(text):
        seed = (seed + ord(char) * (index + 1)) % _SEED_MODULUS

    state = seed
    vector: List[float] = []
    for _ in range(dimension):
        state = (state * _LCG_MULTIPLIER + _LCG_INCREMENT) % _LCG_MODULUS
        vector.append(state / _LCG_MODULUS * 2 - 1)

    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return vector
    return [value / norm for value in vector]


class SimulatedEmbeddingProvider:
    """Offline stand-in used when no embedding provider is configured."""

    backend = EmbeddingBackend.SIMULATED

    def __init__(self, dimension: int = DEFAULT_DIMENSION) -> None:
        self.dimension = dimension

    async def embed(self, text: str) -> List[float]:
        return simulated_embedding(text, self.dimension)

    async def aclose(self) -> None:
        return None


class OpenAIEmbeddingProvider:
    backend = EmbeddingBackend.OPENAI

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        dimension: int = DEFAULT_DIMENSION,
        timeout: float = 60.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if not api_key and client is None:
            msg = "OPENAI_API_KEY must be set when using the OpenAI embedding backend."
            raise ValueError(msg)
        self.dimension = dimension
        self._model = model
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)

    async def embed(self, text: str) -> List[float]:
        try:
            result = await self._client.embeddings.create(
                model=self._model,
                input=[text],
                dimensions=self.dimension,
            )
        except APIError as exc:
            raise UpstreamUnavailable(
                f"OpenAI embedding request failed: {exc}",
                user_message="Embedding provider unavailable",
            ) from exc
        return [float(value) for value in result.data[0].embedding]

    async def aclose(self) -> None:
        await self._client.close()


class OllamaEmbeddingProvider:
    backend = EmbeddingBackend.OLLAMA

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        dimension: int = DEFAULT_DIMENSION,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.dimension = dimension
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def embed(self, text: str) -> List[float]:
        # Build a fully-qualified URL to preserve any base path prefix.
        url = f"{self._base_url}/api/embeddings"
        payload = {"model": self._model, "prompt": text}
        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(
                f"Ollama embedding request failed: {exc}",
                user_message="Embedding provider unavailable",
            ) from exc

        embedding = response.json().get("embedding")
        if embedding is None:
            raise UpstreamUnavailable("Ollama embedding response did not include an 'embedding' field.")
        vector = [float(value) for value in embedding]
        if len(vector) != self.dimension:
            msg = f"Ollama embedding dimension {len(vector)} does not match configured {self.dimension}."
            raise UpstreamUnavailable(msg)
        return vector

    async def aclose(self) -> None:
        await self._client.aclose()


def build_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Select the embedding strategy once, at startup."""

    if settings.is_ollama_embedding_backend:
        model = settings.ollama_embedding_model
        if not model:
            raise ValueError("EMBEDDING_MODEL must name a model after the 'ollama:' prefix.")
        return OllamaEmbeddingProvider(
            base_url=settings.ollama_base_url,
            model=model,
            dimension=settings.embedding_dimension,
            timeout=settings.model_timeout,
        )
    if settings.is_openai_embedding_backend:
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key or "",
            model=settings.embedding_model,
            dimension=settings.embedding_dimension,
            timeout=settings.model_timeout,
        )
    logger.warning(
        "embedding.simulated reason=no_provider_configured dimension=%s",
        settings.embedding_dimension,
    )
    return SimulatedEmbeddingProvider(settings.embedding_dimension)


class EmbeddingService:
    """High-level interface for embedding generation with bounded concurrency."""

    def __init__(self, provider: EmbeddingProvider, *, concurrency: int = 4) -> None:
        self._provider = provider
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingService":
        return cls(build_embedding_provider(settings), concurrency=settings.ingest_concurrency)

    @property
    def backend(self) -> EmbeddingBackend:
        """Return the active backend type."""

        return self._provider.backend

    @property
    def dimension(self) -> int:
        return self._provider.dimension

    @property
    def simulated(self) -> bool:
        return self._provider.backend is EmbeddingBackend.SIMULATED

    async def embed(self, text: str) -> List[float]:
        """Generate an embedding for a single piece of text."""

        async with self._semaphore:
            return await self._provider.embed(text)

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed ``texts`` concurrently, preserving input order."""

        if not texts:
            return []
        return list(await asyncio.gather(*(self.embed(text) for text in texts)))

    async def aclose(self) -> None:
        """Release any underlying client resources."""

        await self._provider.aclose()


__all__ = [
    "DEFAULT_DIMENSION",
    "EmbeddingBackend",
    "EmbeddingProvider",
    "EmbeddingService",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "SimulatedEmbeddingProvider",
    "build_embedding_provider",
    "simulated_embedding",
]
