"""Configuration helpers for the ChatArbor knowledge service."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import TYPE_CHECKING, Final

from dotenv import load_dotenv

if TYPE_CHECKING:  # pragma: no cover
    from .observability import MetricsRecorder

load_dotenv()

_DEFAULT_CHAT_BACKEND: Final[str] = "openai"
_DEFAULT_OPENAI_CHAT_MODEL: Final[str] = "gpt-4o-mini"
_DEFAULT_EMBEDDING_MODEL: Final[str] = "text-embedding-3-small"
_DEFAULT_EMBEDDING_DIMENSION: Final[int] = 768
_DEFAULT_MODEL_TIMEOUT: Final[float] = 60.0
_DEFAULT_OLLAMA_URL: Final[str] = "http://localhost:11434"
_DEFAULT_OLLAMA_MODEL: Final[str] = "llama3.1:8b"
_DEFAULT_CHROMA_TENANT: Final[str] = "default_tenant"
_DEFAULT_CHROMA_DATABASE: Final[str] = "default_database"
_DEFAULT_CHROMA_COLLECTION: Final[str] = "knowledge_sources"
_DEFAULT_CHROMA_TIMEOUT: Final[float] = 10.0
_DEFAULT_CHUNK_SIZE: Final[int] = 1000
_DEFAULT_CHUNK_OVERLAP: Final[int] = 200
_DEFAULT_INGEST_BATCH_SIZE: Final[int] = 5
_MIN_INGEST_BATCH_SIZE: Final[int] = 5
_MAX_INGEST_BATCH_SIZE: Final[int] = 50
_DEFAULT_INGEST_CONCURRENCY: Final[int] = 4
_DEFAULT_RETRIEVAL_TOP_K: Final[int] = 5
_DEFAULT_RETRIEVAL_MIN_SIMILARITY: Final[float] = 0.5
_DEFAULT_KEYWORD_SCORE_SCALE: Final[float] = 10.0
_DEFAULT_CONTEXT_MAX_SOURCES: Final[int] = 4
_DEFAULT_CONTEXT_MAX_CHARS: Final[int] = 6000
_DEFAULT_CONTEXT_SOURCE_MAX_CHARS: Final[int] = 1200
_DEFAULT_SCRAPE_TIMEOUT: Final[float] = 30.0
_DEFAULT_ROBOTS_TIMEOUT: Final[float] = 5.0
_DEFAULT_SCRAPE_MIN_CHARS: Final[int] = 100
_DEFAULT_SCRAPE_MAX_CHARS: Final[int] = 50_000
_DEFAULT_SCRAPE_MAX_BYTES: Final[int] = 5 * 1024 * 1024
_DEFAULT_UPLOAD_MAX_BYTES: Final[int] = 20 * 1024 * 1024
_DEFAULT_SCRAPE_MAX_REDIRECTS: Final[int] = 3
_DEFAULT_SCRAPE_USER_AGENT: Final[str] = "ChatArbor-Bot/1.0 (+https://chatarbor.com/bot)"
_DEFAULT_ROBOTS_AGENT: Final[str] = "ChatArbor-Bot"
_DEFAULT_SYSTEM_PROMPT: Final[str] = "You are a helpful assistant."
_DEFAULT_CHAT_TEMPERATURE: Final[float] = 0.2
_DEFAULT_CHAT_MAX_TOKENS: Final[int] = 1024
_DEFAULT_DATA_DIR: Final[str] = "data"


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_optional_float(name: str) -> float | None:
    """Read an optional float environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_int(name: str, default: int) -> int:
    value = _env_optional_int(name)
    return default if value is None else value


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    value = _env_optional_float(name)
    return default if value is None else value


def _env_bool(name: str, default: bool) -> bool:
    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


def clamp_batch_size(value: int) -> int:
    """Keep bulk batches inside the range providers tolerate."""

    return min(max(value, _MIN_INGEST_BATCH_SIZE), _MAX_INGEST_BATCH_SIZE)


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    openai_api_key: str | None = None
    chat_backend: str = _DEFAULT_CHAT_BACKEND
    openai_chat_model: str = _DEFAULT_OPENAI_CHAT_MODEL
    embedding_model: str = _DEFAULT_EMBEDDING_MODEL
    embedding_dimension: int = _DEFAULT_EMBEDDING_DIMENSION
    model_timeout: float = _DEFAULT_MODEL_TIMEOUT
    ollama_base_url: str = _DEFAULT_OLLAMA_URL
    ollama_model: str = _DEFAULT_OLLAMA_MODEL
    chroma_url: str = ""
    chroma_auth_token: str | None = None
    chroma_tenant: str = _DEFAULT_CHROMA_TENANT
    chroma_database: str = _DEFAULT_CHROMA_DATABASE
    chroma_collection: str = _DEFAULT_CHROMA_COLLECTION
    chroma_timeout: float = _DEFAULT_CHROMA_TIMEOUT
    chunk_size: int = _DEFAULT_CHUNK_SIZE
    chunk_overlap: int = _DEFAULT_CHUNK_OVERLAP
    ingest_batch_size: int = _DEFAULT_INGEST_BATCH_SIZE
    ingest_concurrency: int = _DEFAULT_INGEST_CONCURRENCY
    retrieval_top_k: int = _DEFAULT_RETRIEVAL_TOP_K
    retrieval_min_similarity: float = _DEFAULT_RETRIEVAL_MIN_SIMILARITY
    keyword_score_scale: float = _DEFAULT_KEYWORD_SCORE_SCALE
    context_max_sources: int = _DEFAULT_CONTEXT_MAX_SOURCES
    context_max_chars: int = _DEFAULT_CONTEXT_MAX_CHARS
    context_source_max_chars: int = _DEFAULT_CONTEXT_SOURCE_MAX_CHARS
    scrape_timeout: float = _DEFAULT_SCRAPE_TIMEOUT
    robots_timeout: float = _DEFAULT_ROBOTS_TIMEOUT
    scrape_min_chars: int = _DEFAULT_SCRAPE_MIN_CHARS
    scrape_max_chars: int = _DEFAULT_SCRAPE_MAX_CHARS
    scrape_max_bytes: int = _DEFAULT_SCRAPE_MAX_BYTES
    upload_max_bytes: int = _DEFAULT_UPLOAD_MAX_BYTES
    scrape_max_redirects: int = _DEFAULT_SCRAPE_MAX_REDIRECTS
    scrape_user_agent: str = _DEFAULT_SCRAPE_USER_AGENT
    robots_agent: str = _DEFAULT_ROBOTS_AGENT
    scrape_respect_robots: bool = True
    system_prompt: str = _DEFAULT_SYSTEM_PROMPT
    chat_temperature: float = _DEFAULT_CHAT_TEMPERATURE
    chat_max_tokens: int | None = _DEFAULT_CHAT_MAX_TOKENS
    data_dir: str = _DEFAULT_DATA_DIR
    observability_metrics_enabled: bool = True
    observability_namespace: str = "chatarbor"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            chat_backend=os.getenv("CHAT_BACKEND", _DEFAULT_CHAT_BACKEND),
            openai_chat_model=os.getenv("OPENAI_CHAT_MODEL", _DEFAULT_OPENAI_CHAT_MODEL),
            embedding_model=os.getenv("EMBEDDING_MODEL", _DEFAULT_EMBEDDING_MODEL),
            embedding_dimension=_env_int("EMBEDDING_DIMENSION", _DEFAULT_EMBEDDING_DIMENSION),
            model_timeout=_env_float("MODEL_TIMEOUT", _DEFAULT_MODEL_TIMEOUT),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", _DEFAULT_OLLAMA_URL),
            ollama_model=os.getenv("OLLAMA_MODEL", _DEFAULT_OLLAMA_MODEL),
            chroma_url=os.getenv("CHROMA_URL", "").strip(),
            chroma_auth_token=os.getenv("CHROMA_AUTH_TOKEN") or None,
            chroma_tenant=os.getenv("CHROMA_TENANT", _DEFAULT_CHROMA_TENANT),
            chroma_database=os.getenv("CHROMA_DATABASE", _DEFAULT_CHROMA_DATABASE),
            chroma_collection=os.getenv("CHROMA_COLLECTION", _DEFAULT_CHROMA_COLLECTION),
            chroma_timeout=_env_float("CHROMA_TIMEOUT", _DEFAULT_CHROMA_TIMEOUT),
            chunk_size=max(1, _env_int("CHUNK_SIZE", _DEFAULT_CHUNK_SIZE)),
            chunk_overlap=max(0, _env_int("CHUNK_OVERLAP", _DEFAULT_CHUNK_OVERLAP)),
            ingest_batch_size=clamp_batch_size(_env_int("INGEST_BATCH_SIZE", _DEFAULT_INGEST_BATCH_SIZE)),
            ingest_concurrency=max(1, _env_int("INGEST_CONCURRENCY", _DEFAULT_INGEST_CONCURRENCY)),
            retrieval_top_k=max(1, _env_int("RETRIEVAL_TOP_K", _DEFAULT_RETRIEVAL_TOP_K)),
            retrieval_min_similarity=_env_float(
                "RETRIEVAL_MIN_SIMILARITY", _DEFAULT_RETRIEVAL_MIN_SIMILARITY
            ),
            keyword_score_scale=_env_float("KEYWORD_SCORE_SCALE", _DEFAULT_KEYWORD_SCORE_SCALE),
            context_max_sources=max(1, _env_int("CONTEXT_MAX_SOURCES", _DEFAULT_CONTEXT_MAX_SOURCES)),
            context_max_chars=max(1, _env_int("CONTEXT_MAX_CHARS", _DEFAULT_CONTEXT_MAX_CHARS)),
            context_source_max_chars=max(
                1, _env_int("CONTEXT_SOURCE_MAX_CHARS", _DEFAULT_CONTEXT_SOURCE_MAX_CHARS)
            ),
            scrape_timeout=_env_float("SCRAPE_TIMEOUT", _DEFAULT_SCRAPE_TIMEOUT),
            robots_timeout=_env_float("ROBOTS_TIMEOUT", _DEFAULT_ROBOTS_TIMEOUT),
            scrape_min_chars=_env_int("SCRAPE_MIN_CHARS", _DEFAULT_SCRAPE_MIN_CHARS),
            scrape_max_chars=_env_int("SCRAPE_MAX_CHARS", _DEFAULT_SCRAPE_MAX_CHARS),
            scrape_max_bytes=_env_int("SCRAPE_MAX_BYTES", _DEFAULT_SCRAPE_MAX_BYTES),
            upload_max_bytes=max(1, _env_int("UPLOAD_MAX_BYTES", _DEFAULT_UPLOAD_MAX_BYTES)),
            scrape_max_redirects=max(0, _env_int("SCRAPE_MAX_REDIRECTS", _DEFAULT_SCRAPE_MAX_REDIRECTS)),
            scrape_user_agent=os.getenv("SCRAPE_USER_AGENT", _DEFAULT_SCRAPE_USER_AGENT),
            scrape_respect_robots=_env_bool("SCRAPE_RESPECT_ROBOTS", True),
            system_prompt=os.getenv("SYSTEM_PROMPT", _DEFAULT_SYSTEM_PROMPT),
            chat_temperature=_env_float("CHAT_TEMPERATURE", _DEFAULT_CHAT_TEMPERATURE),
            chat_max_tokens=_env_optional_int("CHAT_MAX_TOKENS") or _DEFAULT_CHAT_MAX_TOKENS,
            data_dir=os.getenv("DATA_DIR", _DEFAULT_DATA_DIR),
            observability_metrics_enabled=_env_bool("OBSERVABILITY_METRICS_ENABLED", True),
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "chatarbor"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def vector_store_enabled(self) -> bool:
        """Return True when a vector database URL is configured."""

        return bool(self.chroma_url.strip())

    @property
    def is_ollama_embedding_backend(self) -> bool:
        """Return True when embeddings should be generated via an Ollama-hosted model."""

        return self.embedding_model.strip().lower().startswith("ollama:")

    @property
    def ollama_embedding_model(self) -> str | None:
        if not self.is_ollama_embedding_backend:
            return None
        _, _, name = self.embedding_model.partition(":")
        return name.strip() or None

    @property
    def is_openai_embedding_backend(self) -> bool:
        return not self.is_ollama_embedding_backend and bool(self.openai_api_key)

    @property
    def embeddings_configured(self) -> bool:
        """Return True when a real embedding provider is available."""

        return self.is_ollama_embedding_backend or self.is_openai_embedding_backend

    @property
    def is_openai_chat_backend(self) -> bool:
        return self.chat_backend.strip().lower() == "openai"

    @property
    def is_ollama_chat_backend(self) -> bool:
        return self.chat_backend.strip().lower() == "ollama"

    def chroma_headers(self) -> dict[str, str]:
        """Headers sent with every vector database request."""

        headers = {"Content-Type": "application/json"}
        if self.chroma_auth_token:
            headers["Authorization"] = f"Bearer {self.chroma_auth_token}"
        return headers

    def source_store_path(self) -> Path:
        return Path(self.data_dir).resolve() / "knowledge_sources.json"

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )


__all__ = ["Settings", "clamp_batch_size"]
