"""Retrieval-augmented chat orchestration with streamed model output."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Iterable, List, Mapping, Sequence

from .config import Settings
from .errors import KnowledgeBaseError
from .knowledge import KnowledgeService
from .llm import ChatMessage, ChatModel, TokenUsage
from .models import RetrievalResult
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

ELLIPSIS = "…"
SOURCE_SEPARATOR = "\n\n---\n\n"
NO_SOURCES_FOUND = "No relevant knowledge base entries were found."
NO_CONTEXT = "No additional context provided."
STREAM_FAILED = "Streaming failed"

_CONTEXT_TEMPLATE = (
    "Use the following pieces of context to answer the user's question.\n"
    'If the context contains specific instructions or "Pro Tips", you MUST follow them.\n'
    "If the answer is not in the context, say you don't know, but do not ignore the context if it is relevant.\n"
    "\n"
    "Context:\n"
    "{context}\n"
    "\n"
    "Question: {question}"
)

_ASSISTANT_ROLES = {"assistant", "model"}


@dataclass(slots=True)
class StreamEvent:
    """One server-pushed event: a text chunk, the terminal ``done`` or a single ``error``."""

    kind: str
    text: str = ""
    usage: TokenUsage | None = None
    error: str | None = None
    full_text: str = field(default="", repr=False)

    @classmethod
    def chunk(cls, text: str) -> "StreamEvent":
        return cls(kind="chunk", text=text)

    @classmethod
    def done(cls, usage: TokenUsage, full_text: str) -> "StreamEvent":
        return cls(kind="done", usage=usage, full_text=full_text)

    @classmethod
    def failure(cls, message: str) -> "StreamEvent":
        return cls(kind="error", error=message)

    def to_dict(self) -> dict[str, Any]:
        if self.kind == "chunk":
            return {"chunk": self.text}
        if self.kind == "done":
            return {"done": True, "usageMetadata": (self.usage or TokenUsage()).to_dict()}
        return {"error": self.error or STREAM_FAILED}


def truncate(text: str, limit: int) -> str:
    if not text:
        return ""
    return f"{text[:limit]}{ELLIPSIS}" if len(text) > limit else text


def format_context(
    results: Sequence[RetrievalResult],
    *,
    max_sources: int = 4,
    max_chars: int = 6000,
    source_max_chars: int = 1200,
) -> str:
    """Render ranked sources into the bounded block injected into the prompt."""

    if not results:
        return NO_SOURCES_FOUND
    sections = []
    for index, result in enumerate(results[:max_sources], start=1):
        body = result.passage or result.source.text
        header = (
            f"Source {index} ({result.source.source_type.value.upper()}"
            f" | similarity {result.similarity * 100:.1f}%)"
        )
        sections.append(f"{header}\n{truncate(body, source_max_chars)}".strip())
    return truncate(SOURCE_SEPARATOR.join(sections), max_chars)


def normalize_history(history: Iterable[Mapping[str, Any]] | None) -> List[ChatMessage]:
    """Accept ``{role, content}`` or ``{role, parts: [{text}]}`` turns; drop empty ones."""

    messages: List[ChatMessage] = []
    for entry in history or []:
        if not isinstance(entry, Mapping):
            continue
        role = "assistant" if str(entry.get("role") or "").lower() in _ASSISTANT_ROLES else "user"
        content = entry.get("content")
        if not isinstance(content, str):
            parts = entry.get("parts")
            texts = [
                str(part.get("text"))
                for part in parts or []
                if isinstance(part, Mapping) and part.get("text")
            ] if isinstance(parts, list) else []
            content = "".join(texts)
        if content.strip():
            messages.append(ChatMessage(role=role, content=content))
    return messages


class ChatOrchestrator:
    """Assemble context, history and the question into one streamed model call."""

    def __init__(
        self,
        knowledge: KnowledgeService,
        model: ChatModel,
        *,
        system_prompt: str = "You are a helpful assistant.",
        max_sources: int = 4,
        max_chars: int = 6000,
        source_max_chars: int = 1200,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._knowledge = knowledge
        self._model = model
        self._system_prompt = system_prompt
        self._max_sources = max_sources
        self._max_chars = max_chars
        self._source_max_chars = source_max_chars
        self._metrics = metrics or MetricsRecorder(enabled=False)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        knowledge: KnowledgeService,
        model: ChatModel,
        *,
        metrics: MetricsRecorder | None = None,
    ) -> "ChatOrchestrator":
        return cls(
            knowledge,
            model,
            system_prompt=settings.system_prompt,
            max_sources=settings.context_max_sources,
            max_chars=settings.context_max_chars,
            source_max_chars=settings.context_source_max_chars,
            metrics=metrics,
        )

    def format_context(self, results: Sequence[RetrievalResult]) -> str:
        return format_context(
            results,
            max_sources=self._max_sources,
            max_chars=self._max_chars,
            source_max_chars=self._source_max_chars,
        )

    def build_messages(
        self,
        message: str,
        history: Iterable[Mapping[str, Any]] | None,
        context: str,
    ) -> List[ChatMessage]:
        turns = normalize_history(history)
        # Clients often echo the pending question as the last history turn.
        if turns and turns[-1].role == "user" and turns[-1].content.strip() == message.strip():
            turns = turns[:-1]
        final = _CONTEXT_TEMPLATE.format(context=context.strip() or NO_CONTEXT, question=message)
        return [*turns, ChatMessage(role="user", content=final)]

    async def retrieve_context(self, message: str) -> str:
        try:
            results = await self._knowledge.search(message)
        except KnowledgeBaseError as exc:
            logger.warning("chat.context.unavailable error=%s", exc)
            return ""
        return self.format_context(results)

    async def stream(
        self,
        message: str,
        history: Iterable[Mapping[str, Any]] | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Yield chunk events as the model produces them, then one terminal event.

        Closing this generator early stops forwarding and closes the upstream
        model stream. Text already yielded is never retracted.
        """

        started = time.perf_counter()
        parts: List[str] = []
        usage: TokenUsage | None = None
        finished = False
        self._metrics.increment("chat.stream_requests", backend=self._model.name)
        try:
            context = await self.retrieve_context(message)
            messages = self.build_messages(message, history, context)
            model_stream = self._model.stream(messages, system_instruction=self._system_prompt)
            try:
                async for piece in model_stream:
                    if piece.usage is not None:
                        usage = piece.usage
                    if piece.text:
                        parts.append(piece.text)
                        yield StreamEvent.chunk(piece.text)
            finally:
                await model_stream.aclose()
            finished = True
        except KnowledgeBaseError as exc:
            finished = True
            logger.error("chat.stream.error backend=%s error=%s", self._model.name, exc)
            self._metrics.increment("chat.stream_errors", backend=self._model.name)
            yield StreamEvent.failure(exc.user_message)
            return
        except Exception:
            finished = True
            logger.exception("chat.stream.unexpected_error backend=%s", self._model.name)
            self._metrics.increment("chat.stream_errors", backend=self._model.name)
            yield StreamEvent.failure(STREAM_FAILED)
            return
        finally:
            if not finished:
                logger.info("chat.stream.cancelled chunks=%s", len(parts))
                self._metrics.increment("chat.stream_cancelled", backend=self._model.name)

        usage = usage or TokenUsage()
        full_text = "".join(parts)
        self._metrics.record_timing("chat.stream_duration", time.perf_counter() - started, backend=self._model.name)
        logger.info(
            "chat.stream.completed chars=%s prompt_tokens=%s response_tokens=%s total_tokens=%s",
            len(full_text),
            usage.prompt_tokens,
            usage.response_tokens,
            usage.total_tokens,
        )
        yield StreamEvent.done(usage, full_text)


__all__ = [
    "ChatOrchestrator",
    "StreamEvent",
    "format_context",
    "normalize_history",
    "truncate",
]
