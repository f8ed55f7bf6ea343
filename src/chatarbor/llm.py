"""Streaming chat model backends (OpenAI and Ollama)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Protocol, Sequence

import httpx
from openai import APIError, AsyncOpenAI

from .config import Settings
from .errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    response_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "responseTokens": self.response_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(slots=True)
class ModelChunk:
    """A piece of streamed output; usage is only present on the final chunk."""

    text: str = ""
    usage: TokenUsage | None = None


class ChatModel(Protocol):
    name: str

    def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        system_instruction: str | None = None,
    ) -> AsyncGenerator[ModelChunk, None]: ...

    async def aclose(self) -> None: ...


def _with_system(messages: Sequence[ChatMessage], system_instruction: str | None) -> list[dict[str, str]]:
    payload = [message.to_dict() for message in messages]
    if system_instruction:
        payload.insert(0, {"role": "system", "content": system_instruction})
    return payload


class OpenAIChatModel:
    name = "openai"

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        system_instruction: str | None = None,
    ) -> AsyncGenerator[ModelChunk, None]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": _with_system(messages, system_instruction),
            "temperature": self._temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self._max_tokens is not None:
            kwargs["max_tokens"] = self._max_tokens

        try:
            stream = await self._client.chat.completions.create(**kwargs)
        except APIError as exc:
            logger.error("chat.backend.openai.error model=%s error=%s", self._model, exc)
            raise UpstreamUnavailable(f"OpenAI streaming request failed: {exc}", user_message="Model unavailable") from exc

        try:
            async for event in stream:
                usage = None
                if event.usage is not None:
                    usage = TokenUsage(
                        prompt_tokens=event.usage.prompt_tokens or 0,
                        response_tokens=event.usage.completion_tokens or 0,
                        total_tokens=event.usage.total_tokens or 0,
                    )
                text = ""
                if event.choices:
                    text = event.choices[0].delta.content or ""
                if text or usage is not None:
                    yield ModelChunk(text=text, usage=usage)
        except APIError as exc:
            logger.error("chat.backend.openai.stream_error model=%s error=%s", self._model, exc)
            raise UpstreamUnavailable(f"OpenAI stream interrupted: {exc}", user_message="Model unavailable") from exc
        finally:
            await stream.close()

    async def aclose(self) -> None:
        await self._client.close()


class OllamaChatModel:
    name = "ollama"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: str,
        model: str,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> None:
        if not model.strip():
            raise ValueError("OLLAMA_MODEL must be set when using the Ollama chat backend")
        self._client = client
        self._url = f"{base_url.rstrip('/')}/api/chat"
        self._model = model.strip()
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        system_instruction: str | None = None,
    ) -> AsyncGenerator[ModelChunk, None]:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": _with_system(messages, system_instruction),
            "stream": True,
        }
        options: dict[str, float | int] = {}
        if self._temperature > 0.0:
            options["temperature"] = self._temperature
        if self._max_tokens is not None:
            options["num_predict"] = self._max_tokens
        if options:
            payload["options"] = options

        try:
            async with self._client.stream("POST", self._url, json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("chat.backend.ollama.decode_error line=%s", line)
                        continue
                    if data.get("error"):
                        raise UpstreamUnavailable(f"Ollama error: {data['error']}", user_message="Model unavailable")
                    message = data.get("message") or {}
                    text = message.get("content") or data.get("response", "")
                    usage = None
                    if data.get("done"):
                        prompt = int(data.get("prompt_eval_count") or 0)
                        response_tokens = int(data.get("eval_count") or 0)
                        usage = TokenUsage(prompt, response_tokens, prompt + response_tokens)
                    if text or usage is not None:
                        yield ModelChunk(text=str(text), usage=usage)
        except httpx.HTTPError as exc:
            logger.error("chat.backend.ollama.stream_error model=%s error=%s", self._model, exc)
            raise UpstreamUnavailable(f"Ollama streaming request failed: {exc}", user_message="Model unavailable") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


class UnavailableChatModel:
    """Placeholder used when no chat backend credentials are configured."""

    name = "unavailable"

    def __init__(self, reason: str) -> None:
        self._reason = reason

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        system_instruction: str | None = None,
    ) -> AsyncGenerator[ModelChunk, None]:
        raise UpstreamUnavailable(self._reason, user_message="Model unavailable")
        yield ModelChunk()  # pragma: no cover

    async def aclose(self) -> None:
        return None


def build_chat_model(settings: Settings) -> ChatModel:
    """Select the chat backend from configuration."""

    if settings.is_ollama_chat_backend:
        logger.info("chat.backend.ollama model=%s", settings.ollama_model)
        return OllamaChatModel(
            httpx.AsyncClient(timeout=settings.model_timeout),
            base_url=settings.ollama_base_url,
            model=settings.ollama_model,
            temperature=settings.chat_temperature,
            max_tokens=settings.chat_max_tokens,
        )
    if settings.is_openai_chat_backend:
        if not settings.openai_api_key:
            logger.warning("chat.backend.unavailable reason=missing_openai_api_key")
            return UnavailableChatModel("OPENAI_API_KEY must be set for the OpenAI chat backend")
        logger.info("chat.backend.openai model=%s", settings.openai_chat_model)
        return OpenAIChatModel(
            AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.model_timeout),
            model=settings.openai_chat_model,
            temperature=settings.chat_temperature,
            max_tokens=settings.chat_max_tokens,
        )
    raise ValueError(f"Unsupported CHAT_BACKEND: {settings.chat_backend}")


__all__ = [
    "ChatMessage",
    "ChatModel",
    "ModelChunk",
    "OllamaChatModel",
    "OpenAIChatModel",
    "TokenUsage",
    "UnavailableChatModel",
    "build_chat_model",
]
