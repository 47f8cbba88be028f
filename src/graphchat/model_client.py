"""
Embedding and chat-completion collaborator.

The engine talks to models through ``ModelClient``; ``LangChainModelClient``
adapts any langchain_core chat model and embeddings pair to it.
"""
from __future__ import annotations

from typing import Any, AsyncIterator, Protocol, Sequence

from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import convert_to_messages

from .cancellation import CancelSignal, raise_if_cancelled
from .observability import get_logger

logger = get_logger(__name__)

ChatMessage = dict[str, str]


class ModelClient(Protocol):
    async def embeddings(
        self, model: str, inputs: Sequence[str], signal: CancelSignal | None = None
    ) -> list[list[float]]:
        ...

    async def chat_completion(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        signal: CancelSignal | None = None,
    ) -> str:
        ...

    def stream_chat_completion(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        signal: CancelSignal | None = None,
    ) -> AsyncIterator[str]:
        ...


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content or "")


def _invoke_kwargs(temperature: float | None, max_tokens: int | None) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if temperature is not None:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens
    return kwargs


class LangChainModelClient:
    """Routes chat calls to a BaseChatModel and embedding calls to an Embeddings object."""

    def __init__(self, chat_model: BaseChatModel, embeddings: Embeddings, *, forward_sampling_params: bool = True):
        self.chat_model = chat_model
        self.embedding_backend = embeddings
        self.forward_sampling_params = bool(forward_sampling_params)

    def _kwargs(self, temperature: float | None, max_tokens: int | None) -> dict[str, Any]:
        if not self.forward_sampling_params:
            return {}
        return _invoke_kwargs(temperature, max_tokens)

    async def embeddings(
        self, model: str, inputs: Sequence[str], signal: CancelSignal | None = None
    ) -> list[list[float]]:
        raise_if_cancelled(signal, "embedding")
        vectors = await self.embedding_backend.aembed_documents(list(inputs))
        raise_if_cancelled(signal, "embedding")
        logger.info("embeddings_computed", model=model, count=len(vectors))
        return [list(vector) for vector in vectors]

    async def chat_completion(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        signal: CancelSignal | None = None,
    ) -> str:
        raise_if_cancelled(signal, "completion")
        result = await self.chat_model.ainvoke(
            convert_to_messages(list(messages)),
            **self._kwargs(temperature, max_tokens),
        )
        raise_if_cancelled(signal, "completion")
        return _message_text(result.content)

    async def stream_chat_completion(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        signal: CancelSignal | None = None,
    ) -> AsyncIterator[str]:
        raise_if_cancelled(signal, "stream")
        async for chunk in self.chat_model.astream(
            convert_to_messages(list(messages)),
            **self._kwargs(temperature, max_tokens),
        ):
            raise_if_cancelled(signal, "stream")
            text = _message_text(chunk.content)
            if text:
                yield text
