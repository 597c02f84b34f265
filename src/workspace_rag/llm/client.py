"""Completion providers.

A completion provider turns a list of messages into a finite, cancellable
stream of :class:`StreamChunk` fragments. Streams are not restartable:
callers decide whether a failed stream may be retried.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from workspace_rag.core.errors import ContentRejected, ProviderError
from workspace_rag.core.logging import get_logger
from workspace_rag.llm.http import OllamaHTTPClient
from workspace_rag.llm.models import CompletionOptions, Message, StreamChunk

if TYPE_CHECKING:
    import httpx

    from workspace_rag.config.models import ProviderConfig

logger = get_logger("llm.client")


class CompletionProvider(ABC):
    """Streaming text-generation backend."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Default model used when options do not name one."""
        ...

    @abstractmethod
    def complete(
        self,
        messages: list[Message],
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a completion.

        Raises:
            ProviderUnavailable, ProviderTimeout, ContentRejected
        """
        ...

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:  # noqa: B027
        pass


class OllamaCompletionProvider(CompletionProvider):
    """Streams ``/api/chat`` responses from an Ollama server."""

    def __init__(
        self,
        client: OllamaHTTPClient,
        model_name: str,
        default_options: CompletionOptions | None = None,
    ) -> None:
        self._client = client
        self._model_name = model_name
        self.default_options = default_options or CompletionOptions()

    @property
    def model_name(self) -> str:
        return self._model_name

    def _payload(
        self, messages: list[Message], options: CompletionOptions | None
    ) -> dict[str, Any]:
        merged = CompletionOptions(
            **{
                key: value
                for source in (self.default_options, options or CompletionOptions())
                for key, value in vars(source).items()
                if value is not None
            }
        )
        return {
            "model": merged.model or self._model_name,
            "messages": [m.to_dict() for m in messages],
            "stream": True,
            "options": merged.to_ollama_options(),
        }

    async def complete(
        self,
        messages: list[Message],
        options: CompletionOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        payload = self._payload(messages, options)
        logger.debug(f"Streaming chat: model={payload['model']}, messages={len(messages)}")

        parse_errors = 0
        async for line in self._client.stream_lines("/api/chat", payload):
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                parse_errors += 1
                logger.warning(f"Failed to parse streaming line: {e} - data: {line[:100]}")
                continue

            if data.get("error"):
                message = str(data["error"])
                if any(m in message.lower() for m in ("content", "policy", "safety")):
                    raise ContentRejected(message)
                raise ProviderError(f"Model server error: {message}")

            chunk = StreamChunk.from_ollama(data)
            yield chunk
            if chunk.is_final:
                break

        if parse_errors:
            logger.error(f"Stream completed with {parse_errors} unparseable line(s)")

    async def health_check(self) -> bool:
        return await self._client.health_check()

    async def close(self) -> None:
        await self._client.close()


def get_completion_provider(
    config: ProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CompletionProvider:
    """Create the Ollama completion provider described by ``config``."""
    client = OllamaHTTPClient(
        base_url=config.base_url,
        timeout=config.timeout,
        connect_timeout=config.connect_timeout,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay,
        username=config.username,
        password=config.password.get_secret_value() if config.password else None,
        transport=transport,
    )
    return OllamaCompletionProvider(
        client,
        model_name=config.chat_model,
        default_options=CompletionOptions(
            temperature=config.temperature,
            top_p=config.top_p,
            top_k=config.top_k,
        ),
    )
