"""Completion provider interface and the Ollama streaming client."""

from workspace_rag.llm.client import (
    CompletionProvider,
    OllamaCompletionProvider,
    get_completion_provider,
)
from workspace_rag.llm.http import OllamaHTTPClient, map_transport_error
from workspace_rag.llm.models import (
    CompletionOptions,
    Message,
    MessageRole,
    StreamChunk,
    TokenUsage,
)
from workspace_rag.llm.streaming import StreamCollector

__all__ = [
    "CompletionOptions",
    "CompletionProvider",
    "Message",
    "MessageRole",
    "OllamaCompletionProvider",
    "OllamaHTTPClient",
    "StreamChunk",
    "StreamCollector",
    "TokenUsage",
    "get_completion_provider",
    "map_transport_error",
]
