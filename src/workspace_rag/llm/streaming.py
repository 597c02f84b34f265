"""Streaming response utilities."""

from __future__ import annotations

from dataclasses import dataclass

from workspace_rag.llm.models import Message, StreamChunk, TokenUsage


@dataclass
class StreamCollector:
    """
    Collects streaming chunks into a complete response.

    Usage:
        collector = StreamCollector()
        async for chunk in provider.complete(messages):
            delta = collector.add_chunk(chunk)
            if delta:
                print(delta, end="", flush=True)
        message = collector.get_message()
    """

    content: str = ""
    usage: TokenUsage | None = None
    model: str = ""
    finish_reason: str | None = None
    fragments: int = 0

    def add_chunk(self, chunk: StreamChunk) -> str | None:
        """
        Add a chunk and return new content if any.

        Args:
            chunk: Streaming chunk

        Returns:
            New content text, or None if no new content
        """
        self.model = chunk.model or self.model
        if chunk.finish_reason:
            self.finish_reason = chunk.finish_reason
        if chunk.usage:
            self.usage = chunk.usage

        if not chunk.content:
            return None
        self.content += chunk.content
        self.fragments += 1
        return chunk.content

    @property
    def has_output(self) -> bool:
        return self.fragments > 0

    @property
    def is_complete(self) -> bool:
        """Check if streaming is complete."""
        return self.finish_reason is not None

    def get_message(self) -> Message:
        return Message.assistant(self.content)
