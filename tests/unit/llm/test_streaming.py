"""Unit tests for StreamCollector."""

from __future__ import annotations

from workspace_rag.llm.models import MessageRole, StreamChunk, TokenUsage
from workspace_rag.llm.streaming import StreamCollector


class TestStreamCollector:
    def test_accumulates_content(self) -> None:
        collector = StreamCollector()
        assert collector.add_chunk(StreamChunk(content="Hel", model="llama3")) == "Hel"
        assert collector.add_chunk(StreamChunk(content="lo")) == "lo"
        assert collector.content == "Hello"
        assert collector.model == "llama3"
        assert collector.fragments == 2
        assert collector.has_output
        assert not collector.is_complete

    def test_empty_chunk_returns_none(self) -> None:
        collector = StreamCollector()
        assert collector.add_chunk(StreamChunk()) is None
        assert not collector.has_output

    def test_final_chunk(self) -> None:
        collector = StreamCollector()
        collector.add_chunk(StreamChunk(content="done"))
        usage = TokenUsage(prompt_tokens=3, completion_tokens=1)
        collector.add_chunk(StreamChunk(finish_reason="stop", usage=usage))
        assert collector.is_complete
        assert collector.finish_reason == "stop"
        assert collector.usage == usage

    def test_get_message(self) -> None:
        collector = StreamCollector()
        collector.add_chunk(StreamChunk(content="answer"))
        message = collector.get_message()
        assert message.role == MessageRole.ASSISTANT
        assert message.content == "answer"
