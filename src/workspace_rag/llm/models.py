"""Data models for completion requests and streamed responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from workspace_rag.core.constants import CHARS_PER_TOKEN


class MessageRole(str, Enum):
    """Role of a message in conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """A chat message sent to the completion provider."""

    role: MessageRole
    content: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to API format."""
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(role=MessageRole(data["role"]), content=data.get("content") or "")

    @classmethod
    def system(cls, content: str) -> Message:
        """Create a system message."""
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        """Create a user message."""
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        """Create an assistant message."""
        return cls(role=MessageRole.ASSISTANT, content=content)


@dataclass
class CompletionOptions:
    """Sampling options for one completion."""

    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    stop: list[str] | None = None

    def to_ollama_options(self) -> dict[str, Any]:
        """Options object for ``/api/chat``; unset values are omitted."""
        options: dict[str, Any] = {}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.top_p is not None:
            options["top_p"] = self.top_p
        if self.top_k is not None:
            options["top_k"] = self.top_k
        if self.max_tokens is not None:
            options["num_predict"] = self.max_tokens
        if self.stop:
            options["stop"] = list(self.stop)
        return options


@dataclass
class TokenUsage:
    """Token usage for a completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def estimate(cls, prompt: str, completion: str) -> TokenUsage:
        """Rough estimate when the provider reports nothing."""
        return cls(
            prompt_tokens=len(prompt) // CHARS_PER_TOKEN,
            completion_tokens=len(completion) // CHARS_PER_TOKEN,
        )


@dataclass
class StreamChunk:
    """One fragment of a streamed completion.

    ``content`` is the new text (possibly empty). The final chunk has
    ``finish_reason`` set and may carry usage.
    """

    content: str = ""
    model: str = ""
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_final(self) -> bool:
        return self.finish_reason is not None

    @classmethod
    def from_ollama(cls, data: dict[str, Any]) -> StreamChunk:
        """Create from one NDJSON line of ``/api/chat``."""
        message = data.get("message") or {}
        finish_reason = None
        usage = None
        if data.get("done"):
            finish_reason = data.get("done_reason") or "stop"
            if "prompt_eval_count" in data or "eval_count" in data:
                usage = TokenUsage(
                    prompt_tokens=int(data.get("prompt_eval_count") or 0),
                    completion_tokens=int(data.get("eval_count") or 0),
                )
        return cls(
            content=str(message.get("content") or ""),
            model=str(data.get("model") or ""),
            finish_reason=finish_reason,
            usage=usage,
            raw=data,
        )
