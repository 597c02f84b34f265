"""Session data models for the conversation orchestrator."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from workspace_rag.core.constants import CHARS_PER_TOKEN
from workspace_rag.llm.models import Message, MessageRole
from workspace_rag.rag.models import RetrievalContext


class TurnState(str, Enum):
    """Per-session turn state.

    ``IDLE -> AWAITING_RETRIEVAL -> AWAITING_COMPLETION -> STREAMING -> IDLE``.
    ``CANCELLED`` and ``FAILED`` are end states of a turn; the session
    returns to ``IDLE`` before the next one.
    """

    IDLE = "idle"
    AWAITING_RETRIEVAL = "awaiting_retrieval"
    AWAITING_COMPLETION = "awaiting_completion"
    STREAMING = "streaming"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TurnEventType(str, Enum):
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class TurnEvent:
    """One item of the consumer-facing turn stream.

    Attributes:
        type: ``delta`` (incremental text), ``done`` or ``error``.
        text: Delta text; for ``done`` the full assistant message.
        finish_reason: ``stop``, ``length`` or ``cancelled`` on ``done``.
        error_code: Error code name on ``error``.
        message: Error message on ``error``.
        warnings: Degradations of the turn (retrieval or agent failures).
    """

    type: TurnEventType
    text: str = ""
    finish_reason: str | None = None
    error_code: str | None = None
    message: str | None = None
    warnings: tuple[str, ...] = ()

    @classmethod
    def delta(cls, text: str) -> TurnEvent:
        return cls(type=TurnEventType.DELTA, text=text)

    @classmethod
    def done(
        cls, text: str, finish_reason: str = "stop", warnings: tuple[str, ...] = ()
    ) -> TurnEvent:
        return cls(
            type=TurnEventType.DONE,
            text=text,
            finish_reason=finish_reason,
            warnings=warnings,
        )

    @classmethod
    def error(
        cls, code: str, message: str, warnings: tuple[str, ...] = ()
    ) -> TurnEvent:
        return cls(
            type=TurnEventType.ERROR, error_code=code, message=message, warnings=warnings
        )


@dataclass
class SessionMessage:
    """A message within a session."""

    role: MessageRole
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    incomplete: bool = False

    def to_llm_message(self) -> Message:
        return Message(role=self.role, content=self.content)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.incomplete:
            data["incomplete"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMessage:
        timestamp = data.get("timestamp")
        return cls(
            role=MessageRole(data.get("role", "user")),
            content=data.get("content", ""),
            id=data.get("id", str(uuid.uuid4())),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(UTC),
            incomplete=bool(data.get("incomplete", False)),
        )


@dataclass
class Session:
    """A conversation session.

    Attributes:
        id: Conversation id.
        messages: Ordered history, bounded by ``max_history``.
        state: Current turn state.
        last_context: Retrieval context of the last turn (not persisted).
        total_prompt_tokens: Estimated cumulative prompt tokens.
        total_completion_tokens: Estimated cumulative completion tokens.
        max_history: History bound; the oldest messages are dropped.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    messages: list[SessionMessage] = field(default_factory=list)
    state: TurnState = TurnState.IDLE
    last_context: RetrievalContext | None = None
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    max_history: int = 25
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def add_message(self, message: SessionMessage) -> None:
        self.messages.append(message)
        overflow = len(self.messages) - self.max_history
        if overflow > 0:
            del self.messages[:overflow]
        self.updated_at = datetime.now(UTC)

    def previous_user_message(self, before: SessionMessage | None = None) -> str | None:
        """Text of the last user message preceding ``before`` (or the end)."""
        messages = self.messages
        if before is not None and before in messages:
            messages = messages[: messages.index(before)]
        for message in reversed(messages):
            if message.role == MessageRole.USER:
                return message.content
        return None

    def update_usage(self, prompt_chars: int, completion_chars: int) -> None:
        self.total_prompt_tokens += prompt_chars // CHARS_PER_TOKEN
        self.total_completion_tokens += completion_chars // CHARS_PER_TOKEN

    @property
    def total_tokens(self) -> int:
        return self.total_prompt_tokens + self.total_completion_tokens

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
            "total_prompt_tokens": self.total_prompt_tokens,
            "total_completion_tokens": self.total_completion_tokens,
            "max_history": self.max_history,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        now = datetime.now(UTC).isoformat()
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            messages=[SessionMessage.from_dict(m) for m in data.get("messages", [])],
            total_prompt_tokens=data.get("total_prompt_tokens", 0),
            total_completion_tokens=data.get("total_completion_tokens", 0),
            max_history=data.get("max_history", 25),
            created_at=datetime.fromisoformat(data.get("created_at") or now),
            updated_at=datetime.fromisoformat(data.get("updated_at") or now),
        )

    @classmethod
    def from_json(cls, json_str: str) -> Session:
        return cls.from_dict(json.loads(json_str))
