"""Sub-agent base classes and models.

This module provides:
- AgentKind: The closed set of named sub-agent capabilities
- AgentRequest: A routed sub-task
- AgentResult: Outcome of a sub-task, folded into the prompt
- SubAgent: Abstract base class for sub-agents
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AgentKind(str, Enum):
    """Named sub-agent capabilities."""

    WEB_SEARCH = "web_search"
    TOOL = "tool"


@dataclass(frozen=True)
class AgentRequest:
    """A sub-task routed to one agent.

    Attributes:
        kind: Which agent handles the request.
        query: Free text for the agent (search query, tool call text).
        arguments: Structured arguments when the router could parse them.
    """

    kind: AgentKind
    query: str
    arguments: dict[str, Any] = field(default_factory=dict)


class AgentResult(BaseModel):
    """Result from a sub-agent.

    Attributes:
        kind: Agent that produced the result.
        success: Whether the agent produced usable output.
        output: Text to fold into the prompt.
        error: Error message on failure.
        duration_ms: Execution duration in milliseconds.
        metadata: Additional details (result count, tool name).
    """

    kind: AgentKind
    success: bool
    output: str = ""
    error: str | None = None
    duration_ms: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, kind: AgentKind, output: str, **metadata: Any) -> AgentResult:
        return cls(kind=kind, success=True, output=output, metadata=metadata)

    @classmethod
    def fail(cls, kind: AgentKind, error: str, **metadata: Any) -> AgentResult:
        return cls(kind=kind, success=False, error=error, metadata=metadata)

    def to_prompt_section(self) -> str:
        """Render for inclusion in the prompt; empty when there is nothing to add."""
        if not self.success or not self.output.strip():
            return ""
        titles = {
            AgentKind.WEB_SEARCH: "Web search results",
            AgentKind.TOOL: "Tool output",
        }
        return f"## {titles[self.kind]}\n{self.output.strip()}"


class SubAgent(ABC):
    """A named capability the orchestrator can dispatch to.

    Subclasses implement :meth:`run`; expected failures raise
    ``AgentError``. The registry turns every failure into a failed
    :class:`AgentResult`.
    """

    @property
    @abstractmethod
    def kind(self) -> AgentKind:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @abstractmethod
    async def run(self, request: AgentRequest) -> AgentResult:
        ...

    async def close(self) -> None:  # noqa: B027
        pass
