"""Intent routing for user turns.

Explicit markers decide whether a turn needs a sub-agent and whether it
should be answered without workspace context.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import ClassVar

from workspace_rag.agents.base import AgentKind, AgentRequest


@dataclass(frozen=True)
class RoutedTurn:
    """How a user message is handled.

    Attributes:
        query: Message text with routing markers removed.
        context_free: Skip retrieval for this turn.
        agent_request: Sub-task to run before completion, if any.
    """

    query: str
    context_free: bool = False
    agent_request: AgentRequest | None = None


@dataclass(frozen=True)
class RoutePattern:
    """A marker that routes a message to an agent."""

    kind: AgentKind
    pattern: re.Pattern[str]
    strip_marker: bool = True


class IntentRouter:
    """Classifies user messages by explicit intent markers."""

    CONTEXT_FREE_PREFIXES: ClassVar[tuple[str, ...]] = ("/nocontext", "/refactor")

    PATTERNS: ClassVar[list[RoutePattern]] = [
        RoutePattern(AgentKind.WEB_SEARCH, re.compile(r"^\s*/web\b\s*", re.IGNORECASE)),
        RoutePattern(
            AgentKind.WEB_SEARCH,
            re.compile(
                r"\b(?:search\s+the\s+web|search\s+online|look\s+up\s+online)\b"
                r"(?:\s+(?:for|about))?\s*:?\s*",
                re.IGNORECASE,
            ),
        ),
        RoutePattern(AgentKind.TOOL, re.compile(r"^\s*/tool\b"), strip_marker=False),
        RoutePattern(AgentKind.TOOL, re.compile(r"\[CALL\s+\w+"), strip_marker=False),
    ]

    def __init__(self, enabled_kinds: set[AgentKind] | None = None) -> None:
        self.enabled_kinds = set(AgentKind) if enabled_kinds is None else enabled_kinds

    def route(self, text: str, context_free: bool = False) -> RoutedTurn:
        """Route one user message.

        Args:
            text: Raw user message.
            context_free: Caller already declared the turn context-free.
        """
        query = text.strip()
        lowered = query.lower()
        for prefix in self.CONTEXT_FREE_PREFIXES:
            if lowered == prefix or lowered.startswith((prefix + " ", prefix + "\n")):
                context_free = True
                if prefix == "/nocontext":
                    query = query[len(prefix) :].strip()
                break

        for route in self.PATTERNS:
            if route.kind not in self.enabled_kinds:
                continue
            match = route.pattern.search(query)
            if match is None:
                continue

            agent_query = query
            if route.strip_marker:
                agent_query = (query[: match.start()] + " " + query[match.end() :]).strip()
                agent_query = agent_query or query
                query = agent_query
            return RoutedTurn(
                query=query,
                context_free=context_free,
                agent_request=AgentRequest(kind=route.kind, query=agent_query),
            )

        return RoutedTurn(query=query, context_free=context_free)
