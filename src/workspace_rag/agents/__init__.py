"""Sub-agents the conversation orchestrator can dispatch to.

Agents form a closed, named set (:class:`AgentKind`) resolved through an
:class:`AgentRegistry` at orchestration time.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from workspace_rag.agents.base import AgentKind, AgentRequest, AgentResult, SubAgent
from workspace_rag.agents.registry import AgentRegistry
from workspace_rag.agents.router import IntentRouter, RoutedTurn
from workspace_rag.agents.tools import (
    ListFilesTool,
    ReadFileTool,
    ToolAgent,
    ToolCall,
    ToolRegistry,
    WorkspaceTool,
    parse_tool_call,
)
from workspace_rag.agents.web_search import SearchHit, WebSearchAgent

if TYPE_CHECKING:
    import httpx

    from workspace_rag.config.models import AgentsConfig


def create_default_registry(
    root: Path,
    config: AgentsConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AgentRegistry:
    """Registry with the built-in agents enabled by ``config``."""
    registry = AgentRegistry(timeout=config.agent_timeout)
    if config.web_search_enabled:
        registry.register(
            WebSearchAgent(
                max_results=config.web_max_results,
                timeout=config.agent_timeout,
                transport=transport,
            )
        )
    registry.register(
        ToolAgent(ToolRegistry.with_builtins(root), max_output_chars=config.tool_max_output_chars)
    )
    return registry


__all__ = [
    "AgentKind",
    "AgentRegistry",
    "AgentRequest",
    "AgentResult",
    "IntentRouter",
    "ListFilesTool",
    "ReadFileTool",
    "RoutedTurn",
    "SearchHit",
    "SubAgent",
    "ToolAgent",
    "ToolCall",
    "ToolRegistry",
    "WebSearchAgent",
    "WorkspaceTool",
    "create_default_registry",
    "parse_tool_call",
]
