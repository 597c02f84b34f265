"""Workspace tools and the tool agent.

Tools are called from a user message in one of two forms:

    [CALL read_file(path="src/app.py")]
    /tool read_file src/app.py

Built-in tools are confined to the workspace root.
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from workspace_rag.agents.base import AgentKind, AgentRequest, AgentResult, SubAgent
from workspace_rag.core.constants import MAX_TOOL_CALL_TEXT, TOOL_MAX_OUTPUT_CHARS
from workspace_rag.core.errors import AgentError
from workspace_rag.core.logging import get_logger

logger = get_logger("agents.tools")

_BRACKET_CALL = re.compile(r"\[CALL\s+(?P<name>\w+)\s*\((?P<args>.*?)\)\s*\]", re.DOTALL)
_BRACKET_ARG = re.compile(r'(?P<key>\w+)\s*=\s*"(?P<value>(?:[^"\\]|\\.)*)"', re.DOTALL)
_SLASH_CALL = re.compile(r"^\s*/tool\s+(?P<name>\w+)(?:\s+(?P<arg>.*?))?\s*$", re.DOTALL)
_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}


@dataclass(frozen=True)
class ToolCall:
    """A parsed tool invocation.

    Attributes:
        name: Tool name.
        arguments: Keyword arguments.
        positional: Single unnamed argument (``/tool name arg`` form).
    """

    name: str
    arguments: dict[str, str] = field(default_factory=dict)
    positional: str | None = None


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(0)), value)


def parse_tool_call(text: str) -> ToolCall | None:
    """Find the first tool call in ``text``.

    Only the first 50,000 characters are examined.
    """
    if not text or not text.strip():
        return None
    text = text[:MAX_TOOL_CALL_TEXT]

    match = _BRACKET_CALL.search(text)
    if match:
        arguments = {
            m.group("key"): _unescape(m.group("value"))
            for m in _BRACKET_ARG.finditer(match.group("args"))
        }
        return ToolCall(name=match.group("name"), arguments=arguments)

    match = _SLASH_CALL.match(text)
    if match:
        arg = match.group("arg")
        return ToolCall(name=match.group("name"), positional=arg or None)
    return None


class WorkspaceTool(ABC):
    """A tool the tool agent can run."""

    #: Parameter receiving the argument of ``/tool name arg``.
    primary_parameter: str | None = None

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    def required_parameters(self) -> list[str]:
        return []

    @abstractmethod
    async def run(self, **kwargs: str) -> str:
        """Run the tool; expected failures raise ``AgentError``."""
        ...


def _confine(root: Path, relative: str) -> Path:
    path = (root / relative).resolve()
    if path != root and root not in path.parents:
        raise AgentError(f"Path escapes the workspace: {relative}")
    return path


class ReadFileTool(WorkspaceTool):
    """Read a text file inside the workspace."""

    primary_parameter = "path"

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read a workspace file. Arguments: path (relative to the workspace)."

    @property
    def required_parameters(self) -> list[str]:
        return ["path"]

    async def run(self, **kwargs: str) -> str:
        path = _confine(self.root, kwargs["path"])
        if not path.is_file():
            raise AgentError(f"File not found: {kwargs['path']}")

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, lambda: path.read_text(encoding="utf-8", errors="replace")
            )
        except OSError as e:
            raise AgentError(f"Cannot read {kwargs['path']}: {e}") from e


class ListFilesTool(WorkspaceTool):
    """List workspace files matching a glob pattern."""

    primary_parameter = "pattern"

    def __init__(self, root: Path, max_results: int = 200) -> None:
        self.root = root.resolve()
        self.max_results = max_results

    @property
    def name(self) -> str:
        return "list_files"

    @property
    def description(self) -> str:
        return "List workspace files. Arguments: pattern (glob, default **/*)."

    async def run(self, **kwargs: str) -> str:
        pattern = kwargs.get("pattern") or "**/*"
        if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            raise AgentError(f"Pattern must be relative to the workspace: {pattern}")

        def _list() -> list[str]:
            found = []
            for path in sorted(self.root.glob(pattern)):
                relative = path.relative_to(self.root)
                if path.is_file() and not any(p.startswith(".") for p in relative.parts):
                    found.append(relative.as_posix())
                    if len(found) >= self.max_results:
                        break
            return found

        files = await asyncio.get_running_loop().run_in_executor(None, _list)
        if not files:
            return f"No files match {pattern}"
        return "\n".join(files)


class ToolRegistry:
    """Tools available to the tool agent, by name."""

    def __init__(self) -> None:
        self._tools: dict[str, WorkspaceTool] = {}

    def register(self, tool: WorkspaceTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> WorkspaceTool | None:
        return self._tools.get(name)

    def list_names(self) -> list[str]:
        return sorted(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    @classmethod
    def with_builtins(cls, root: Path) -> ToolRegistry:
        registry = cls()
        registry.register(ReadFileTool(root))
        registry.register(ListFilesTool(root))
        return registry


def _truncate(output: str, limit: int) -> str:
    if len(output) <= limit:
        return output
    return f"{output[:limit]}\n... [truncated {len(output) - limit} characters]"


class ToolAgent(SubAgent):
    """Runs the tool named in a user message."""

    def __init__(
        self,
        tools: ToolRegistry,
        max_output_chars: int = TOOL_MAX_OUTPUT_CHARS,
    ) -> None:
        self.tools = tools
        self.max_output_chars = max_output_chars

    @property
    def kind(self) -> AgentKind:
        return AgentKind.TOOL

    @property
    def description(self) -> str:
        return f"Runs workspace tools: {', '.join(self.tools.list_names())}"

    def _resolve_arguments(self, tool: WorkspaceTool, call: ToolCall) -> dict[str, Any]:
        arguments = dict(call.arguments)
        if call.positional is not None and tool.primary_parameter:
            arguments.setdefault(tool.primary_parameter, call.positional)
        missing = [p for p in tool.required_parameters if not arguments.get(p)]
        if missing:
            raise AgentError(f"{tool.name}: missing argument(s) {', '.join(missing)}")
        return arguments

    async def run(self, request: AgentRequest) -> AgentResult:
        call = parse_tool_call(request.query)
        if call is None:
            raise AgentError("No tool call found in message")

        tool = self.tools.get(call.name)
        if tool is None:
            raise AgentError(
                f"Unknown tool {call.name!r}; available: {', '.join(self.tools.list_names())}"
            )

        arguments = self._resolve_arguments(tool, call)
        logger.debug(f"Running tool {tool.name} with {arguments}")
        output = await tool.run(**arguments)
        rendered = ", ".join(f'{k}="{v}"' for k, v in arguments.items())
        return AgentResult.ok(
            AgentKind.TOOL,
            f"{tool.name}({rendered}):\n{_truncate(output, self.max_output_chars)}",
            tool=tool.name,
        )
