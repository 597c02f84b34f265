"""Bounded prompt assembly.

The prompt is ``system (+ context, + agent results) / history / query``.
When it exceeds the character budget, the oldest history messages are
dropped first; then the number of retrieved chunks is reduced. Context is
never cut mid-chunk.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from workspace_rag.llm.models import Message
from workspace_rag.rag.models import RetrievalContext

from .models import SessionMessage

CONTEXT_HEADER = "## Project context"
CONTEXT_INSTRUCTIONS = (
    "The following snippets come from the user's workspace. Cite file paths "
    "when you rely on them."
)


@dataclass
class BuiltPrompt:
    """Messages ready for the completion provider.

    Attributes:
        messages: System, history and user messages in order.
        context: The (possibly truncated) retrieval context included.
        dropped_history: Number of history messages left out.
        char_count: Total characters across messages.
        warnings: Budget reductions applied.
    """

    messages: list[Message]
    context: RetrievalContext | None
    dropped_history: int = 0
    char_count: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def context_k(self) -> int:
        return len(self.context) if self.context is not None else 0


class PromptBuilder:
    """Assembles prompts within a character budget."""

    def __init__(self, system_prompt: str, char_budget: int) -> None:
        self.system_prompt = system_prompt
        self.char_budget = char_budget

    def _system_message(
        self, context: RetrievalContext | None, agent_sections: list[str]
    ) -> Message:
        parts = [self.system_prompt.strip()]
        if context is not None and not context.is_empty:
            parts.append(f"{CONTEXT_HEADER}\n{CONTEXT_INSTRUCTIONS}\n\n{context.format_for_prompt()}")
        parts.extend(section for section in agent_sections if section)
        return Message.system("\n\n".join(parts))

    def build(
        self,
        query: str,
        history: list[SessionMessage],
        context: RetrievalContext | None = None,
        agent_sections: list[str] | None = None,
    ) -> BuiltPrompt:
        """Build a prompt for ``query``.

        Args:
            query: Current user message.
            history: Earlier messages, oldest first, excluding ``query``.
            context: Retrieved chunks; omitted from the prompt when empty.
            agent_sections: Rendered sub-agent results.
        """
        sections = agent_sections or []
        history_messages = [m.to_llm_message() for m in history]
        k = len(context) if context is not None else 0
        warnings: list[str] = []

        def assemble(start: int, k: int) -> tuple[list[Message], RetrievalContext | None]:
            ctx = context.truncated(k) if context is not None else None
            messages = [self._system_message(ctx, sections)]
            messages.extend(history_messages[start:])
            messages.append(Message.user(query))
            return messages, ctx

        def size(messages: list[Message]) -> int:
            return sum(len(m.content) for m in messages)

        start = 0
        messages, ctx = assemble(start, k)
        while size(messages) > self.char_budget and start < len(history_messages):
            start += 1
            messages, ctx = assemble(start, k)

        original_k = k
        while size(messages) > self.char_budget and k > 0:
            k -= 1
            messages, ctx = assemble(start, k)

        if start:
            warnings.append(f"Dropped {start} oldest history message(s) to fit the prompt budget")
        if k < original_k:
            warnings.append(f"Reduced retrieved context from {original_k} to {k} chunk(s)")
        if size(messages) > self.char_budget:
            warnings.append("Prompt exceeds the budget even without history and context")

        return BuiltPrompt(
            messages=messages,
            context=ctx,
            dropped_history=start,
            char_count=size(messages),
            warnings=warnings,
        )
