"""Conversation sessions, prompt assembly and the turn orchestrator."""

from .models import Session, SessionMessage, TurnEvent, TurnEventType, TurnState
from .orchestrator import ConversationOrchestrator, TurnCancelled
from .prompt import BuiltPrompt, PromptBuilder
from .storage import SessionStorage

__all__ = [
    "BuiltPrompt",
    "ConversationOrchestrator",
    "PromptBuilder",
    "Session",
    "SessionMessage",
    "SessionStorage",
    "TurnCancelled",
    "TurnEvent",
    "TurnEventType",
    "TurnState",
]
