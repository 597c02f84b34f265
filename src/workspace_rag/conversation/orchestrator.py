"""Conversation orchestration.

The orchestrator owns every session and runs one turn per session at a
time:

    IDLE -> AWAITING_RETRIEVAL -> AWAITING_COMPLETION -> STREAMING -> IDLE

A turn retrieves workspace context (unless it is context-free), optionally
runs a sub-agent, assembles a bounded prompt, and relays the completion to
the consumer as :class:`TurnEvent` items. ``submit_turn`` never raises:
failures become ``error`` events.

Example:
    orchestrator = ConversationOrchestrator(provider, retriever, config.conversation)
    async for event in orchestrator.submit_turn("s1", "What does foo do?"):
        if event.type == TurnEventType.DELTA:
            print(event.text, end="")
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from workspace_rag.agents.router import IntentRouter, RoutedTurn
from workspace_rag.core.errors import (
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    SessionError,
    SessionNotFoundError,
    VectorIndexError,
    WorkspaceRagError,
)
from workspace_rag.llm.models import Message, MessageRole
from workspace_rag.llm.streaming import StreamCollector
from workspace_rag.rag.models import RetrievalContext, SessionContext

from .models import Session, SessionMessage, TurnEvent, TurnState
from .prompt import PromptBuilder

if TYPE_CHECKING:
    from workspace_rag.agents.registry import AgentRegistry
    from workspace_rag.config.models import ConversationConfig
    from workspace_rag.llm.client import CompletionProvider
    from workspace_rag.llm.models import StreamChunk
    from workspace_rag.rag.retriever import Retriever

    from .storage import SessionStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TurnCancelled(Exception):
    """Raised inside a turn when the consumer cancels it."""


async def _next_chunk(iterator: AsyncIterator[StreamChunk]) -> StreamChunk | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class _SessionLock:
    """Serializes the turns of one session; ``users`` counts holders and waiters."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class _ActiveTurn:
    """Cancellation handle for the running turn of a session."""

    def __init__(self) -> None:
        self.cancelled = asyncio.Event()

    def cancel(self) -> None:
        self.cancelled.set()

    async def race(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """Await ``awaitable`` unless the turn is cancelled or it times out.

        Raises:
            TurnCancelled: If the turn was cancelled first.
            ProviderTimeout: If ``timeout`` elapsed first.
        """
        if self.cancelled.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TurnCancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self.cancelled.is_set():
            raise TurnCancelled()
        raise ProviderTimeout(f"No output from the model for {timeout}s")


class ConversationOrchestrator:
    """Runs conversation turns for any number of sessions.

    Different sessions proceed concurrently; turns of one session are
    serialized.

    Attributes:
        config: Conversation configuration.
        sessions: Live sessions by id.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        retriever: Retriever | None,
        config: ConversationConfig,
        agents: AgentRegistry | None = None,
        router: IntentRouter | None = None,
        storage: SessionStorage | None = None,
        retrieval_k: int | None = None,
        retry_delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.retriever = retriever
        self.config = config
        self.agents = agents
        self.router = router or IntentRouter(
            set(agents.kinds()) if agents is not None else set()
        )
        self.storage = storage
        self.retrieval_k = retrieval_k
        self.retry_delay = retry_delay
        self.prompt_builder = PromptBuilder(config.system_prompt, config.prompt_char_budget)
        self.sessions: dict[str, Session] = {}
        self._locks: dict[str, _SessionLock] = {}
        self._active: dict[str, _ActiveTurn] = {}
        self._clock = clock
        self._circuit_open_until: float | None = None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session:
        """Raises SessionNotFoundError if the session does not exist."""
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def get_or_create_session(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            session = Session(id=session_id, max_history=self.config.max_history_messages)
            self.sessions[session_id] = session
            logger.debug(f"Created session {session_id}")
        return session

    def state(self, session_id: str) -> TurnState:
        session = self.sessions.get(session_id)
        return session.state if session is not None else TurnState.IDLE

    def cancel(self, session_id: str) -> bool:
        """Cancel the running turn of a session.

        Returns:
            True if a turn was running.
        """
        turn = self._active.get(session_id)
        if turn is None:
            return False
        turn.cancel()
        logger.info(f"Cancelling turn of session {session_id}")
        return True

    def reset_session(self, session_id: str) -> bool:
        """Discard a session (cancelling its running turn).

        Returns:
            True if the session existed.
        """
        self.cancel(session_id)
        existed = self.sessions.pop(session_id, None) is not None
        self._release_lock(session_id)
        if existed:
            logger.debug(f"Reset session {session_id}")
        return existed

    async def checkpoint(self, session_id: str) -> Path:
        """Write a session checkpoint.

        Raises:
            SessionError: If no checkpoint storage is configured or the
                session does not exist.
            CheckpointError: If the checkpoint cannot be written.
        """
        if self.storage is None:
            raise SessionError("No checkpoint storage configured")
        session = self.get_session(session_id)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.storage.save, session)

    async def restore(self, session_id: str) -> Session:
        """Replace the in-memory session with its checkpoint."""
        if self.storage is None:
            raise SessionError("No checkpoint storage configured")
        if session_id in self._active:
            raise SessionError(f"Session {session_id} has a turn in progress")
        loop = asyncio.get_running_loop()
        session = await loop.run_in_executor(None, self.storage.load, session_id)
        session.max_history = self.config.max_history_messages
        self.sessions[session_id] = session
        return session

    # ------------------------------------------------------------------
    # Provider circuit
    # ------------------------------------------------------------------

    @property
    def provider_available(self) -> bool:
        if self._circuit_open_until is None:
            return True
        if self._clock() >= self._circuit_open_until:
            self._close_circuit("cooldown elapsed")
            return True
        return False

    def _open_circuit(self) -> None:
        cooldown = self.config.provider_cooldown_seconds
        self._circuit_open_until = self._clock() + cooldown
        logger.warning(f"Completion provider unavailable; failing fast for {cooldown:.0f}s")

    def _close_circuit(self, reason: str) -> None:
        if self._circuit_open_until is not None:
            self._circuit_open_until = None
            logger.info(f"Completion provider circuit closed ({reason})")

    async def check_provider(self) -> bool:
        """Health-check the provider; a healthy provider closes the circuit."""
        healthy = await self.provider.health_check()
        if healthy:
            self._close_circuit("health check succeeded")
        return healthy

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def submit_turn(
        self,
        session_id: str,
        text: str,
        context_free: bool = False,
    ) -> AsyncIterator[TurnEvent]:
        """Run one user turn, yielding ``delta`` events then ``done`` or ``error``.

        Args:
            session_id: Conversation id; created on first use.
            text: User message.
            context_free: Skip retrieval for this turn.
        """
        entry = self._locks.setdefault(session_id, _SessionLock())
        entry.users += 1
        try:
            async with entry.lock:
                session = self.get_or_create_session(session_id)
                turn = _ActiveTurn()
                self._active[session_id] = turn
                try:
                    async with aclosing(
                        self._run_turn(session, text, context_free, turn)
                    ) as events:
                        async for event in events:
                            yield event
                finally:
                    if self._active.get(session_id) is turn:
                        del self._active[session_id]
                    if session.state != TurnState.FAILED:
                        session.state = TurnState.IDLE
        finally:
            entry.users -= 1
            if session_id not in self.sessions:
                self._release_lock(session_id)

    def _release_lock(self, session_id: str) -> None:
        """Forget the turn lock of a session nobody is using."""
        entry = self._locks.get(session_id)
        if entry is not None and entry.users == 0:
            del self._locks[session_id]

    async def _run_turn(
        self,
        session: Session,
        text: str,
        context_free: bool,
        turn: _ActiveTurn,
    ) -> AsyncIterator[TurnEvent]:
        warnings: list[str] = []
        routed = self.router.route(text, context_free)
        previous_query = session.previous_user_message()
        history = list(session.messages)
        session.add_message(SessionMessage(role=MessageRole.USER, content=text))

        if not self.provider_available:
            session.state = TurnState.FAILED
            yield TurnEvent.error(
                ProviderUnavailable.code,
                "The model server is unavailable; try again shortly",
            )
            return

        collector = StreamCollector()
        recorded = False

        def record_assistant(incomplete: bool) -> None:
            nonlocal recorded
            if recorded or (incomplete and not collector.has_output):
                return
            recorded = True
            session.add_message(
                SessionMessage(
                    role=MessageRole.ASSISTANT,
                    content=collector.content,
                    incomplete=incomplete,
                )
            )

        try:
            session.state = TurnState.AWAITING_RETRIEVAL
            context = None
            if not routed.context_free:
                context = await self._retrieve(routed.query, previous_query, turn, warnings)
            session.last_context = context

            session.state = TurnState.AWAITING_COMPLETION
            agent_sections = await self._run_agent(routed, turn, warnings)
            prompt = self.prompt_builder.build(routed.query, history, context, agent_sections)
            warnings.extend(prompt.warnings)
            if prompt.context is not None:
                session.last_context = prompt.context

            async with aclosing(
                self._complete(prompt.messages, collector, turn, session)
            ) as deltas:
                async for delta in deltas:
                    yield TurnEvent.delta(delta)

            record_assistant(incomplete=False)
            session.update_usage(prompt.char_count, len(collector.content))
            yield TurnEvent.done(
                collector.content,
                finish_reason=collector.finish_reason or "stop",
                warnings=tuple(warnings),
            )

        except TurnCancelled:
            session.state = TurnState.CANCELLED
            record_assistant(incomplete=True)
            logger.info(f"Turn cancelled in session {session.id}")
            yield TurnEvent.done(collector.content, finish_reason="cancelled", warnings=tuple(warnings))

        except ProviderError as e:
            if isinstance(e, ProviderUnavailable):
                self._open_circuit()
                session.state = TurnState.FAILED
            record_assistant(incomplete=True)
            logger.warning(f"Turn failed in session {session.id}: {e}")
            yield TurnEvent.error(e.code, e.message or str(e), warnings=tuple(warnings))

        except WorkspaceRagError as e:
            record_assistant(incomplete=True)
            logger.warning(f"Turn failed in session {session.id}: {e}")
            yield TurnEvent.error(e.code, str(e), warnings=tuple(warnings))

        except Exception as e:
            record_assistant(incomplete=True)
            logger.exception(f"Unexpected error in session {session.id}")
            yield TurnEvent.error("internal_error", str(e), warnings=tuple(warnings))

        finally:
            # Consumer stopped iterating mid-stream
            record_assistant(incomplete=True)

    async def _retrieve(
        self,
        query: str,
        previous_query: str | None,
        turn: _ActiveTurn,
        warnings: list[str],
    ) -> RetrievalContext | None:
        if self.retriever is None:
            return None
        try:
            context = await turn.race(
                self.retriever.retrieve(
                    query, SessionContext(previous_query=previous_query), self.retrieval_k
                )
            )
        except (VectorIndexError, ProviderError) as e:
            logger.error(f"Retrieval failed, answering without context: {e}")
            warnings.append(f"Retrieval failed ({e.code}): {e}")
            return None
        warnings.extend(context.warnings)
        return context

    async def _run_agent(
        self, routed: RoutedTurn, turn: _ActiveTurn, warnings: list[str]
    ) -> list[str]:
        request = routed.agent_request
        if request is None or self.agents is None:
            return []
        result = await turn.race(self.agents.dispatch(request))
        if not result.success:
            warnings.append(f"{request.kind.value} unavailable: {result.error}")
            return []
        return [result.to_prompt_section()]

    async def _complete(
        self,
        messages: list[Message],
        collector: StreamCollector,
        turn: _ActiveTurn,
        session: Session,
    ) -> AsyncIterator[str]:
        """Stream the completion, retrying transient failures before output."""
        attempt = 0
        while True:
            try:
                async with aclosing(
                    self._stream_once(messages, collector, turn, session)
                ) as deltas:
                    async for delta in deltas:
                        yield delta
                return
            except ProviderError as e:
                if collector.has_output or not e.transient:
                    raise
                if attempt >= self.config.completion_retries:
                    raise
                attempt += 1
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Completion failed before output ({e.code}); retrying in {delay:.1f}s "
                    f"(attempt {attempt}/{self.config.completion_retries})"
                )
                await turn.race(asyncio.sleep(delay))

    async def _stream_once(
        self,
        messages: list[Message],
        collector: StreamCollector,
        turn: _ActiveTurn,
        session: Session,
    ) -> AsyncIterator[str]:
        iterator = self.provider.complete(messages).__aiter__()
        try:
            while True:
                chunk = await turn.race(
                    _next_chunk(iterator), timeout=self.config.stream_idle_timeout
                )
                if chunk is None:
                    return
                delta = collector.add_chunk(chunk)
                if delta:
                    session.state = TurnState.STREAMING
                    yield delta
                if chunk.is_final:
                    return
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def close(self) -> None:
        for session_id in list(self._active):
            self.cancel(session_id)
        if self.agents is not None:
            await self.agents.close()
        await self.provider.close()
