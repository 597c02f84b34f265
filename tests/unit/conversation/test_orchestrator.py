"""Tests for ConversationOrchestrator."""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from pathlib import Path

import pytest

from workspace_rag.agents.base import AgentKind, AgentRequest, AgentResult, SubAgent
from workspace_rag.agents.registry import AgentRegistry
from workspace_rag.config.models import ConversationConfig, RetrievalConfig
from workspace_rag.conversation.models import TurnEvent, TurnEventType, TurnState
from workspace_rag.conversation.orchestrator import ConversationOrchestrator
from workspace_rag.conversation.prompt import CONTEXT_HEADER
from workspace_rag.conversation.storage import SessionStorage
from workspace_rag.core.errors import (
    AgentError,
    ContentRejected,
    ProviderTimeout,
    ProviderUnavailable,
    SessionError,
    SessionNotFoundError,
)
from workspace_rag.llm.models import MessageRole
from workspace_rag.rag.embeddings import MockEmbeddingProvider
from workspace_rag.rag.retriever import Retriever
from workspace_rag.rag.vectorstore import VectorIndex


class WebStub(SubAgent):
    def __init__(self, output: str = "", error: str | None = None) -> None:
        self.output = output
        self.error = error
        self.queries: list[str] = []

    @property
    def kind(self) -> AgentKind:
        return AgentKind.WEB_SEARCH

    @property
    def description(self) -> str:
        return "web stub"

    async def run(self, request: AgentRequest) -> AgentResult:
        self.queries.append(request.query)
        if self.error:
            raise AgentError(self.error)
        return AgentResult.ok(AgentKind.WEB_SEARCH, self.output)


async def run_turn(
    orchestrator: ConversationOrchestrator, session_id: str, text: str, **kwargs
) -> list[TurnEvent]:
    return [event async for event in orchestrator.submit_turn(session_id, text, **kwargs)]


def text_of(events: list[TurnEvent]) -> str:
    return "".join(e.text for e in events if e.type == TurnEventType.DELTA)


def make_orchestrator(provider, config: ConversationConfig, **kwargs) -> ConversationOrchestrator:
    kwargs.setdefault("retry_delay", 0.0)
    return ConversationOrchestrator(provider, kwargs.pop("retriever", None), config, **kwargs)


async def populated_retriever(embeddings: MockEmbeddingProvider) -> Retriever:
    index = VectorIndex(embedding_model=embeddings.model_name)
    text = "class Warehouse:\n    def restock(self, shelf):\n        ..."
    await index.replace_document(
        "src/warehouse.py",
        [
            (
                "src/warehouse.py#0",
                await embeddings.embed(text),
                {
                    "document_id": "src/warehouse.py",
                    "text": text,
                    "start_line": 1,
                    "end_line": 3,
                    "language": "python",
                },
            )
        ],
    )
    config = RetrievalConfig(min_score=-1.0, min_chunk_chars=0)
    return Retriever(embeddings, index, None, config)


class TestTurns:
    """Tests for a normal turn."""

    @pytest.mark.asyncio
    async def test_streams_deltas_then_done(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider()
        orchestrator = make_orchestrator(provider, conversation_config)

        events = await run_turn(orchestrator, "s1", "Hi there")

        assert [e.type for e in events] == [TurnEventType.DELTA] * 3 + [TurnEventType.DONE]
        assert text_of(events) == "Hello from the model."
        done = events[-1]
        assert done.text == "Hello from the model."
        assert done.finish_reason == "stop"
        assert done.warnings == ()

        session = orchestrator.get_session("s1")
        assert [(m.role, m.content) for m in session.messages] == [
            (MessageRole.USER, "Hi there"),
            (MessageRole.ASSISTANT, "Hello from the model."),
        ]
        assert session.state == TurnState.IDLE
        assert session.total_tokens > 0

    @pytest.mark.asyncio
    async def test_empty_index_has_no_context_section(
        self,
        completion_provider,
        conversation_config: ConversationConfig,
        embeddings: MockEmbeddingProvider,
        memory_index: VectorIndex,
    ) -> None:
        provider = completion_provider()
        retriever = Retriever(embeddings, memory_index, None, RetrievalConfig())
        orchestrator = make_orchestrator(provider, conversation_config, retriever=retriever)

        events = await run_turn(orchestrator, "s1", "What is a monad?")

        assert events[-1].type == TurnEventType.DONE
        system = provider.calls[0][0]
        assert system.role == MessageRole.SYSTEM
        assert system.content == conversation_config.system_prompt
        assert CONTEXT_HEADER not in system.content

    @pytest.mark.asyncio
    async def test_context_included(
        self,
        completion_provider,
        conversation_config: ConversationConfig,
        embeddings: MockEmbeddingProvider,
    ) -> None:
        provider = completion_provider()
        retriever = await populated_retriever(embeddings)
        orchestrator = make_orchestrator(provider, conversation_config, retriever=retriever)

        await run_turn(orchestrator, "s1", "How do I restock a shelf?")

        system = provider.calls[0][0].content
        assert CONTEXT_HEADER in system
        assert "#### src/warehouse.py:1-3" in system
        assert orchestrator.get_session("s1").last_context.chunks[0].document_id == (
            "src/warehouse.py"
        )

    @pytest.mark.asyncio
    async def test_context_free_turn_skips_retrieval(
        self,
        completion_provider,
        conversation_config: ConversationConfig,
        embeddings: MockEmbeddingProvider,
    ) -> None:
        provider = completion_provider()
        retriever = await populated_retriever(embeddings)
        orchestrator = make_orchestrator(provider, conversation_config, retriever=retriever)

        await run_turn(orchestrator, "s1", "Explain recursion", context_free=True)
        await run_turn(orchestrator, "s2", "/nocontext Explain recursion")

        for call in provider.calls:
            assert CONTEXT_HEADER not in call[0].content
        assert provider.calls[1][-1].content == "Explain recursion"

    @pytest.mark.asyncio
    async def test_history_in_prompt_and_follow_up_expansion(
        self,
        completion_provider,
        conversation_config: ConversationConfig,
        embeddings: MockEmbeddingProvider,
        memory_index: VectorIndex,
    ) -> None:
        provider = completion_provider()
        retriever = Retriever(embeddings, memory_index, None, RetrievalConfig())
        orchestrator = make_orchestrator(provider, conversation_config, retriever=retriever)

        await run_turn(orchestrator, "s1", "Where is the warehouse configured?")
        await run_turn(orchestrator, "s1", "and in tests?")

        second_call = provider.calls[1]
        assert [m.role for m in second_call] == [
            MessageRole.SYSTEM,
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.USER,
        ]
        assert second_call[1].content == "Where is the warehouse configured?"
        assert orchestrator.get_session("s1").last_context.query == (
            "Where is the warehouse configured?\nand in tests?"
        )

    @pytest.mark.asyncio
    async def test_history_bounded(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        config = conversation_config.model_copy(update={"max_history_messages": 4})
        orchestrator = make_orchestrator(completion_provider(), config)
        for i in range(3):
            await run_turn(orchestrator, "s1", f"question {i}")

        messages = orchestrator.get_session("s1").messages
        assert len(messages) == 4
        assert messages[0].content == "question 1"

    @pytest.mark.asyncio
    async def test_sessions_are_independent(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        orchestrator = make_orchestrator(completion_provider(delay=0.01), conversation_config)
        await asyncio.gather(
            run_turn(orchestrator, "a", "first"),
            run_turn(orchestrator, "b", "second"),
        )
        assert orchestrator.get_session("a").messages[0].content == "first"
        assert orchestrator.get_session("b").messages[0].content == "second"
        assert orchestrator.get_session("a").message_count == 2

    @pytest.mark.asyncio
    async def test_turns_of_one_session_are_serialized(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        orchestrator = make_orchestrator(completion_provider(delay=0.01), conversation_config)
        await asyncio.gather(
            run_turn(orchestrator, "s1", "one"),
            run_turn(orchestrator, "s1", "two"),
        )
        messages = orchestrator.get_session("s1").messages
        assert [m.role for m in messages] == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.USER,
            MessageRole.ASSISTANT,
        ]
        assert [messages[0].content, messages[2].content] == ["one", "two"]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider(scripts=[["one", " two", " three", " four"]], delay=0.02)
        orchestrator = make_orchestrator(provider, conversation_config)

        events: list[TurnEvent] = []
        async for event in orchestrator.submit_turn("s1", "count to four"):
            events.append(event)
            if event.type == TurnEventType.DELTA and len(events) == 1:
                assert orchestrator.state("s1") == TurnState.STREAMING
                assert orchestrator.cancel("s1")

        assert events[-1].type == TurnEventType.DONE
        assert events[-1].finish_reason == "cancelled"
        assert events[-1].text == "one"
        assert orchestrator.state("s1") == TurnState.IDLE
        assert not orchestrator.cancel("s1")

        partial = orchestrator.get_session("s1").messages[-1]
        assert partial.role == MessageRole.ASSISTANT
        assert partial.content == "one"
        assert partial.incomplete

        again = await run_turn(orchestrator, "s1", "hello")
        assert again[-1].type == TurnEventType.DONE
        assert again[-1].finish_reason == "stop"
        assert orchestrator.state("s1") == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_cancel_from_another_task(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider(default=["a"] * 200, delay=0.01)
        orchestrator = make_orchestrator(provider, conversation_config)

        async def cancel_soon() -> None:
            await asyncio.sleep(0.05)
            orchestrator.cancel("s1")

        events, _ = await asyncio.gather(run_turn(orchestrator, "s1", "go"), cancel_soon())
        assert events[-1].finish_reason == "cancelled"
        assert len(events[-1].text) < 200

    @pytest.mark.asyncio
    async def test_consumer_stops_iterating(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        orchestrator = make_orchestrator(completion_provider(), conversation_config)
        async with aclosing(orchestrator.submit_turn("s1", "hi")) as events:
            async for event in events:
                assert event.type == TurnEventType.DELTA
                break

        assert orchestrator.state("s1") == TurnState.IDLE
        last = orchestrator.get_session("s1").messages[-1]
        assert last.incomplete
        assert last.content == "Hello"
        assert (await run_turn(orchestrator, "s1", "again"))[-1].type == TurnEventType.DONE


class TestProviderFailures:
    @pytest.mark.asyncio
    async def test_retries_before_output(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider(
            scripts=[ProviderTimeout("slow"), ProviderUnavailable("restarting")]
        )
        orchestrator = make_orchestrator(provider, conversation_config)

        events = await run_turn(orchestrator, "s1", "hi")

        assert events[-1].type == TurnEventType.DONE
        assert text_of(events) == "Hello from the model."
        assert len(provider.calls) == 3
        assert orchestrator.provider_available

    @pytest.mark.asyncio
    async def test_retries_exhausted(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider(scripts=[ProviderTimeout("slow")] * 3)
        orchestrator = make_orchestrator(provider, conversation_config)

        events = await run_turn(orchestrator, "s1", "hi")

        assert events == [TurnEvent.error("provider_timeout", "slow")]
        assert len(provider.calls) == conversation_config.completion_retries + 1
        assert orchestrator.provider_available

    @pytest.mark.asyncio
    async def test_content_rejected_not_retried(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider(scripts=[ContentRejected("blocked by policy")])
        orchestrator = make_orchestrator(provider, conversation_config)

        events = await run_turn(orchestrator, "s1", "something")

        assert events[-1].error_code == "content_rejected"
        assert len(provider.calls) == 1
        assert orchestrator.state("s1") == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_failure_after_output_keeps_partial(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider(fail_after=ProviderTimeout("stream stalled"))
        orchestrator = make_orchestrator(provider, conversation_config)

        events = await run_turn(orchestrator, "s1", "hi")

        assert [e.type for e in events] == [TurnEventType.DELTA, TurnEventType.ERROR]
        assert events[-1].error_code == "provider_timeout"
        assert len(provider.calls) == 1
        partial = orchestrator.get_session("s1").messages[-1]
        assert partial.content == "Hello"
        assert partial.incomplete

    @pytest.mark.asyncio
    async def test_idle_timeout(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        config = conversation_config.model_copy(
            update={"stream_idle_timeout": 0.05, "completion_retries": 0}
        )
        provider = completion_provider(delay=1.0)
        orchestrator = make_orchestrator(provider, config)

        events = await run_turn(orchestrator, "s1", "hi")

        assert events[-1].type == TurnEventType.ERROR
        assert events[-1].error_code == "provider_timeout"

    @pytest.mark.asyncio
    async def test_unavailable_opens_circuit(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        now = [1000.0]
        provider = completion_provider(scripts=[ProviderUnavailable("connection refused")] * 3)
        orchestrator = make_orchestrator(provider, conversation_config, clock=lambda: now[0])

        first = await run_turn(orchestrator, "s1", "hi")
        assert first[-1].error_code == "provider_unavailable"
        assert orchestrator.state("s1") == TurnState.FAILED
        assert not orchestrator.provider_available
        calls = len(provider.calls)

        fail_fast = await run_turn(orchestrator, "s1", "hi again")
        assert fail_fast[-1].error_code == "provider_unavailable"
        assert len(provider.calls) == calls

        now[0] += conversation_config.provider_cooldown_seconds
        recovered = await run_turn(orchestrator, "s1", "third try")
        assert recovered[-1].type == TurnEventType.DONE
        assert orchestrator.state("s1") == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_health_check_closes_circuit(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider(scripts=[ProviderUnavailable("down")] * 3)
        orchestrator = make_orchestrator(provider, conversation_config)
        await run_turn(orchestrator, "s1", "hi")
        assert not orchestrator.provider_available

        provider.healthy = False
        assert not await orchestrator.check_provider()
        assert not orchestrator.provider_available

        provider.healthy = True
        assert await orchestrator.check_provider()
        assert orchestrator.provider_available
        assert (await run_turn(orchestrator, "s1", "retry"))[-1].type == TurnEventType.DONE


class TestDegradation:
    @pytest.mark.asyncio
    async def test_retrieval_failure_becomes_warning(
        self,
        completion_provider,
        conversation_config: ConversationConfig,
        embeddings: MockEmbeddingProvider,
    ) -> None:
        populated = await populated_retriever(embeddings)
        mismatched = Retriever(
            MockEmbeddingProvider(dimension=8), populated.index, None, populated.config
        )
        orchestrator = make_orchestrator(
            completion_provider(), conversation_config, retriever=mismatched
        )

        events = await run_turn(orchestrator, "s1", "restock?")

        done = events[-1]
        assert done.type == TurnEventType.DONE
        assert any("dimension_mismatch" in w for w in done.warnings)

    @pytest.mark.asyncio
    async def test_agent_result_in_prompt(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider()
        web = WebStub(output="pydantic 2.10 - released")
        agents = AgentRegistry()
        agents.register(web)
        orchestrator = make_orchestrator(provider, conversation_config, agents=agents)

        events = await run_turn(orchestrator, "s1", "/web latest pydantic release")

        assert events[-1].type == TurnEventType.DONE
        assert web.queries == ["latest pydantic release"]
        system = provider.calls[0][0].content
        assert "## Web search results\npydantic 2.10 - released" in system
        assert provider.calls[0][-1].content == "latest pydantic release"

    @pytest.mark.asyncio
    async def test_agent_failure_degrades(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        agents = AgentRegistry()
        agents.register(WebStub(error="search backend offline"))
        orchestrator = make_orchestrator(completion_provider(), conversation_config, agents=agents)

        events = await run_turn(orchestrator, "s1", "search the web for pydantic news")

        done = events[-1]
        assert done.type == TurnEventType.DONE
        assert done.warnings == ("web_search unavailable: search backend offline",)

    @pytest.mark.asyncio
    async def test_unregistered_agent_not_routed(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider()
        orchestrator = make_orchestrator(provider, conversation_config)
        events = await run_turn(orchestrator, "s1", "/web anything")
        assert events[-1].warnings == ()
        assert provider.calls[0][-1].content == "/web anything"


class TestSessionManagement:
    def test_unknown_session(self, completion_provider, conversation_config) -> None:
        orchestrator = make_orchestrator(completion_provider(), conversation_config)
        with pytest.raises(SessionNotFoundError):
            orchestrator.get_session("missing")
        assert orchestrator.state("missing") == TurnState.IDLE
        assert not orchestrator.reset_session("missing")

    @pytest.mark.asyncio
    async def test_reset_session(self, completion_provider, conversation_config) -> None:
        orchestrator = make_orchestrator(completion_provider(), conversation_config)
        await run_turn(orchestrator, "s1", "hi")
        assert orchestrator.reset_session("s1")
        assert "s1" not in orchestrator.sessions
        assert "s1" not in orchestrator._locks

    @pytest.mark.asyncio
    async def test_reset_during_turn_releases_lock_afterwards(
        self, completion_provider, conversation_config: ConversationConfig
    ) -> None:
        provider = completion_provider(scripts=[["one", " two", " three"]], delay=0.01)
        orchestrator = make_orchestrator(provider, conversation_config)

        reset = False
        async for event in orchestrator.submit_turn("s1", "count"):
            if event.type == TurnEventType.DELTA and not reset:
                reset = orchestrator.reset_session("s1")
                assert "s1" in orchestrator._locks

        assert reset
        assert "s1" not in orchestrator._locks
        again = await run_turn(orchestrator, "s1", "hello")
        assert again[-1].type == TurnEventType.DONE
        assert "s1" in orchestrator._locks

    @pytest.mark.asyncio
    async def test_checkpoint_and_restore(
        self, completion_provider, conversation_config, tmp_path: Path
    ) -> None:
        storage = SessionStorage(tmp_path / "sessions")
        orchestrator = make_orchestrator(
            completion_provider(), conversation_config, storage=storage
        )
        await run_turn(orchestrator, "s1", "remember this")

        path = await orchestrator.checkpoint("s1")
        assert path.exists()
        orchestrator.reset_session("s1")

        restored = await orchestrator.restore("s1")
        assert [m.content for m in restored.messages] == ["remember this", "Hello from the model."]
        assert orchestrator.get_session("s1") is restored

    @pytest.mark.asyncio
    async def test_checkpoint_without_storage(
        self, completion_provider, conversation_config
    ) -> None:
        orchestrator = make_orchestrator(completion_provider(), conversation_config)
        await run_turn(orchestrator, "s1", "hi")
        with pytest.raises(SessionError):
            await orchestrator.checkpoint("s1")

    @pytest.mark.asyncio
    async def test_close(self, completion_provider, conversation_config) -> None:
        provider = completion_provider()
        orchestrator = make_orchestrator(provider, conversation_config)
        await orchestrator.close()
        assert provider.closed
