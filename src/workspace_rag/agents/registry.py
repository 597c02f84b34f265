"""Registry of sub-agents keyed by :class:`AgentKind`."""

from __future__ import annotations

import asyncio
import time

import httpx

from workspace_rag.agents.base import AgentKind, AgentRequest, AgentResult, SubAgent
from workspace_rag.core.errors import WorkspaceRagError
from workspace_rag.core.logging import get_logger

logger = get_logger("agents")


class AgentRegistry:
    """Resolves an :class:`AgentRequest` to its agent and runs it.

    Dispatch never raises for agent failures: unknown kinds, timeouts and
    errors all become a failed :class:`AgentResult`, so a turn can continue
    without the sub-task's output.
    """

    def __init__(self, timeout: float = 20.0) -> None:
        self.timeout = timeout
        self._agents: dict[AgentKind, SubAgent] = {}

    def register(self, agent: SubAgent) -> None:
        if agent.kind in self._agents:
            raise ValueError(f"Agent already registered: {agent.kind.value}")
        self._agents[agent.kind] = agent
        logger.debug(f"Registered agent: {agent.kind.value}")

    def unregister(self, kind: AgentKind) -> bool:
        return self._agents.pop(kind, None) is not None

    def get(self, kind: AgentKind) -> SubAgent | None:
        return self._agents.get(kind)

    def kinds(self) -> list[AgentKind]:
        return sorted(self._agents, key=lambda k: k.value)

    def __contains__(self, kind: object) -> bool:
        return kind in self._agents

    async def dispatch(self, request: AgentRequest) -> AgentResult:
        """Run the agent for ``request`` within the registry timeout."""
        agent = self._agents.get(request.kind)
        if agent is None:
            logger.warning(f"No agent registered for {request.kind.value}")
            return AgentResult.fail(request.kind, f"Agent not available: {request.kind.value}")

        start = time.monotonic()
        try:
            result = await asyncio.wait_for(agent.run(request), timeout=self.timeout)
        except TimeoutError:
            result = AgentResult.fail(request.kind, f"Agent timed out after {self.timeout}s")
        except (WorkspaceRagError, httpx.HTTPError) as e:
            result = AgentResult.fail(request.kind, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in agent {request.kind.value}")
            result = AgentResult.fail(request.kind, f"Unexpected error: {e!s}")

        result.duration_ms = (time.monotonic() - start) * 1000
        if not result.success:
            logger.warning(
                f"Agent {request.kind.value} degraded, answering without it: {result.error}"
            )
        return result

    async def close(self) -> None:
        for agent in self._agents.values():
            await agent.close()
