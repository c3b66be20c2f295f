"""Abstract interface for invoking agents from workflow steps."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional



@dataclass
class AgentResponse:
    """What an agent returned for one prompt."""

    content: str
    tokens_used: int = 0


class AgentInvoker(ABC):
    """Capability boundary between the workflow engine and real agents."""

    @abstractmethod
    async def invoke(self, agent_role: str, prompt: str, context: Dict[str, Any]) -> AgentResponse:
        """Run one prompt against an agent.

        Args:
            agent_role: Logical role of the agent (e.g. "verification")
            prompt: Prompt with workflow variables already interpolated
            context: Execution variables plus routing details such as the
                resolved tree node

        Returns:
            The agent's response and token usage

        Raises:
            Any exception; the engine records it as a failed step attempt
        """
        pass


class CallableAgentInvoker(AgentInvoker):
    """Adapts an async function ``(role, prompt, context) -> AgentResponse``."""

    def __init__(self, func: Callable[[str, str, Dict[str, Any]], Awaitable[AgentResponse]]):
        self.func = func

    async def invoke(self, agent_role: str, prompt: str, context: Dict[str, Any]) -> AgentResponse:
        response = await self.func(agent_role, prompt, context)
        if isinstance(response, str):
            response = AgentResponse(content=response)
        return response


class ScriptedAgentInvoker(AgentInvoker):
    """Replays canned responses per role, for dry runs and tests.

    The last response for a role repeats once its script is used up.
    """

    def __init__(self, scripts: Optional[Dict[str, Iterable[Any]]] = None, default: str = ""):
        self.scripts: Dict[str, List[Any]] = {role: list(items) for role, items in (scripts or {}).items()}
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    async def invoke(self, agent_role: str, prompt: str, context: Dict[str, Any]) -> AgentResponse:
        self.calls.append({"agent_role": agent_role, "prompt": prompt})
        script = self.scripts.get(agent_role)
        if not script:
            return AgentResponse(content=self.default)

        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, AgentResponse):
            return item
        return AgentResponse(content=str(item), tokens_used=len(str(item).split()))
