"""Boundaries to external capabilities."""

from orchestry.interfaces.agent_invoker import AgentInvoker, AgentResponse

__all__ = ["AgentInvoker", "AgentResponse"]
