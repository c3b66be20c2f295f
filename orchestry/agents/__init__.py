"""Agent tree: permissioned hierarchy, role routing and escalation chains."""

from orchestry.agents.tree_manager import AgentTreeManager

__all__ = ["AgentTreeManager"]
