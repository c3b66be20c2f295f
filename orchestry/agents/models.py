"""Data models for the agent tree."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orchestry.core.states import AgentPermission, EscalationChainStatus, TreeNodeStatus


class NodeSpec(BaseModel):
    """Model for a node to be added to an agent tree."""

    agent_type: str = Field(..., description="Role served by the node (e.g. 'verification')")
    name: str = Field(..., description="Unique within the tree instance")
    parent_id: Optional[str] = Field(None, description="Parent node; None only for the root")
    level: Optional[int] = Field(None, description="Defaults to parent level + 1, or 0 for a root")
    instance_id: Optional[str] = Field(None, description="Tree instance; inherited from the parent when omitted")
    scope: str = Field("", description="Comma-separated description of the node's responsibility")
    scope_keywords: Optional[List[str]] = Field(None, description="Defaults to the keywords parsed from scope")
    permissions: List[AgentPermission] = Field(
        default_factory=lambda: [AgentPermission.READ, AgentPermission.EXECUTE, AgentPermission.ESCALATE]
    )
    max_fanout: int = 5
    max_depth_below: int = 0
    escalation_threshold: int = 3
    escalation_target_id: Optional[str] = None

    @field_validator("max_fanout", "max_depth_below", "escalation_threshold")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v


class NodeRecord(BaseModel):
    """Detached snapshot of a tree node row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    instance_id: str
    agent_type: str
    name: str
    level: int
    parent_id: Optional[str] = None
    scope: str = ""
    scope_keywords: List[str] = Field(default_factory=list)
    permissions: List[AgentPermission] = Field(default_factory=list)
    max_fanout: int
    max_depth_below: int
    escalation_threshold: int
    escalation_target_id: Optional[str] = None
    status: TreeNodeStatus
    retries: int = 0
    escalations: int = 0
    tokens_consumed: int = 0

    def has_permission(self, permission: str) -> bool:
        return AgentPermission(permission) in self.permissions


class ChainRecord(BaseModel):
    """Detached snapshot of an escalation chain row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tree_root_id: str
    originating_node_id: str
    current_node_id: str
    ticket_id: Optional[str] = None
    question: str
    context: Optional[str] = None
    status: EscalationChainStatus
    levels_traversed: List[str] = Field(default_factory=list)
    resolved_at_level: Optional[int] = None
    answer: Optional[str] = None
    abandon_reason: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None
