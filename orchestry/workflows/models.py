"""Data models for workflow definitions and executions."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orchestry.core.states import (
    StepResultStatus,
    WorkflowExecutionStatus,
    WorkflowStatus,
    WorkflowStepType,
)


class StepSpec(BaseModel):
    """Model for a single workflow step as supplied by a workflow author."""

    id: Optional[str] = Field(None, description="Optional caller-chosen id so steps in one batch can reference each other")
    label: str = Field(..., description="Human readable step name")
    step_type: WorkflowStepType = Field(..., description="What the step does when reached")
    agent_type: Optional[str] = Field(None, description="Agent role executing an agent_call step")
    agent_prompt: Optional[str] = Field(None, description="Prompt template; $variables are interpolated")
    condition_expression: Optional[str] = Field(None, description="Expression for condition and loop steps")
    acceptance_criteria: Optional[str] = Field(
        None,
        description="Comma-separated keywords; the agent response passes if it contains any of them"
    )
    next_step_id: Optional[str] = None
    true_branch_step_id: Optional[str] = None
    false_branch_step_id: Optional[str] = None
    parallel_step_ids: List[str] = Field(default_factory=list)
    escalation_step_id: Optional[str] = None
    max_retries: int = Field(0, description="Failed attempts allowed before escalation or failure")
    retry_delay_ms: int = Field(0, description="Delay between attempts; wait duration for wait steps")
    sort_order: Optional[int] = Field(None, description="Lowest sort_order is the entry step")

    @field_validator("max_retries", "retry_delay_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    def references(self) -> List[str]:
        refs = [
            self.next_step_id,
            self.true_branch_step_id,
            self.false_branch_step_id,
            self.escalation_step_id,
            *self.parallel_step_ids,
        ]
        return [ref for ref in refs if ref]


class DefinitionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    status: WorkflowStatus
    version: int
    mermaid_source: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class StepRecord(BaseModel):
    """Detached snapshot of a workflow step row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    version: int
    label: str
    step_type: WorkflowStepType
    agent_type: Optional[str] = None
    agent_prompt: Optional[str] = None
    condition_expression: Optional[str] = None
    acceptance_criteria: Optional[str] = None
    next_step_id: Optional[str] = None
    true_branch_step_id: Optional[str] = None
    false_branch_step_id: Optional[str] = None
    parallel_step_ids: List[str] = Field(default_factory=list)
    escalation_step_id: Optional[str] = None
    max_retries: int = 0
    retry_delay_ms: int = 0
    sort_order: int = 0


class StepResultRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    execution_id: str
    step_id: str
    status: StepResultStatus
    agent_response: Optional[str] = None
    acceptance_check: Optional[bool] = None
    retries: int = 0
    duration_ms: int = 0
    tokens_used: int = 0
    error: Optional[str] = None
    created_at: datetime


class ExecutionRecord(BaseModel):
    """Detached snapshot of a workflow execution row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    workflow_version: int
    ticket_id: Optional[str] = None
    task_id: Optional[str] = None
    current_step_id: Optional[str] = None
    status: WorkflowExecutionStatus
    step_results: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    step_retries: Dict[str, int] = Field(default_factory=dict)
    tokens_consumed: int = 0
    last_error: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class ExecutionState(BaseModel):
    execution: ExecutionRecord
    steps: List[StepRecord]
    results: List[StepResultRecord]


@dataclass
class StepOutcome:
    """Outcome of one step attempt, before it is persisted."""

    step_id: str
    status: StepResultStatus
    agent_response: Optional[str] = None
    acceptance_check: Optional[bool] = None
    retries: int = 0
    duration_ms: int = 0
    tokens_used: int = 0
    error: Optional[str] = None
    next_step_id: Optional[str] = None
    retry_after_ms: Optional[int] = None  # Set when the execution stays on the step for another attempt

    @property
    def succeeded(self) -> bool:
        return self.status == StepResultStatus.COMPLETED

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "agent_response": self.agent_response,
            "acceptance_check": self.acceptance_check,
            "retries": self.retries,
            "duration_ms": self.duration_ms,
            "tokens_used": self.tokens_used,
            "error": self.error,
        }
