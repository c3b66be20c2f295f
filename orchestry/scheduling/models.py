"""Data models for task scheduling."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orchestry.core.states import Priority, TaskStatus


class TaskRecord(BaseModel):
    """Detached snapshot of a task row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str = ""
    status: TaskStatus
    priority: Priority
    dependencies: List[str] = Field(default_factory=list)
    acceptance_criteria: str = ""
    plan_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    sort_order: int = 0
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class TaskUpdate(BaseModel):
    """Partial update for a task. Only fields explicitly set are written."""

    title: Optional[str] = Field(None, description="New task title")
    description: Optional[str] = None
    status: Optional[TaskStatus] = Field(None, description="Validated against the task transition table")
    priority: Optional[Priority] = None
    dependencies: Optional[List[str]] = Field(None, description="Replaces the ordered dependency list")
    acceptance_criteria: Optional[str] = None
    plan_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    sort_order: Optional[int] = None

    @field_validator("dependencies")
    @classmethod
    def validate_dependencies(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and len(set(v)) != len(v):
            raise ValueError("dependencies must not contain duplicates")
        return v
