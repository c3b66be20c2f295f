"""Data models for tickets, replies and queued questions."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orchestry.core.states import Priority, ProcessingStatus, QuestionStatus, TicketStatus


class TicketRecord(BaseModel):
    """Detached snapshot of a ticket row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_number: int
    title: str
    body: str = ""
    status: TicketStatus
    priority: Priority
    creator: str = "system"
    assignee: Optional[str] = None
    task_id: Optional[str] = None
    plan_id: Optional[str] = None
    parent_ticket_id: Optional[str] = None
    auto_created: bool = False
    operation_type: str = "user_created"
    deliverable_type: Optional[str] = None
    is_ghost: bool = False
    blocking_ticket_id: Optional[str] = None
    assigned_queue: Optional[str] = None
    processing_agent: Optional[str] = None
    processing_status: Optional[ProcessingStatus] = None
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    archived: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def is_blocked(self) -> bool:
        return self.blocking_ticket_id is not None


class TicketUpdate(BaseModel):
    """Partial update for a ticket. Status changes go through ``TicketManager.transition``."""

    title: Optional[str] = Field(None, description="New ticket title")
    body: Optional[str] = None
    priority: Optional[Priority] = None
    assignee: Optional[str] = None
    task_id: Optional[str] = None
    plan_id: Optional[str] = None
    deliverable_type: Optional[str] = None
    assigned_queue: Optional[str] = None
    processing_agent: Optional[str] = None
    processing_status: Optional[ProcessingStatus] = None
    max_retries: Optional[int] = Field(None, description="Retry budget before escalation")

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("max_retries must be >= 0")
        return v


class ReplyRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    author: str
    body: str
    created_at: datetime


class QuestionRecord(BaseModel):
    """Question queue entry raised alongside a ghost ticket."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    plan_id: Optional[str] = None
    ticket_id: Optional[str] = None
    question: str
    context: Optional[str] = None
    technical_context: Optional[str] = None
    navigation_target: Optional[str] = None
    priority: Priority
    queue_priority: int
    status: QuestionStatus
    user_answer: Optional[str] = None
    created_at: datetime
