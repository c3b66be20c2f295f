"""Closed status enumerations and their transition tables."""

from enum import Enum
from typing import Dict, FrozenSet, Type

from orchestry.core.exceptions import InvalidTransitionError


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    NEEDS_RECHECK = "needs_recheck"
    FAILED = "failed"
    DECOMPOSED = "decomposed"


class Priority(str, Enum):
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


PRIORITY_RANK = {Priority.P1: 0, Priority.P2: 1, Priority.P3: 2}


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_REVIEW = "in_review"
    BLOCKED = "blocked"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class ProcessingStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    AWAITING_USER = "awaiting_user"
    COMPLETED = "completed"
    FAILED = "failed"


class TeamQueue(str, Enum):
    ORCHESTRATOR = "orchestrator"
    PLANNING = "planning"
    VERIFICATION = "verification"
    CODING_DIRECTOR = "coding_director"


class QuestionStatus(str, Enum):
    PENDING = "pending"
    ANSWERED = "answered"
    DISMISSED = "dismissed"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"


class WorkflowStepType(str, Enum):
    AGENT_CALL = "agent_call"
    CONDITION = "condition"
    PARALLEL = "parallel"
    APPROVAL_GATE = "approval_gate"
    ESCALATION = "escalation"
    WAIT = "wait"
    LOOP = "loop"


class WorkflowExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"


class StepResultStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_APPROVAL = "waiting_approval"


class TreeNodeStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    BLOCKED = "blocked"


class EscalationChainStatus(str, Enum):
    ESCALATING = "escalating"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class AgentPermission(str, Enum):
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"
    ESCALATE = "escalate"
    SPAWN = "spawn"
    CONFIGURE = "configure"
    APPROVE = "approve"
    DELETE = "delete"


def _table(raw: Dict[Enum, set]) -> Dict[Enum, FrozenSet[Enum]]:
    return {state: frozenset(targets) for state, targets in raw.items()}


TASK_TRANSITIONS = _table({
    TaskStatus.NOT_STARTED: {TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.DECOMPOSED, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {
        TaskStatus.NOT_STARTED,
        TaskStatus.PENDING_VERIFICATION,
        TaskStatus.VERIFIED,
        TaskStatus.BLOCKED,
        TaskStatus.FAILED,
    },
    TaskStatus.BLOCKED: {TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.PENDING_VERIFICATION: {
        TaskStatus.VERIFIED,
        TaskStatus.NEEDS_RECHECK,
        TaskStatus.IN_PROGRESS,
        TaskStatus.FAILED,
    },
    TaskStatus.VERIFIED: {TaskStatus.NEEDS_RECHECK},
    TaskStatus.NEEDS_RECHECK: {TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS, TaskStatus.VERIFIED, TaskStatus.FAILED},
    TaskStatus.FAILED: {TaskStatus.NOT_STARTED},
    TaskStatus.DECOMPOSED: set(),
})

TICKET_TRANSITIONS = _table({
    TicketStatus.OPEN: {
        TicketStatus.IN_REVIEW,
        TicketStatus.BLOCKED,
        TicketStatus.ESCALATED,
        TicketStatus.RESOLVED,
        TicketStatus.CANCELLED,
    },
    TicketStatus.IN_REVIEW: {
        TicketStatus.OPEN,
        TicketStatus.BLOCKED,
        TicketStatus.ESCALATED,
        TicketStatus.RESOLVED,
        TicketStatus.CANCELLED,
    },
    TicketStatus.BLOCKED: {TicketStatus.OPEN, TicketStatus.IN_REVIEW, TicketStatus.RESOLVED, TicketStatus.CANCELLED},
    TicketStatus.ESCALATED: {TicketStatus.OPEN, TicketStatus.IN_REVIEW, TicketStatus.RESOLVED, TicketStatus.CANCELLED},
    TicketStatus.RESOLVED: {TicketStatus.OPEN},
    TicketStatus.CANCELLED: set(),
})

WORKFLOW_TRANSITIONS = _table({
    WorkflowStatus.DRAFT: {WorkflowStatus.ACTIVE, WorkflowStatus.DEPRECATED},
    WorkflowStatus.ACTIVE: {WorkflowStatus.DEPRECATED},
    WorkflowStatus.DEPRECATED: {WorkflowStatus.ACTIVE},
})

EXECUTION_TRANSITIONS = _table({
    WorkflowExecutionStatus.PENDING: {WorkflowExecutionStatus.RUNNING, WorkflowExecutionStatus.CANCELLED},
    WorkflowExecutionStatus.RUNNING: {
        WorkflowExecutionStatus.PENDING,
        WorkflowExecutionStatus.WAITING_APPROVAL,
        WorkflowExecutionStatus.COMPLETED,
        WorkflowExecutionStatus.FAILED,
        WorkflowExecutionStatus.ESCALATED,
        WorkflowExecutionStatus.CANCELLED,
    },
    WorkflowExecutionStatus.WAITING_APPROVAL: {
        WorkflowExecutionStatus.RUNNING,
        WorkflowExecutionStatus.FAILED,
        WorkflowExecutionStatus.CANCELLED,
    },
    WorkflowExecutionStatus.COMPLETED: set(),
    WorkflowExecutionStatus.FAILED: set(),
    WorkflowExecutionStatus.ESCALATED: set(),
    WorkflowExecutionStatus.CANCELLED: set(),
})

CHAIN_TRANSITIONS = _table({
    EscalationChainStatus.ESCALATING: {EscalationChainStatus.RESOLVED, EscalationChainStatus.ABANDONED},
    EscalationChainStatus.RESOLVED: set(),
    EscalationChainStatus.ABANDONED: set(),
})


def ensure_transition(
    entity: str,
    table: Dict[Enum, FrozenSet[Enum]],
    enum_cls: Type[Enum],
    current: str,
    target: str,
) -> None:
    """Raise InvalidTransitionError unless current -> target is in the table.

    Staying in the same state is always allowed.
    """
    current_state = enum_cls(current)
    target_state = enum_cls(target)
    if current_state == target_state:
        return
    if target_state not in table[current_state]:
        raise InvalidTransitionError(entity, current_state.value, target_state.value)


def check_constraint_sql(column: str, enum_cls: Type[Enum]) -> str:
    """Render a CHECK constraint expression limiting a column to an enum's values."""
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"
