"""Error taxonomy for the orchestration core.

Business-rule exhaustion (a ticket or workflow step running out of retries) is
deliberately absent here: it is a state transition, not an exception.
"""


class OrchestryError(Exception):
    """Base class for all orchestration errors."""


class StoreUnavailableError(OrchestryError):
    """The store aborted the transaction. Nothing was written; retry the operation."""


class ValidationError(OrchestryError):
    """A request was rejected before any write."""


class InvalidTransitionError(ValidationError):
    """A status change not allowed by the entity's transition table."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Illegal {entity} transition: {current} -> {target}")


class TreeValidationError(ValidationError):
    """Agent tree structural limit violated (level, fan-out or depth)."""


class WorkflowValidationError(ValidationError):
    """Workflow definition or step graph is malformed."""


class NotFoundError(OrchestryError):
    """Referenced record does not exist."""

    kind = "record"

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"{self.kind.capitalize()} {record_id} not found")


class TaskNotFoundError(NotFoundError):
    kind = "task"


class TicketNotFoundError(NotFoundError):
    kind = "ticket"


class WorkflowNotFoundError(NotFoundError):
    kind = "workflow"


class StepNotFoundError(NotFoundError):
    kind = "workflow step"


class ExecutionNotFoundError(NotFoundError):
    kind = "execution"


class NodeNotFoundError(NotFoundError):
    kind = "tree node"


class ChainNotFoundError(NotFoundError):
    kind = "escalation chain"


class NotAGhostTicketError(ValidationError):
    """Ghost-only operation called on a regular ticket."""


class TicketBlockedError(OrchestryError):
    """Ticket is blocked by an unresolved ghost ticket and cannot advance."""

    def __init__(self, ticket_id: str, blocking_ticket_id: str):
        self.ticket_id = ticket_id
        self.blocking_ticket_id = blocking_ticket_id
        super().__init__(f"Ticket {ticket_id} is blocked by ghost ticket {blocking_ticket_id}")
