"""Operator HTTP endpoints over the orchestration core."""

from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from orchestry.agents.models import NodeRecord
from orchestry.agents.tree_manager import AgentTreeManager
from orchestry.core.database import DatabaseManager
from orchestry.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    OrchestryError,
    TicketBlockedError,
    ValidationError,
)
from orchestry.scheduling.models import TaskRecord
from orchestry.scheduling.task_scheduler import TaskScheduler
from orchestry.tickets.models import TicketRecord
from orchestry.tickets.ticket_manager import TicketManager
from orchestry.workflows.engine import WorkflowEngine
from orchestry.workflows.models import ExecutionRecord, ExecutionState

logger = logging.getLogger(__name__)


class ClaimTaskRequest(BaseModel):
    """Request model for claiming the next ready task."""

    claimed_by: str = Field(..., description="ID of the claiming agent")
    plan_id: Optional[str] = Field(default=None, description="Restrict the claim to one plan")


class GhostTicketRequest(BaseModel):
    """Request model for asking the user a question about a ticket."""

    question: str = Field(..., description="Question shown to the user")
    context: Optional[str] = Field(default=None, description="Why the question is being asked")
    navigation_target: Optional[str] = Field(default=None, description="Where the user should look")
    technical_context: Optional[str] = None


class ResolveGhostRequest(BaseModel):
    """Request model for answering a ghost ticket."""

    answer: Optional[str] = Field(default=None, description="The user's answer, stored as a reply")


class ApprovalRequest(BaseModel):
    """Request model for an approval gate decision."""

    approved: bool
    notes: Optional[str] = None


class DeleteTicketResponse(BaseModel):
    success: bool
    ticket_id: str


def _http_error(error: Exception) -> HTTPException:
    """Map a domain error to the matching HTTP status."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (InvalidTransitionError, TicketBlockedError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    logger.error(f"Unexpected error handling request: {error}")
    return HTTPException(status_code=500, detail=str(error))


def create_orchestration_routes(
    task_scheduler: TaskScheduler,
    ticket_manager: TicketManager,
    workflow_engine: WorkflowEngine,
    tree_manager: AgentTreeManager,
) -> APIRouter:
    """Create the operator API routes."""
    router = APIRouter(prefix="/api", tags=["Orchestration API"])

    @router.get("/tasks/ready", response_model=List[TaskRecord])
    async def get_ready_tasks(plan_id: Optional[str] = None):
        """Get tasks whose dependencies are all verified, in claim order."""
        try:
            return task_scheduler.list_ready(plan_id)
        except OrchestryError as e:
            raise _http_error(e)

    @router.post("/tasks/claim", response_model=Optional[TaskRecord])
    async def claim_task(request: ClaimTaskRequest):
        """Claim the next ready task; null when nothing is ready."""
        try:
            return task_scheduler.claim_next(plan_id=request.plan_id, claimed_by=request.claimed_by)
        except OrchestryError as e:
            raise _http_error(e)

    @router.post("/tickets/{ticket_id}/ghost", response_model=TicketRecord)
    async def create_ghost_ticket(ticket_id: str, request: GhostTicketRequest):
        """Block a ticket on a question to the user."""
        try:
            return ticket_manager.create_ghost_ticket(
                ticket_id,
                request.question,
                context=request.context,
                navigation_target=request.navigation_target,
                technical_context=request.technical_context,
            )
        except OrchestryError as e:
            raise _http_error(e)

    @router.post("/tickets/ghost/{ghost_id}/resolve", response_model=TicketRecord)
    async def resolve_ghost_ticket(ghost_id: str, request: ResolveGhostRequest):
        """Answer a ghost ticket; returns the unblocked parent."""
        try:
            return ticket_manager.resolve_ghost_ticket(ghost_id, answer=request.answer)
        except OrchestryError as e:
            raise _http_error(e)

    @router.delete("/tickets/{ticket_id}", response_model=DeleteTicketResponse)
    async def delete_ticket(ticket_id: str):
        """Delete a ticket, re-parenting its children to its own parent."""
        try:
            deleted = ticket_manager.delete_ticket(ticket_id)
        except OrchestryError as e:
            raise _http_error(e)
        if not deleted:
            raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
        return DeleteTicketResponse(success=True, ticket_id=ticket_id)

    @router.get("/tickets/queue/{queue}", response_model=List[TicketRecord])
    async def get_queue(queue: str, status: Optional[str] = None):
        """Get the tickets routed to a team queue."""
        try:
            return ticket_manager.by_queue(queue, status)
        except OrchestryError as e:
            raise _http_error(e)

    @router.post("/workflow-executions/{execution_id}/approval", response_model=ExecutionRecord)
    async def decide_approval(execution_id: str, request: ApprovalRequest):
        """Approve or reject an execution waiting at an approval gate."""
        try:
            return workflow_engine.handle_approval(execution_id, request.approved, request.notes)
        except OrchestryError as e:
            raise _http_error(e)

    @router.get("/workflow-executions/{execution_id}", response_model=ExecutionState)
    async def get_execution(execution_id: str):
        """Get an execution with its steps and recorded results."""
        state = workflow_engine.get_execution_state(execution_id)
        if state is None:
            raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
        return state

    @router.get("/agent-tree/resolve", response_model=NodeRecord)
    async def resolve_agent_node(
        role: str = Query(..., description="Agent role to route"),
        context: Optional[str] = None,
        instance_id: Optional[str] = None,
    ):
        """Route an agent role to a tree node."""
        node = tree_manager.resolve_node(role, context=context, instance_id=instance_id)
        if node is None:
            raise HTTPException(status_code=404, detail="Agent tree is empty")
        return node

    return router


def create_app(db_manager: DatabaseManager, **engine_kwargs: Any) -> FastAPI:
    """Build a FastAPI app serving the operator API for one store."""
    tree_manager = AgentTreeManager(db_manager)
    ticket_manager = TicketManager(db_manager)
    engine_kwargs.setdefault("tree_manager", tree_manager)
    engine_kwargs.setdefault("ticket_manager", ticket_manager)

    app = FastAPI(title="Orchestry", description="Task, ticket and workflow orchestration API")
    app.include_router(create_orchestration_routes(
        TaskScheduler(db_manager),
        ticket_manager,
        WorkflowEngine(db_manager, **engine_kwargs),
        tree_manager,
    ))

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "healthy"}

    return app
