"""Ticket lifecycle manager.

Owns ticket status transitions, the parent/child ticket forest, retry
accounting and the ghost-ticket protocol: when an agent needs user input
mid-ticket, a P1 ghost ticket is created under the blocked ticket together
with a question-queue entry, and resolving the ghost unblocks the parent.
"""

import uuid
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from orchestry.core.database import (
    DatabaseManager,
    AIQuestion,
    EscalationChain,
    Sequence,
    Ticket,
    TicketReply,
    WorkflowExecution,
)
from orchestry.core.exceptions import (
    NotAGhostTicketError,
    TicketBlockedError,
    TicketNotFoundError,
    ValidationError,
)
from orchestry.core.simple_config import SimpleConfig, get_config
from orchestry.core.states import (
    PRIORITY_RANK,
    TICKET_TRANSITIONS,
    Priority,
    ProcessingStatus,
    QuestionStatus,
    TeamQueue,
    TicketStatus,
    ensure_transition,
)
from orchestry.tickets.models import QuestionRecord, ReplyRecord, TicketRecord, TicketUpdate

logger = logging.getLogger(__name__)

TICKET_SEQUENCE = "ticket_number"
GHOST_OPERATION_TYPE = "ghost_ticket"
GHOST_DELIVERABLE_TYPE = "communication"

PLANNING_OPERATIONS = ("plan_generation", "design_change", "gap_analysis", "design_score")
PLANNING_TITLE_PREFIXES = ("phase: design", "phase: data model", "phase: task generation")
VERIFICATION_TITLE_PREFIXES = ("phase: verification", "verify:")
CODING_TITLE_PREFIXES = ("coding:", "rework:")


def _ticket_sort_key(ticket) -> tuple:
    return (PRIORITY_RANK[Priority(ticket.priority)], ticket.created_at, ticket.ticket_number)


class TicketManager:
    """Manages ticket state, hierarchy and ghost-ticket blocking."""

    def __init__(self, db_manager: DatabaseManager, config: Optional[SimpleConfig] = None):
        """Initialize ticket manager.

        Args:
            db_manager: Database manager instance
            config: Settings (default retry budget); defaults to the process config
        """
        self.db_manager = db_manager
        self.config = config or get_config()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _next_ticket_number(session: Session) -> int:
        """Increment the ticket sequence inside the caller's transaction."""
        sequence = (
            session.query(Sequence)
            .filter(Sequence.name == TICKET_SEQUENCE)
            .with_for_update()
            .one_or_none()
        )
        if sequence is None:
            sequence = Sequence(name=TICKET_SEQUENCE, value=0)
            session.add(sequence)
        sequence.value += 1
        return sequence.value

    @staticmethod
    def _load(session: Session, ticket_id: str) -> Ticket:
        ticket = session.get(Ticket, ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    @staticmethod
    def _apply_status(ticket: Ticket, target: str) -> None:
        ensure_transition("ticket", TICKET_TRANSITIONS, TicketStatus, ticket.status, target)
        if target == TicketStatus.RESOLVED.value and ticket.status != target:
            ticket.resolved_at = datetime.utcnow()
            ticket.archived = True
        elif ticket.status == TicketStatus.RESOLVED.value and target == TicketStatus.OPEN.value:
            ticket.resolved_at = None
            ticket.archived = False
        ticket.status = target

    @staticmethod
    def _can_transition(current: str, target: str) -> bool:
        if current == target:
            return True
        return TicketStatus(target) in TICKET_TRANSITIONS[TicketStatus(current)]

    @staticmethod
    def _open_ghost_children(session: Session, parent_id: str, exclude_id: Optional[str] = None) -> List[Ticket]:
        query = session.query(Ticket).filter(
            Ticket.parent_ticket_id == parent_id,
            Ticket.is_ghost.is_(True),
            Ticket.status == TicketStatus.OPEN.value,
        )
        if exclude_id:
            query = query.filter(Ticket.id != exclude_id)
        return sorted(query.all(), key=_ticket_sort_key)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_ticket(
        self,
        title: str,
        body: str = "",
        priority: str = Priority.P2.value,
        creator: str = "system",
        parent_ticket_id: Optional[str] = None,
        task_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        operation_type: str = "user_created",
        auto_created: bool = False,
        deliverable_type: Optional[str] = None,
        assigned_queue: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> TicketRecord:
        """Create an open ticket with the next ticket number."""
        priority = Priority(priority).value
        if max_retries is None:
            max_retries = self.config.default_ticket_max_retries
        if max_retries < 0:
            raise ValidationError("max_retries must be >= 0")

        with self.db_manager.exclusive_session() as session:
            if parent_ticket_id:
                self._load(session, parent_ticket_id)

            ticket = Ticket(
                id=str(uuid.uuid4()),
                ticket_number=self._next_ticket_number(session),
                title=title,
                body=body,
                status=TicketStatus.OPEN.value,
                priority=priority,
                creator=creator,
                parent_ticket_id=parent_ticket_id,
                task_id=task_id,
                plan_id=plan_id,
                operation_type=operation_type,
                auto_created=auto_created,
                deliverable_type=deliverable_type,
                assigned_queue=assigned_queue,
                max_retries=max_retries,
            )
            session.add(ticket)
            session.flush()
            record = TicketRecord.model_validate(ticket)

        logger.info(f"[TICKETS] Created TK-{record.ticket_number} '{title}' ({priority}, {operation_type})")
        return record

    def get_ticket(self, ticket_id: str) -> Optional[TicketRecord]:
        with self.db_manager.session_scope() as session:
            ticket = session.get(Ticket, ticket_id)
            return TicketRecord.model_validate(ticket) if ticket else None

    def get_ticket_by_number(self, ticket_number: int) -> Optional[TicketRecord]:
        with self.db_manager.session_scope() as session:
            ticket = session.query(Ticket).filter(Ticket.ticket_number == ticket_number).one_or_none()
            return TicketRecord.model_validate(ticket) if ticket else None

    def update_ticket(self, ticket_id: str, update: TicketUpdate) -> TicketRecord:
        """Apply the fields explicitly set on ``update``."""
        changes = update.model_dump(exclude_unset=True)
        with self.db_manager.session_scope() as session:
            ticket = self._load(session, ticket_id)
            for field_name, value in changes.items():
                if value is None and field_name in ("title", "priority", "max_retries"):
                    continue
                if hasattr(value, "value"):
                    value = value.value
                setattr(ticket, field_name, value)
            session.flush()
            return TicketRecord.model_validate(ticket)

    def transition(self, ticket_id: str, new_status: str) -> TicketRecord:
        """Move a ticket along its transition table.

        Raises:
            InvalidTransitionError: If the move is not allowed
            ValidationError: If entering ``blocked`` without an open blocking ghost
        """
        target = TicketStatus(new_status).value
        with self.db_manager.session_scope() as session:
            ticket = self._load(session, ticket_id)
            if target == TicketStatus.BLOCKED.value:
                blocker = session.get(Ticket, ticket.blocking_ticket_id) if ticket.blocking_ticket_id else None
                if blocker is None or not blocker.is_ghost or blocker.status != TicketStatus.OPEN.value:
                    raise ValidationError(f"Ticket {ticket_id} can only be blocked by an open ghost ticket")
            previous = ticket.status
            self._apply_status(ticket, target)
            session.flush()
            record = TicketRecord.model_validate(ticket)

        if previous != target:
            logger.info(f"[TICKETS] TK-{record.ticket_number}: {previous} -> {target}")
        return record

    # ------------------------------------------------------------------
    # Ghost tickets
    # ------------------------------------------------------------------

    def create_ghost_ticket(
        self,
        parent_id: str,
        question: str,
        context: Optional[str] = None,
        navigation_target: Optional[str] = None,
        plan_id: Optional[str] = None,
        technical_context: Optional[str] = None,
    ) -> TicketRecord:
        """Block ``parent_id`` on a question for the user.

        Writes the ghost ticket, the parent's blocking reference and the queued
        question in one transaction.

        Returns:
            The ghost ticket
        """
        with self.db_manager.exclusive_session() as session:
            parent = self._load(session, parent_id)
            plan_id = plan_id or parent.plan_id

            summary = question.strip().splitlines()[0] if question.strip() else "Question"
            if len(summary) > 120:
                summary = summary[:117] + "..."

            ghost = Ticket(
                id=str(uuid.uuid4()),
                ticket_number=self._next_ticket_number(session),
                title=f"Question: {summary}",
                body=question if not context else f"{question}\n\n{context}",
                status=TicketStatus.OPEN.value,
                priority=Priority.P1.value,
                creator="system",
                parent_ticket_id=parent.id,
                plan_id=plan_id,
                is_ghost=True,
                auto_created=True,
                operation_type=GHOST_OPERATION_TYPE,
                deliverable_type=GHOST_DELIVERABLE_TYPE,
                processing_status=ProcessingStatus.AWAITING_USER.value,
                max_retries=self.config.default_ticket_max_retries,
            )
            session.add(ghost)
            session.flush()

            parent.blocking_ticket_id = ghost.id
            parent.processing_status = ProcessingStatus.AWAITING_USER.value
            if self._can_transition(parent.status, TicketStatus.BLOCKED.value):
                parent.status = TicketStatus.BLOCKED.value

            session.add(AIQuestion(
                id=str(uuid.uuid4()),
                plan_id=plan_id,
                ticket_id=ghost.id,
                question=question,
                context=context,
                technical_context=technical_context,
                navigation_target=navigation_target,
                priority=ghost.priority,
                queue_priority=PRIORITY_RANK[Priority(ghost.priority)] + 1,
                status=QuestionStatus.PENDING.value,
            ))
            session.flush()
            record = TicketRecord.model_validate(ghost)
            parent_number = parent.ticket_number

        logger.info(f"[TICKETS] Ghost TK-{record.ticket_number} now blocks TK-{parent_number}")
        return record

    def resolve_ghost_ticket(self, ghost_id: str, answer: Optional[str] = None) -> TicketRecord:
        """Resolve a ghost ticket and unblock its parent.

        If the parent has another open ghost it stays blocked on that one.

        Returns:
            The parent ticket, or the ghost itself when it has no parent
        """
        with self.db_manager.exclusive_session() as session:
            ghost = self._load(session, ghost_id)
            if not ghost.is_ghost:
                raise NotAGhostTicketError(f"Ticket {ghost_id} is not a ghost ticket")

            if ghost.status == TicketStatus.RESOLVED.value:
                parent = session.get(Ticket, ghost.parent_ticket_id) if ghost.parent_ticket_id else None
                logger.info(f"[TICKETS] Ghost TK-{ghost.ticket_number} already resolved, nothing to do")
                return TicketRecord.model_validate(parent or ghost)

            self._apply_status(ghost, TicketStatus.RESOLVED.value)
            ghost.processing_status = ProcessingStatus.COMPLETED.value

            for question in session.query(AIQuestion).filter(AIQuestion.ticket_id == ghost.id).all():
                question.status = QuestionStatus.ANSWERED.value
                if answer is not None:
                    question.user_answer = answer

            if answer:
                session.add(TicketReply(id=str(uuid.uuid4()), ticket_id=ghost.id, author="user", body=answer))

            parent = session.get(Ticket, ghost.parent_ticket_id) if ghost.parent_ticket_id else None
            if parent is None:
                logger.error(
                    f"[TICKETS] Integrity violation: ghost TK-{ghost.ticket_number} has no parent ticket; "
                    f"returning the ghost itself"
                )
                session.flush()
                return TicketRecord.model_validate(ghost)

            if parent.blocking_ticket_id in (ghost.id, None):
                remaining = self._open_ghost_children(session, parent.id, exclude_id=ghost.id)
                if remaining:
                    parent.blocking_ticket_id = remaining[0].id
                    logger.info(
                        f"[TICKETS] TK-{parent.ticket_number} still blocked by ghost TK-{remaining[0].ticket_number}"
                    )
                else:
                    parent.blocking_ticket_id = None
                    parent.processing_status = ProcessingStatus.QUEUED.value
                    if parent.status == TicketStatus.BLOCKED.value:
                        parent.status = TicketStatus.OPEN.value

            session.flush()
            record = TicketRecord.model_validate(parent)

        logger.info(f"[TICKETS] Resolved ghost {ghost_id[:8]}, TK-{record.ticket_number} unblocked={not record.is_blocked}")
        return record

    def get_questions(self, plan_id: Optional[str] = None, status: Optional[str] = None) -> List[QuestionRecord]:
        """Question queue entries, most urgent first."""
        with self.db_manager.session_scope() as session:
            query = session.query(AIQuestion)
            if plan_id:
                query = query.filter(AIQuestion.plan_id == plan_id)
            if status:
                query = query.filter(AIQuestion.status == QuestionStatus(status).value)
            rows = query.order_by(AIQuestion.queue_priority, AIQuestion.created_at).all()
            return [QuestionRecord.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_ticket(self, ticket_id: str) -> bool:
        """Delete a ticket, handing its children to its own parent.

        Returns:
            False if the ticket did not exist
        """
        with self.db_manager.exclusive_session() as session:
            ticket = session.get(Ticket, ticket_id)
            if ticket is None:
                return False

            # Open ghosts asked about this ticket only; they must not block the new parent.
            orphaned_ghosts = self._open_ghost_children(session, ticket_id)
            for ghost in orphaned_ghosts:
                self._apply_status(ghost, TicketStatus.CANCELLED.value)
                ghost.processing_status = ProcessingStatus.COMPLETED.value
                session.query(AIQuestion).filter(
                    AIQuestion.ticket_id == ghost.id,
                    AIQuestion.status == QuestionStatus.PENDING.value,
                ).update({AIQuestion.status: QuestionStatus.DISMISSED.value}, synchronize_session=False)
            if orphaned_ghosts:
                session.flush()
                logger.info(f"[TICKETS] Cancelled {len(orphaned_ghosts)} open ghost tickets of TK-{ticket.ticket_number}")

            new_parent_id = ticket.parent_ticket_id
            moved = session.query(Ticket).filter(Ticket.parent_ticket_id == ticket_id).update(
                {Ticket.parent_ticket_id: new_parent_id}, synchronize_session=False
            )

            for blocked in session.query(Ticket).filter(Ticket.blocking_ticket_id == ticket_id).all():
                blocked.blocking_ticket_id = None
                blocked.processing_status = ProcessingStatus.QUEUED.value
                if blocked.status == TicketStatus.BLOCKED.value:
                    blocked.status = TicketStatus.OPEN.value

            session.query(AIQuestion).filter(AIQuestion.ticket_id == ticket_id).update(
                {AIQuestion.ticket_id: None}, synchronize_session=False
            )
            session.query(WorkflowExecution).filter(WorkflowExecution.ticket_id == ticket_id).update(
                {WorkflowExecution.ticket_id: None}, synchronize_session=False
            )
            session.query(EscalationChain).filter(EscalationChain.ticket_id == ticket_id).update(
                {EscalationChain.ticket_id: None}, synchronize_session=False
            )

            number = ticket.ticket_number
            session.delete(ticket)

        logger.info(f"[TICKETS] Deleted TK-{number}, re-parented {moved} children to {new_parent_id or 'root'}")
        return True

    # ------------------------------------------------------------------
    # Processing & retries
    # ------------------------------------------------------------------

    def is_blocked(self, ticket_id: str) -> bool:
        with self.db_manager.session_scope() as session:
            return self._load(session, ticket_id).blocking_ticket_id is not None

    def begin_processing(self, ticket_id: str, agent: str) -> TicketRecord:
        """Hand a ticket to an agent.

        Raises:
            TicketBlockedError: While a ghost ticket blocks it
        """
        with self.db_manager.session_scope() as session:
            ticket = self._load(session, ticket_id)
            if ticket.blocking_ticket_id:
                raise TicketBlockedError(ticket_id, ticket.blocking_ticket_id)
            ticket.processing_agent = agent
            ticket.processing_status = ProcessingStatus.PROCESSING.value
            session.flush()
            record = TicketRecord.model_validate(ticket)

        logger.info(f"[TICKETS] TK-{record.ticket_number} processing by {agent}")
        return record

    def record_failure(self, ticket_id: str, error: str, ask_user: bool = False) -> TicketRecord:
        """Count a failed processing attempt.

        Once the retry budget is spent the ticket is escalated instead of being
        queued again. With ``ask_user`` a ghost ticket explaining the failure is
        raised under it as well.
        """
        now = datetime.utcnow()
        with self.db_manager.session_scope() as session:
            ticket = self._load(session, ticket_id)
            ticket.retry_count = min(ticket.retry_count + 1, ticket.max_retries)
            ticket.last_error = error
            ticket.last_error_at = now

            exhausted = ticket.retry_count >= ticket.max_retries
            if exhausted:
                if self._can_transition(ticket.status, TicketStatus.ESCALATED.value):
                    self._apply_status(ticket, TicketStatus.ESCALATED.value)
                ticket.processing_status = ProcessingStatus.AWAITING_USER.value
            else:
                ticket.processing_status = ProcessingStatus.QUEUED.value
            session.flush()
            record = TicketRecord.model_validate(ticket)

        if not exhausted:
            logger.info(
                f"[TICKETS] TK-{record.ticket_number} attempt failed "
                f"({record.retry_count}/{record.max_retries}), requeued: {error}"
            )
            return record

        logger.warning(
            f"[TICKETS] TK-{record.ticket_number} exhausted {record.max_retries} retries, "
            f"status={record.status.value}: {error}"
        )
        if ask_user:
            self.create_ghost_ticket(
                record.id,
                question=(
                    f'The system tried to complete "{record.title}" {record.max_retries} times '
                    f"but couldn't get it right.\n\nWhat went wrong: {error}\n\nWhat would you like to do?"
                ),
                context=f'Ticket "{record.title}" failed {record.max_retries} times',
                navigation_target=f"tickets:{record.id}",
                plan_id=record.plan_id,
                technical_context=f"Ticket ID: {record.id}\nAttempts: {record.retry_count}\nLast error: {error}",
            )
            record = self.get_ticket(record.id)
        return record

    def reset_retries(self, ticket_id: str) -> TicketRecord:
        """Clear the retry counter after a successful attempt."""
        with self.db_manager.session_scope() as session:
            ticket = self._load(session, ticket_id)
            ticket.retry_count = 0
            ticket.processing_status = ProcessingStatus.COMPLETED.value
            session.flush()
            return TicketRecord.model_validate(ticket)

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    def add_reply(self, ticket_id: str, author: str, body: str) -> ReplyRecord:
        with self.db_manager.session_scope() as session:
            self._load(session, ticket_id)
            reply = TicketReply(id=str(uuid.uuid4()), ticket_id=ticket_id, author=author, body=body)
            session.add(reply)
            session.flush()
            return ReplyRecord.model_validate(reply)

    def get_replies(self, ticket_id: str) -> List[ReplyRecord]:
        with self.db_manager.session_scope() as session:
            rows = (
                session.query(TicketReply)
                .filter(TicketReply.ticket_id == ticket_id)
                .order_by(TicketReply.created_at)
                .all()
            )
            return [ReplyRecord.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Hierarchy & queues
    # ------------------------------------------------------------------

    def children(self, ticket_id: str) -> List[TicketRecord]:
        with self.db_manager.session_scope() as session:
            rows = (
                session.query(Ticket)
                .filter(Ticket.parent_ticket_id == ticket_id)
                .order_by(Ticket.ticket_number)
                .all()
            )
            return [TicketRecord.model_validate(row) for row in rows]

    def root_tickets(self, include_archived: bool = False) -> List[TicketRecord]:
        with self.db_manager.session_scope() as session:
            query = session.query(Ticket).filter(Ticket.parent_ticket_id.is_(None))
            if not include_archived:
                query = query.filter(Ticket.archived.is_(False))
            rows = query.order_by(Ticket.ticket_number).all()
            return [TicketRecord.model_validate(row) for row in rows]

    def by_queue(self, queue: str, status: Optional[str] = None) -> List[TicketRecord]:
        """Tickets assigned to a team queue, most urgent first."""
        with self.db_manager.session_scope() as session:
            query = session.query(Ticket).filter(Ticket.assigned_queue == queue)
            if status:
                query = query.filter(Ticket.status == TicketStatus(status).value)
            records = [TicketRecord.model_validate(row) for row in query.all()]
        return sorted(records, key=_ticket_sort_key)

    @staticmethod
    def route_to_queue(ticket: TicketRecord) -> str:
        """Pick the team queue that should handle a ticket."""
        valid_queues = {queue.value for queue in TeamQueue}
        if ticket.assigned_queue in valid_queues:
            return ticket.assigned_queue

        operation = ticket.operation_type or ""
        if operation == "code_generation":
            return TeamQueue.CODING_DIRECTOR.value
        if operation == "verification":
            return TeamQueue.VERIFICATION.value
        if operation in PLANNING_OPERATIONS:
            return TeamQueue.PLANNING.value
        if operation == "boss_directive":
            body = (ticket.body or "").lower().replace("target_queue: ", "target_queue:")
            for queue in (TeamQueue.PLANNING, TeamQueue.VERIFICATION, TeamQueue.CODING_DIRECTOR):
                if f"target_queue:{queue.value}" in body:
                    return queue.value
            return TeamQueue.ORCHESTRATOR.value

        title = ticket.title.lower()
        if title.startswith(PLANNING_TITLE_PREFIXES):
            return TeamQueue.PLANNING.value
        if title.startswith(VERIFICATION_TITLE_PREFIXES):
            return TeamQueue.VERIFICATION.value
        if title.startswith(CODING_TITLE_PREFIXES):
            return TeamQueue.CODING_DIRECTOR.value

        return TeamQueue.ORCHESTRATOR.value

    def enqueue(self, ticket_id: str) -> TicketRecord:
        """Route a ticket to its team queue and mark it queued."""
        with self.db_manager.session_scope() as session:
            ticket = self._load(session, ticket_id)
            queue = self.route_to_queue(TicketRecord.model_validate(ticket))
            ticket.assigned_queue = queue
            ticket.processing_status = ProcessingStatus.QUEUED.value
            session.flush()
            record = TicketRecord.model_validate(ticket)

        logger.info(f"[TICKETS] TK-{record.ticket_number} queued for {queue}")
        return record
