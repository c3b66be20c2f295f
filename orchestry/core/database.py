"""Database models and schema for Orchestry."""

import os
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import (
    create_engine,
    event,
    Column,
    String,
    Text,
    Integer,
    DateTime,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
    JSON,
    Boolean,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from orchestry.core.exceptions import StoreUnavailableError
from orchestry.core.states import (
    EscalationChainStatus,
    Priority,
    ProcessingStatus,
    QuestionStatus,
    TaskStatus,
    TicketStatus,
    TreeNodeStatus,
    WorkflowExecutionStatus,
    WorkflowStatus,
    WorkflowStepType,
    check_constraint_sql,
)

Base = declarative_base()
logger = logging.getLogger(__name__)

# Execution option read by the "begin" listener to pick the SQLite BEGIN mode.
BEGIN_MODE_OPTION = "orchestry_begin_mode"


class Plan(Base):
    """Plan record owned by the planning subsystem; only its id scopes tasks and questions."""

    __tablename__ = "plans"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    status = Column(String, default="active", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Task(Base):
    """Task model representing a schedulable unit of work."""

    __tablename__ = "tasks"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, default="", nullable=False)
    status = Column(
        String,
        CheckConstraint(check_constraint_sql("status", TaskStatus)),
        default=TaskStatus.NOT_STARTED.value,
        nullable=False,
    )
    priority = Column(
        String,
        CheckConstraint(check_constraint_sql("priority", Priority)),
        default=Priority.P2.value,
        nullable=False,
    )
    dependencies = Column(JSON, default=list, nullable=False)  # Ordered list of task ids
    acceptance_criteria = Column(Text, default="", nullable=False)
    plan_id = Column(String, ForeignKey("plans.id"))
    parent_task_id = Column(String, ForeignKey("tasks.id"))
    sort_order = Column(Integer, default=0, nullable=False)

    # Claim bookkeeping
    claimed_by = Column(String)
    claimed_at = Column(DateTime)
    lease_expires_at = Column(DateTime)

    last_error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_tasks_status", "status"),
        Index("idx_tasks_plan", "plan_id"),
    )


class Sequence(Base):
    """Named monotonic counters (ticket numbers)."""

    __tablename__ = "sequences"

    name = Column(String, primary_key=True)
    value = Column(Integer, default=0, nullable=False)


class Ticket(Base):
    """Ticket model: work or conversation needing agent or human attention."""

    __tablename__ = "tickets"

    id = Column(String, primary_key=True)
    ticket_number = Column(Integer, unique=True, nullable=False)

    # Core Fields
    title = Column(String(500), nullable=False)
    body = Column(Text, default="", nullable=False)
    status = Column(
        String(50),
        CheckConstraint(check_constraint_sql("status", TicketStatus)),
        default=TicketStatus.OPEN.value,
        nullable=False,
    )
    priority = Column(
        String(20),
        CheckConstraint(check_constraint_sql("priority", Priority)),
        default=Priority.P2.value,
        nullable=False,
    )
    creator = Column(String, default="system", nullable=False)
    assignee = Column(String)

    # Links & References
    task_id = Column(String, ForeignKey("tasks.id"))
    plan_id = Column(String, ForeignKey("plans.id"))
    parent_ticket_id = Column(String, ForeignKey("tickets.id"))

    # Origin
    auto_created = Column(Boolean, default=False, nullable=False)
    operation_type = Column(String(50), default="user_created", nullable=False)
    deliverable_type = Column(String(50))
    is_ghost = Column(Boolean, default=False, nullable=False)

    # Blocking: the ghost ticket currently holding this one
    blocking_ticket_id = Column(String, ForeignKey("tickets.id"))

    # Processing & retries
    assigned_queue = Column(String(50))
    processing_agent = Column(String)
    processing_status = Column(String(30))
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    last_error = Column(Text)
    last_error_at = Column(DateTime)

    # Archival
    resolved_at = Column(DateTime)
    archived = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    parent_ticket = relationship("Ticket", remote_side=[id], foreign_keys=[parent_ticket_id])
    replies = relationship("TicketReply", back_populates="ticket", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="ck_tickets_retry_count"),
        Index("idx_tickets_status", "status"),
        Index("idx_tickets_parent", "parent_ticket_id"),
        Index("idx_tickets_queue_status", "assigned_queue", "status"),
    )


class TicketReply(Base):
    """Replies on a ticket. Removed together with their ticket."""

    __tablename__ = "ticket_replies"

    id = Column(String, primary_key=True)
    ticket_id = Column(String, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False)
    author = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    ticket = relationship("Ticket", back_populates="replies")


class AIQuestion(Base):
    """Question queue entry linked to a ghost ticket, carrying navigation context."""

    __tablename__ = "ai_questions"

    id = Column(String, primary_key=True)
    plan_id = Column(String, ForeignKey("plans.id"))
    ticket_id = Column(String, ForeignKey("tickets.id"))
    question = Column(Text, nullable=False)
    context = Column(Text)
    technical_context = Column(Text)
    navigation_target = Column(String)
    priority = Column(String(20), default=Priority.P2.value, nullable=False)
    queue_priority = Column(Integer, default=1, nullable=False)
    status = Column(
        String(20),
        CheckConstraint(check_constraint_sql("status", QuestionStatus)),
        default=QuestionStatus.PENDING.value,
        nullable=False,
    )
    user_answer = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_ai_questions_plan", "plan_id"),
        Index("idx_ai_questions_status", "status"),
    )


class WorkflowDefinition(Base):
    """A named, versioned step graph."""

    __tablename__ = "workflow_definitions"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    status = Column(
        String,
        CheckConstraint(check_constraint_sql("status", WorkflowStatus)),
        default=WorkflowStatus.DRAFT.value,
        nullable=False,
    )
    version = Column(Integer, default=1, nullable=False)
    mermaid_source = Column(Text)  # Diagnostic rendering of the step graph
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    steps = relationship("WorkflowStep", back_populates="definition", order_by="WorkflowStep.sort_order")
    executions = relationship("WorkflowExecution", back_populates="definition")


class WorkflowStep(Base):
    """One node of a workflow step graph. Immutable once an execution has referenced it."""

    __tablename__ = "workflow_steps"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False)
    version = Column(Integer, nullable=False)  # Definition version this step belongs to
    label = Column(String, nullable=False)
    step_type = Column(
        String,
        CheckConstraint(check_constraint_sql("step_type", WorkflowStepType)),
        nullable=False,
    )
    agent_type = Column(String)
    agent_prompt = Column(Text)
    condition_expression = Column(Text)
    acceptance_criteria = Column(Text)

    # Graph edges
    next_step_id = Column(String)
    true_branch_step_id = Column(String)
    false_branch_step_id = Column(String)
    parallel_step_ids = Column(JSON, default=list, nullable=False)
    escalation_step_id = Column(String)

    # Retry policy
    max_retries = Column(Integer, default=0, nullable=False)
    retry_delay_ms = Column(Integer, default=0, nullable=False)

    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    definition = relationship("WorkflowDefinition", back_populates="steps")

    __table_args__ = (
        CheckConstraint("max_retries >= 0", name="ck_workflow_steps_max_retries"),
        CheckConstraint("retry_delay_ms >= 0", name="ck_workflow_steps_retry_delay"),
        Index("idx_workflow_steps_version", "workflow_id", "version"),
    )


class WorkflowExecution(Base):
    """One run of a workflow definition against a ticket or task."""

    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False)
    workflow_version = Column(Integer, nullable=False)
    ticket_id = Column(String, ForeignKey("tickets.id"))
    task_id = Column(String, ForeignKey("tasks.id"))
    current_step_id = Column(String, ForeignKey("workflow_steps.id"))
    status = Column(
        String,
        CheckConstraint(check_constraint_sql("status", WorkflowExecutionStatus)),
        default=WorkflowExecutionStatus.PENDING.value,
        nullable=False,
    )
    step_results = Column(JSON, default=dict, nullable=False)  # step id -> list of attempt summaries
    variables = Column(JSON, default=dict, nullable=False)
    step_retries = Column(JSON, default=dict, nullable=False)  # step id -> failed attempts so far
    step_claim_token = Column(String)  # set while one caller runs the current step
    step_claimed_at = Column(DateTime)
    tokens_consumed = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    definition = relationship("WorkflowDefinition", back_populates="executions")
    results = relationship("WorkflowStepResult", back_populates="execution", order_by="WorkflowStepResult.created_at")

    __table_args__ = (Index("idx_workflow_executions_status", "status"),)


class WorkflowStepResult(Base):
    """Outcome of one step attempt, kept as an audit trail."""

    __tablename__ = "workflow_step_results"

    id = Column(String, primary_key=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    step_id = Column(String, ForeignKey("workflow_steps.id"), nullable=False)
    status = Column(String, nullable=False)
    agent_response = Column(Text)
    acceptance_check = Column(Boolean)
    retries = Column(Integer, default=0, nullable=False)
    duration_ms = Column(Integer, default=0, nullable=False)
    tokens_used = Column(Integer, default=0, nullable=False)
    error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    execution = relationship("WorkflowExecution", back_populates="results")

    __table_args__ = (Index("idx_step_results_execution", "execution_id"),)


class AgentTreeNode(Base):
    """One addressable agent instance in the permissioned hierarchy."""

    __tablename__ = "agent_tree_nodes"

    id = Column(String, primary_key=True)
    instance_id = Column(String, nullable=False)  # Which tree this node belongs to
    agent_type = Column(String, nullable=False)
    name = Column(String, nullable=False)
    level = Column(Integer, nullable=False)
    parent_id = Column(String, ForeignKey("agent_tree_nodes.id"))
    scope = Column(Text, default="", nullable=False)
    scope_keywords = Column(JSON, default=list, nullable=False)
    permissions = Column(JSON, default=list, nullable=False)
    max_fanout = Column(Integer, default=5, nullable=False)
    max_depth_below = Column(Integer, default=9, nullable=False)
    escalation_threshold = Column(Integer, default=3, nullable=False)
    escalation_target_id = Column(String, ForeignKey("agent_tree_nodes.id"))
    status = Column(
        String,
        CheckConstraint(check_constraint_sql("status", TreeNodeStatus)),
        default=TreeNodeStatus.IDLE.value,
        nullable=False,
    )

    # Telemetry
    retries = Column(Integer, default=0, nullable=False)
    escalations = Column(Integer, default=0, nullable=False)
    tokens_consumed = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("level >= 0 AND level <= 9", name="ck_agent_tree_nodes_level"),
        UniqueConstraint("instance_id", "name", name="uq_agent_tree_nodes_instance_name"),
        Index("idx_agent_tree_nodes_parent", "parent_id"),
    )


class EscalationChain(Base):
    """A question's upward journey through the agent tree."""

    __tablename__ = "escalation_chains"

    id = Column(String, primary_key=True)
    tree_root_id = Column(String, ForeignKey("agent_tree_nodes.id"), nullable=False)
    originating_node_id = Column(String, ForeignKey("agent_tree_nodes.id"), nullable=False)
    current_node_id = Column(String, ForeignKey("agent_tree_nodes.id"), nullable=False)
    ticket_id = Column(String, ForeignKey("tickets.id"))
    question = Column(Text, nullable=False)
    context = Column(Text)
    status = Column(
        String,
        CheckConstraint(check_constraint_sql("status", EscalationChainStatus)),
        default=EscalationChainStatus.ESCALATING.value,
        nullable=False,
    )
    levels_traversed = Column(JSON, default=list, nullable=False)  # Ordered node ids
    resolved_at_level = Column(Integer)
    answer = Column(Text)
    abandon_reason = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime)

    __table_args__ = (Index("idx_escalation_chains_status", "status"),)


class SchemaMigration(Base):
    """Ledger of applied schema migrations."""

    __tablename__ = "schema_migrations"

    version = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    applied_at = Column(DateTime, default=datetime.utcnow, nullable=False)


def _install_sqlite_transaction_control(engine) -> None:
    """Let SQLAlchemy, not pysqlite, emit BEGIN so sessions can ask for BEGIN IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        mode = conn.get_execution_options().get(BEGIN_MODE_OPTION, "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")


class DatabaseManager:
    """Manager for database operations."""

    def __init__(self, database_path: str = "orchestry.db", busy_timeout: float = 30.0):
        """Initialize database connection.

        Args:
            database_path: SQLite file path, ":memory:", or a full SQLAlchemy URL
            busy_timeout: Seconds a SQLite writer waits for the lock before failing
        """
        self.database_path = database_path
        if "://" in database_path:
            self.engine = create_engine(database_path, echo=False)
        elif database_path == ":memory:":
            self.engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
        else:
            self.engine = create_engine(
                f"sqlite:///{database_path}",
                connect_args={"check_same_thread": False, "timeout": busy_timeout},
                echo=False,
            )

        if self.is_sqlite:
            _install_sqlite_transaction_control(self.engine)

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    @property
    def is_sqlite(self) -> bool:
        return self.engine.dialect.name == "sqlite"

    def create_tables(self):
        """Create all tables and apply pending migrations."""
        from orchestry.core.migrations import MigrationRunner

        Base.metadata.create_all(bind=self.engine)
        MigrationRunner(self).apply_pending()
        logger.info(f"Database ready at {self.database_path}")

    def get_session(self) -> Session:
        """Get a database session."""
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            logger.error(f"Store error, transaction rolled back: {e}")
            raise StoreUnavailableError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def exclusive_session(self) -> Iterator[Session]:
        """Transactional scope that holds the write lock from before its first read.

        On SQLite the transaction opens with BEGIN IMMEDIATE, so a second writer
        blocks until this one commits and then sees the committed rows. Other
        backends rely on SELECT ... FOR UPDATE issued by the caller.
        """
        session = self.SessionLocal()
        try:
            if self.is_sqlite:
                session.connection(execution_options={BEGIN_MODE_OPTION: "IMMEDIATE"})
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            logger.error(f"Store error in exclusive transaction, rolled back: {e}")
            raise StoreUnavailableError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def drop_tables(self):
        """Drop all database tables (for testing)."""
        Base.metadata.drop_all(bind=self.engine)


def get_db(database_path: Optional[str] = None):
    """Provide a transactional scope around a series of operations."""
    if database_path is None:
        # Check environment variable for test database
        database_path = os.environ.get("ORCHESTRY_TEST_DB", "orchestry.db")
    db_manager = DatabaseManager(database_path)
    with db_manager.session_scope() as db:
        yield db
