"""Versioned schema migrations.

Each migration runs once, in order, inside its own transaction, and is
recorded in ``schema_migrations``. Re-running the ledger is a no-op.
"""

import logging
from typing import Callable, List, NamedTuple

from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

from orchestry.core.database import SchemaMigration, Sequence

logger = logging.getLogger(__name__)


class Migration(NamedTuple):
    version: int
    name: str
    apply: Callable[[Session], None]


def _seed_ticket_sequence(session: Session) -> None:
    """Start the ticket counter after the highest number already in use."""
    current = session.execute(text("SELECT COALESCE(MAX(ticket_number), 0) FROM tickets")).scalar()
    if session.get(Sequence, "ticket_number") is None:
        session.add(Sequence(name="ticket_number", value=current or 0))


def _index_ghost_lookup(session: Session) -> None:
    session.execute(text(
        "CREATE INDEX IF NOT EXISTS idx_tickets_ghost_blocking "
        "ON tickets (is_ghost, blocking_ticket_id)"
    ))


def _index_question_ticket(session: Session) -> None:
    session.execute(text(
        "CREATE INDEX IF NOT EXISTS idx_ai_questions_ticket ON ai_questions (ticket_id)"
    ))


def _index_task_claims(session: Session) -> None:
    session.execute(text(
        "CREATE INDEX IF NOT EXISTS idx_tasks_lease ON tasks (status, lease_expires_at)"
    ))


def _add_execution_step_claim(session: Session) -> None:
    """Add the step claim columns to stores created before they existed."""
    existing = {column["name"] for column in inspect(session.connection()).get_columns("workflow_executions")}
    for name, sql_type in (("step_claim_token", "VARCHAR"), ("step_claimed_at", "DATETIME")):
        if name not in existing:
            session.execute(text(f"ALTER TABLE workflow_executions ADD COLUMN {name} {sql_type}"))
            logger.info(f"[MIGRATIONS] Added workflow_executions.{name}")


MIGRATIONS: List[Migration] = [
    Migration(1, "seed_ticket_sequence", _seed_ticket_sequence),
    Migration(2, "index_ghost_lookup", _index_ghost_lookup),
    Migration(3, "index_question_ticket", _index_question_ticket),
    Migration(4, "index_task_claims", _index_task_claims),
    Migration(5, "execution_step_claim", _add_execution_step_claim),
]


class MigrationRunner:
    """Applies pending migrations from the ledger."""

    def __init__(self, db_manager, migrations: List[Migration] = None):
        self.db_manager = db_manager
        self.migrations = sorted(migrations or MIGRATIONS, key=lambda m: m.version)

    def applied_versions(self) -> List[int]:
        with self.db_manager.session_scope() as session:
            rows = session.query(SchemaMigration.version).order_by(SchemaMigration.version).all()
            return [row[0] for row in rows]

    def apply_pending(self) -> List[int]:
        """Apply every migration not yet in the ledger.

        Returns:
            Versions applied by this call
        """
        applied = []
        for migration in self.migrations:
            with self.db_manager.exclusive_session() as session:
                if session.get(SchemaMigration, migration.version) is not None:
                    continue
                migration.apply(session)
                session.add(SchemaMigration(version=migration.version, name=migration.name))
            logger.info(f"[MIGRATIONS] Applied {migration.version:03d}_{migration.name}")
            applied.append(migration.version)
        return applied
