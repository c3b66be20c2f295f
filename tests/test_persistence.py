"""Tests for the store: migrations, sessions and JSON columns."""

import pytest
from sqlalchemy import inspect, text

from orchestry.core.database import DatabaseManager, SchemaMigration, Sequence, WorkflowExecution, get_db
from orchestry.core.exceptions import StoreUnavailableError
from orchestry.core.migrations import MIGRATIONS, MigrationRunner
from orchestry.tickets.ticket_manager import TicketManager
from orchestry.workflows.engine import WorkflowEngine
from orchestry.workflows.models import StepSpec


class TestMigrations:
    """Test the migration ledger."""

    def test_all_migrations_recorded(self, db_manager):
        runner = MigrationRunner(db_manager)
        assert runner.applied_versions() == [m.version for m in MIGRATIONS]

    def test_rerun_is_noop(self, db_manager):
        assert MigrationRunner(db_manager).apply_pending() == []
        db_manager.create_tables()
        assert MigrationRunner(db_manager).applied_versions() == [1, 2, 3, 4, 5]

    def test_ticket_sequence_seeded(self, db_manager):
        with db_manager.session_scope() as session:
            assert session.get(Sequence, "ticket_number").value == 0

    def test_ticket_numbers_continue_after_reopen(self, file_db_manager):
        first = TicketManager(file_db_manager).create_ticket("One")

        reopened = DatabaseManager(file_db_manager.database_path)
        reopened.create_tables()
        second = TicketManager(reopened).create_ticket("Two")
        reopened.engine.dispose()

        assert second.ticket_number == first.ticket_number + 1

    def test_step_claim_columns_added_to_legacy_store(self):
        legacy = DatabaseManager(":memory:")
        SchemaMigration.__table__.create(legacy.engine)
        with legacy.engine.begin() as connection:
            connection.execute(text("CREATE TABLE workflow_executions (id VARCHAR PRIMARY KEY, status VARCHAR(20))"))

        runner = MigrationRunner(legacy, [m for m in MIGRATIONS if m.version == 5])

        assert runner.apply_pending() == [5]
        columns = {c["name"] for c in inspect(legacy.engine).get_columns("workflow_executions")}
        assert {"step_claim_token", "step_claimed_at"} <= columns
        assert runner.apply_pending() == []
        legacy.engine.dispose()


class TestSessions:
    """Test session scopes."""

    def test_rollback_on_error(self, db_manager):
        with pytest.raises(RuntimeError):
            with db_manager.session_scope() as session:
                session.add(Sequence(name="scratch", value=1))
                session.flush()
                raise RuntimeError("abort")

        with db_manager.session_scope() as session:
            assert session.get(Sequence, "scratch") is None

    def test_operational_error_becomes_store_unavailable(self, db_manager):
        with pytest.raises(StoreUnavailableError):
            with db_manager.session_scope() as session:
                session.execute(text("SELECT * FROM no_such_table"))

    def test_get_db_uses_test_database(self):
        generator = get_db()
        session = next(generator)
        assert session.bind.url.database in (None, "", ":memory:")
        generator.close()


class TestJsonColumns:
    """Test that execution state survives a round trip through the store."""

    def test_variables_and_retries_round_trip(self, db_manager, definition_manager, config):
        definition = definition_manager.create_definition("Flow")
        definition_manager.add_steps(definition.id, [
            StepSpec(id="only", label="Only", step_type="wait"),
        ])
        definition_manager.activate(definition.id)
        execution = WorkflowEngine(db_manager, config=config).start_execution(
            definition.id, variables={"count": 2, "nested": {"items": ["a", "b"]}}
        )

        with db_manager.session_scope() as session:
            row = session.get(WorkflowExecution, execution.id)
            row.step_retries = {"only": 1}

        with db_manager.session_scope() as session:
            row = session.get(WorkflowExecution, execution.id)
            assert row.variables["nested"] == {"items": ["a", "b"]}
            assert row.variables["count"] == 2
            assert row.step_retries == {"only": 1}
