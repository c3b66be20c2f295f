"""Shared pytest fixtures for Orchestry tests."""

import pytest
import os
from unittest.mock import MagicMock, AsyncMock

# Set test database environment variable before any imports
os.environ["ORCHESTRY_TEST_DB"] = ":memory:"


@pytest.fixture
def config():
    """Create a config with defaults, independent of the environment."""
    from orchestry.core.simple_config import SimpleConfig

    return SimpleConfig(database_path=":memory:")


@pytest.fixture
def db_manager():
    """Create a fresh in-memory database manager for each test."""
    from orchestry.core.database import DatabaseManager

    manager = DatabaseManager(":memory:")
    manager.create_tables()
    yield manager


@pytest.fixture
def file_db_manager(tmp_path):
    """Create a file-backed database manager (needed for multi-connection tests)."""
    from orchestry.core.database import DatabaseManager

    manager = DatabaseManager(str(tmp_path / "orchestry.db"))
    manager.create_tables()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def task_scheduler(db_manager, config):
    """Create a task scheduler with test database."""
    from orchestry.scheduling.task_scheduler import TaskScheduler

    return TaskScheduler(db_manager, config)


@pytest.fixture
def ticket_manager(db_manager, config):
    """Create a ticket manager with test database."""
    from orchestry.tickets.ticket_manager import TicketManager

    return TicketManager(db_manager, config)


@pytest.fixture
def definition_manager(db_manager):
    """Create a workflow definition manager with test database."""
    from orchestry.workflows.definitions import WorkflowDefinitionManager

    return WorkflowDefinitionManager(db_manager)


@pytest.fixture
def tree_manager(db_manager, config):
    """Create an agent tree manager with test database."""
    from orchestry.agents.tree_manager import AgentTreeManager

    return AgentTreeManager(db_manager, config)


@pytest.fixture
def default_tree(tree_manager):
    """Create a tree manager with the standard template built."""
    tree_manager.ensure_default_tree()
    return tree_manager


@pytest.fixture
def mock_agent_invoker():
    """Create a mock agent invoker that always answers with a passing response."""
    from orchestry.interfaces.agent_invoker import AgentResponse

    mock = MagicMock()
    mock.invoke = AsyncMock(return_value=AgentResponse(content="Work done, tests pass", tokens_used=12))
    return mock


@pytest.fixture
def sample_ticket_data():
    """Create sample ticket data for tests."""
    return {
        "title": "Coding: login form validation",
        "body": "Users can submit the login form with an empty password.",
        "priority": "P2",
        "operation_type": "code_generation",
    }
