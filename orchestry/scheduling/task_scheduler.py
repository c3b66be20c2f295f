"""Dependency-aware task scheduling with atomic claiming."""

import uuid
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from orchestry.core.database import DatabaseManager, Task
from orchestry.core.exceptions import TaskNotFoundError, ValidationError
from orchestry.core.simple_config import SimpleConfig, get_config
from orchestry.core.states import PRIORITY_RANK, TASK_TRANSITIONS, Priority, TaskStatus, ensure_transition
from orchestry.scheduling.models import TaskRecord, TaskUpdate

logger = logging.getLogger(__name__)


def _ordering_key(task):
    return (PRIORITY_RANK[Priority(task.priority)], task.created_at, task.id)


class TaskScheduler:
    """Resolves ready tasks and hands each one to exactly one claimer."""

    def __init__(self, db_manager: DatabaseManager, config: Optional[SimpleConfig] = None):
        """Initialize task scheduler.

        Args:
            db_manager: Database manager instance
            config: Settings (claim lease length); defaults to the process config
        """
        self.db_manager = db_manager
        self.config = config or get_config()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_task(
        self,
        title: str,
        description: str = "",
        priority: str = Priority.P2.value,
        dependencies: Optional[List[str]] = None,
        plan_id: Optional[str] = None,
        parent_task_id: Optional[str] = None,
        acceptance_criteria: str = "",
        sort_order: int = 0,
        task_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> TaskRecord:
        """Create a not-started task."""
        task_id = task_id or str(uuid.uuid4())
        dependencies = list(dependencies or [])
        if task_id in dependencies:
            raise ValidationError(f"Task {task_id} cannot depend on itself")
        priority = Priority(priority).value

        with self.db_manager.session_scope() as session:
            task = Task(
                id=task_id,
                title=title,
                description=description,
                status=TaskStatus.NOT_STARTED.value,
                priority=priority,
                dependencies=dependencies,
                acceptance_criteria=acceptance_criteria,
                plan_id=plan_id,
                parent_task_id=parent_task_id,
                sort_order=sort_order,
                created_at=created_at or datetime.utcnow(),
            )
            session.add(task)
            session.flush()
            record = TaskRecord.model_validate(task)

        logger.info(f"[SCHEDULER] Created task {task_id[:8]} '{title}' ({priority}, {len(dependencies)} deps)")
        return record

    def get_task(self, task_id: str) -> Optional[TaskRecord]:
        with self.db_manager.session_scope() as session:
            task = session.get(Task, task_id)
            return TaskRecord.model_validate(task) if task else None

    def update_task(self, task_id: str, update: TaskUpdate) -> TaskRecord:
        """Apply the fields explicitly set on ``update``."""
        changes = update.model_dump(exclude_unset=True)
        with self.db_manager.session_scope() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)

            if "status" in changes and changes["status"] is not None:
                ensure_transition("task", TASK_TRANSITIONS, TaskStatus, task.status, changes["status"])
            if task_id in (changes.get("dependencies") or []):
                raise ValidationError(f"Task {task_id} cannot depend on itself")

            for field_name, value in changes.items():
                if value is None and field_name in ("title", "status", "priority", "dependencies"):
                    continue
                if hasattr(value, "value"):
                    value = value.value
                setattr(task, field_name, value)

            session.flush()
            return TaskRecord.model_validate(task)

    def delete_task(self, task_id: str) -> bool:
        """Delete a task, detaching (never deleting) dependents and subtasks.

        Returns:
            False if the task did not exist
        """
        with self.db_manager.exclusive_session() as session:
            task = session.get(Task, task_id)
            if task is None:
                return False

            detached = 0
            for other in session.query(Task).filter(Task.id != task_id).all():
                if task_id in (other.dependencies or []):
                    other.dependencies = [dep for dep in other.dependencies if dep != task_id]
                    detached += 1

            session.query(Task).filter(Task.parent_task_id == task_id).update(
                {Task.parent_task_id: None}, synchronize_session=False
            )
            session.delete(task)

        logger.info(f"[SCHEDULER] Deleted task {task_id[:8]}, detached from {detached} dependents")
        return True

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    @staticmethod
    def pick_next(ready: Iterable) -> Optional[object]:
        """Choose the task to run next: P1 before P2 before P3, then oldest, then lowest id.

        Pure over its input; the same set always yields the same task.
        """
        ready = list(ready)
        if not ready:
            return None
        return min(ready, key=_ordering_key)

    @staticmethod
    def _filter_ready(candidates: List[Task], verified_ids: set) -> List[Task]:
        return [
            task for task in candidates
            if all(dep in verified_ids for dep in (task.dependencies or []))
        ]

    @staticmethod
    def _verified_ids(session, candidates: List[Task]) -> set:
        wanted = {dep for task in candidates for dep in (task.dependencies or [])}
        if not wanted:
            return set()
        rows = session.query(Task.id).filter(
            Task.id.in_(wanted),
            Task.status == TaskStatus.VERIFIED.value,
        ).all()
        return {row[0] for row in rows}

    def list_ready(self, plan_id: Optional[str] = None) -> List[TaskRecord]:
        """All not-started tasks whose dependencies are verified, in claim order."""
        with self.db_manager.session_scope() as session:
            query = session.query(Task).filter(Task.status == TaskStatus.NOT_STARTED.value)
            if plan_id:
                query = query.filter(Task.plan_id == plan_id)
            candidates = query.all()
            ready = self._filter_ready(candidates, self._verified_ids(session, candidates))
            records = [TaskRecord.model_validate(task) for task in ready]

        return sorted(records, key=_ordering_key)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def claim_next(self, plan_id: Optional[str] = None, claimed_by: Optional[str] = None) -> Optional[TaskRecord]:
        """Atomically claim the best ready task.

        The write lock is taken before the candidate read, so a concurrent
        claimer blocks until this transaction commits and then no longer sees
        the task as not started.

        Returns:
            The claimed task, or None when nothing is ready
        """
        now = datetime.utcnow()
        with self.db_manager.exclusive_session() as session:
            query = session.query(Task).filter(Task.status == TaskStatus.NOT_STARTED.value)
            if plan_id:
                query = query.filter(Task.plan_id == plan_id)
            candidates = query.with_for_update().all()

            ready = self._filter_ready(candidates, self._verified_ids(session, candidates))
            task = self.pick_next(ready)
            if task is None:
                return None

            task.status = TaskStatus.IN_PROGRESS.value
            task.claimed_by = claimed_by
            task.claimed_at = now
            task.lease_expires_at = now + timedelta(seconds=self.config.claim_lease_seconds)
            session.flush()
            record = TaskRecord.model_validate(task)

        logger.info(f"[SCHEDULER] Task {record.id[:8]} ({record.priority.value}) claimed by {claimed_by or 'anonymous'}")
        return record

    def set_status(self, task_id: str, status: str) -> TaskRecord:
        """Move a task along its transition table."""
        return self.update_task(task_id, TaskUpdate(status=TaskStatus(status)))

    def release_task(self, task_id: str) -> TaskRecord:
        """Give a claimed task back to the ready pool."""
        with self.db_manager.session_scope() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            ensure_transition("task", TASK_TRANSITIONS, TaskStatus, task.status, TaskStatus.NOT_STARTED.value)
            task.status = TaskStatus.NOT_STARTED.value
            task.claimed_by = None
            task.claimed_at = None
            task.lease_expires_at = None
            session.flush()
            record = TaskRecord.model_validate(task)

        logger.info(f"[SCHEDULER] Released task {task_id[:8]}")
        return record

    def fail_task(self, task_id: str, error: str) -> TaskRecord:
        """Mark a task failed and keep the error for diagnosis."""
        with self.db_manager.session_scope() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            ensure_transition("task", TASK_TRANSITIONS, TaskStatus, task.status, TaskStatus.FAILED.value)
            task.status = TaskStatus.FAILED.value
            task.last_error = error
            task.lease_expires_at = None
            session.flush()
            record = TaskRecord.model_validate(task)

        logger.warning(f"[SCHEDULER] Task {task_id[:8]} failed: {error}")
        return record

    def release_expired_claims(self, now: Optional[datetime] = None) -> List[str]:
        """Return in-progress tasks whose lease has lapsed to not started.

        Returns:
            Ids of the released tasks
        """
        now = now or datetime.utcnow()
        with self.db_manager.exclusive_session() as session:
            expired = session.query(Task).filter(
                Task.status == TaskStatus.IN_PROGRESS.value,
                Task.lease_expires_at.isnot(None),
                Task.lease_expires_at < now,
            ).with_for_update().all()

            released = []
            for task in expired:
                logger.warning(
                    f"[SCHEDULER] Lease expired for task {task.id[:8]} "
                    f"(claimed by {task.claimed_by}), returning it to the pool"
                )
                task.status = TaskStatus.NOT_STARTED.value
                task.claimed_by = None
                task.claimed_at = None
                task.lease_expires_at = None
                released.append(task.id)

        return released
