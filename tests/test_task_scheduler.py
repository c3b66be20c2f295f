"""Tests for dependency-aware task scheduling and atomic claiming."""

import threading
from datetime import datetime, timedelta

import pytest

from orchestry.core.exceptions import InvalidTransitionError, TaskNotFoundError, ValidationError
from orchestry.core.states import TaskStatus
from orchestry.scheduling.models import TaskUpdate
from orchestry.scheduling.task_scheduler import TaskScheduler


def _verify(scheduler, task_id):
    scheduler.set_status(task_id, "in_progress")
    return scheduler.set_status(task_id, "verified")


class TestReadiness:
    """Test which tasks count as ready and in what order."""

    def test_task_without_dependencies_is_ready(self, task_scheduler):
        task = task_scheduler.create_task("Write schema")

        ready = task_scheduler.list_ready()
        assert [t.id for t in ready] == [task.id]

    def test_task_waits_for_unverified_dependency(self, task_scheduler):
        first = task_scheduler.create_task("Design API")
        second = task_scheduler.create_task("Implement API", dependencies=[first.id])

        assert [t.id for t in task_scheduler.list_ready()] == [first.id]

        task_scheduler.set_status(first.id, "in_progress")
        task_scheduler.set_status(first.id, "pending_verification")
        assert task_scheduler.list_ready() == []

        task_scheduler.set_status(first.id, "verified")
        assert [t.id for t in task_scheduler.list_ready()] == [second.id]

    def test_all_dependencies_must_be_verified(self, task_scheduler):
        a = task_scheduler.create_task("A")
        b = task_scheduler.create_task("B")
        c = task_scheduler.create_task("C", dependencies=[a.id, b.id])

        _verify(task_scheduler, a.id)
        assert c.id not in [t.id for t in task_scheduler.list_ready()]

        _verify(task_scheduler, b.id)
        assert c.id in [t.id for t in task_scheduler.list_ready()]

    def test_missing_dependency_keeps_task_unready(self, task_scheduler):
        task_scheduler.create_task("Orphan", dependencies=["does-not-exist"])
        assert task_scheduler.list_ready() == []

    def test_priority_then_age_ordering(self, task_scheduler):
        base = datetime(2024, 1, 1, 12, 0, 0)
        old_p2 = task_scheduler.create_task("old P2", priority="P2", created_at=base)
        new_p1 = task_scheduler.create_task("new P1", priority="P1", created_at=base + timedelta(hours=1))
        old_p1 = task_scheduler.create_task("old P1", priority="P1", created_at=base + timedelta(minutes=5))
        p3 = task_scheduler.create_task("P3", priority="P3", created_at=base - timedelta(days=1))

        ready = task_scheduler.list_ready()
        assert [t.id for t in ready] == [old_p1.id, new_p1.id, old_p2.id, p3.id]

    def test_pick_next_is_deterministic(self, task_scheduler):
        created = datetime(2024, 1, 1)
        task_scheduler.create_task("b", task_id="task-b", created_at=created)
        task_scheduler.create_task("a", task_id="task-a", created_at=created)

        ready = task_scheduler.list_ready()
        assert TaskScheduler.pick_next(ready).id == "task-a"
        assert TaskScheduler.pick_next(list(reversed(ready))).id == "task-a"
        assert TaskScheduler.pick_next([]) is None

    def test_plan_filter(self, task_scheduler):
        task_scheduler.create_task("other plan", plan_id="plan-2")
        mine = task_scheduler.create_task("my plan", plan_id="plan-1")

        assert [t.id for t in task_scheduler.list_ready(plan_id="plan-1")] == [mine.id]


class TestClaiming:
    """Test atomic claiming of ready tasks."""

    def test_claim_marks_task_in_progress(self, task_scheduler, config):
        task = task_scheduler.create_task("Claim me")

        claimed = task_scheduler.claim_next(claimed_by="agent-1")

        assert claimed.id == task.id
        assert claimed.status == TaskStatus.IN_PROGRESS
        assert claimed.claimed_by == "agent-1"
        assert claimed.lease_expires_at - claimed.claimed_at == timedelta(seconds=config.claim_lease_seconds)

    def test_claim_returns_none_when_nothing_ready(self, task_scheduler):
        assert task_scheduler.claim_next() is None

        first = task_scheduler.create_task("first")
        task_scheduler.create_task("second", dependencies=[first.id])
        task_scheduler.claim_next()
        assert task_scheduler.claim_next() is None

    def test_claim_takes_highest_priority(self, task_scheduler):
        task_scheduler.create_task("low", priority="P3")
        urgent = task_scheduler.create_task("urgent", priority="P1")

        assert task_scheduler.claim_next().id == urgent.id

    def test_concurrent_claims_are_exclusive(self, file_db_manager, config):
        scheduler = TaskScheduler(file_db_manager, config)
        task_ids = {scheduler.create_task(f"task {i}").id for i in range(5)}

        results = []
        errors = []
        lock = threading.Lock()

        def worker(name):
            try:
                claimed = scheduler.claim_next(claimed_by=name)
                with lock:
                    results.append(claimed)
            except Exception as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(f"agent-{i}",)) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        claimed_ids = [r.id for r in results if r is not None]
        assert len(claimed_ids) == len(set(claimed_ids))
        assert set(claimed_ids) == task_ids
        assert results.count(None) == 5

    def test_release_returns_task_to_pool(self, task_scheduler):
        task = task_scheduler.create_task("flaky")
        task_scheduler.claim_next(claimed_by="agent-1")

        released = task_scheduler.release_task(task.id)

        assert released.status == TaskStatus.NOT_STARTED
        assert released.claimed_by is None
        assert task_scheduler.claim_next().id == task.id

    def test_release_expired_claims(self, task_scheduler, config):
        task = task_scheduler.create_task("abandoned")
        claimed = task_scheduler.claim_next(claimed_by="agent-crashed")

        assert task_scheduler.release_expired_claims(now=claimed.claimed_at) == []

        later = claimed.claimed_at + timedelta(seconds=config.claim_lease_seconds + 1)
        assert task_scheduler.release_expired_claims(now=later) == [task.id]
        assert task_scheduler.get_task(task.id).status == TaskStatus.NOT_STARTED

    def test_fail_task_keeps_error(self, task_scheduler):
        task = task_scheduler.create_task("doomed")
        task_scheduler.claim_next()

        failed = task_scheduler.fail_task(task.id, "compiler exploded")

        assert failed.status == TaskStatus.FAILED
        assert failed.last_error == "compiler exploded"


class TestTaskUpdates:
    """Test task CRUD and update masks."""

    def test_self_dependency_rejected(self, task_scheduler):
        with pytest.raises(ValidationError):
            task_scheduler.create_task("loop", task_id="t1", dependencies=["t1"])

        task = task_scheduler.create_task("ok")
        with pytest.raises(ValidationError):
            task_scheduler.update_task(task.id, TaskUpdate(dependencies=[task.id]))

    def test_update_only_touches_set_fields(self, task_scheduler):
        task = task_scheduler.create_task("Title", description="keep me", priority="P3")

        updated = task_scheduler.update_task(task.id, TaskUpdate(priority="P1"))

        assert updated.priority.value == "P1"
        assert updated.description == "keep me"
        assert updated.title == "Title"

    def test_illegal_status_transition(self, task_scheduler):
        task = task_scheduler.create_task("skip ahead")

        with pytest.raises(InvalidTransitionError):
            task_scheduler.set_status(task.id, "verified")

    def test_update_missing_task(self, task_scheduler):
        with pytest.raises(TaskNotFoundError):
            task_scheduler.update_task("missing", TaskUpdate(title="x"))

    def test_duplicate_dependencies_rejected_by_model(self):
        with pytest.raises(ValueError):
            TaskUpdate(dependencies=["a", "a"])

    def test_delete_detaches_dependents_and_subtasks(self, task_scheduler):
        parent = task_scheduler.create_task("parent")
        child = task_scheduler.create_task("child", parent_task_id=parent.id)
        dependent = task_scheduler.create_task("dependent", dependencies=[parent.id, "other"])

        assert task_scheduler.delete_task(parent.id) is True

        assert task_scheduler.get_task(parent.id) is None
        assert task_scheduler.get_task(child.id).parent_task_id is None
        assert task_scheduler.get_task(dependent.id).dependencies == ["other"]
        assert task_scheduler.delete_task(parent.id) is False
