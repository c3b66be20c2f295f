"""Tests for the workflow engine: branching, retries, parallel joins and approvals."""

import asyncio
from datetime import datetime, timedelta

import pytest

from orchestry.core.database import WorkflowExecution
from orchestry.core.exceptions import InvalidTransitionError, WorkflowValidationError
from orchestry.core.simple_config import SimpleConfig
from orchestry.core.states import StepResultStatus, TicketStatus, WorkflowExecutionStatus
from orchestry.interfaces.agent_invoker import CallableAgentInvoker, ScriptedAgentInvoker
from orchestry.workflows.engine import WorkflowEngine
from orchestry.workflows.models import StepSpec


def _workflow(definition_manager, specs, activate=True):
    definition = definition_manager.create_definition("Test flow")
    definition_manager.add_steps(definition.id, specs)
    if activate:
        definition_manager.activate(definition.id)
    return definition.id


def _results_for(engine, execution_id, step_id):
    state = engine.get_execution_state(execution_id)
    return [r for r in state.results if r.step_id == step_id]


def _review_flow():
    return [
        StepSpec(id="plan", label="Plan", step_type="agent_call", agent_type="planning",
                 agent_prompt="Plan the work", next_step_id="check"),
        StepSpec(id="check", label="Plan ok?", step_type="condition",
                 condition_expression="$result.contains('ok')",
                 true_branch_step_id="build", false_branch_step_id="plan"),
        StepSpec(id="build", label="Build", step_type="agent_call", agent_type="coding",
                 agent_prompt="Implement: $result"),
    ]


class TestStepGraph:
    """Test walking the step graph."""

    def test_linear_run_completes(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({"planning": ["plan ok"], "coding": ["done"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, _review_flow())

        execution = engine.start_execution(workflow_id, variables={"feature": "login"})
        final = asyncio.run(engine.run_to_completion(execution.id))

        assert final.status == WorkflowExecutionStatus.COMPLETED
        assert final.current_step_id is None
        assert final.completed_at is not None
        assert final.variables["$result"] == "done"
        assert final.variables["$conditionResult"] is True
        assert final.variables["feature"] == "login"
        assert final.tokens_consumed == 3
        assert invoker.calls[1]["prompt"] == "Implement: plan ok"
        assert len(engine.get_execution_state(execution.id).results) == 3

    def test_false_branch_loops_back(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({"planning": ["needs work", "ok now"], "coding": ["done"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, _review_flow())

        execution = engine.start_execution(workflow_id)
        final = asyncio.run(engine.run_to_completion(execution.id))

        assert final.status == WorkflowExecutionStatus.COMPLETED
        assert len(_results_for(engine, execution.id, "plan")) == 2
        assert len(final.step_results["plan"]) == 2

    def test_visit_guard_stops_endless_cycle(self, db_manager, definition_manager):
        config = SimpleConfig(database_path=":memory:", max_step_visits=2)
        invoker = ScriptedAgentInvoker({"planning": ["never good"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, _review_flow())

        execution = engine.start_execution(workflow_id)
        final = asyncio.run(engine.run_to_completion(execution.id))

        assert final.status == WorkflowExecutionStatus.FAILED
        assert "Loop detected" in final.last_error
        assert len(_results_for(engine, execution.id, "plan")) == 2

    def test_loop_step_repeats_body(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({"coding": ["again", "again", "done"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, [
            StepSpec(id="loop", label="Until done", step_type="loop", condition_expression="$result != 'done'",
                     true_branch_step_id="body", next_step_id="finish"),
            StepSpec(id="body", label="Work", step_type="agent_call", agent_type="coding", next_step_id="loop"),
            StepSpec(id="finish", label="Settle", step_type="wait", retry_delay_ms=0),
        ])

        execution = engine.start_execution(workflow_id)
        final = asyncio.run(engine.run_to_completion(execution.id))

        assert final.status == WorkflowExecutionStatus.COMPLETED
        assert len(_results_for(engine, execution.id, "body")) == 3
        assert "__loop_loop" not in final.variables

    def test_loop_iteration_limit(self, db_manager, definition_manager):
        config = SimpleConfig(database_path=":memory:", max_loop_iterations=2)
        invoker = ScriptedAgentInvoker({"coding": ["again"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, [
            StepSpec(id="loop", label="Forever", step_type="loop", condition_expression="$result != 'done'",
                     true_branch_step_id="body"),
            StepSpec(id="body", label="Work", step_type="agent_call", agent_type="coding", next_step_id="loop"),
        ])

        execution = engine.start_execution(workflow_id)
        final = asyncio.run(engine.run_to_completion(execution.id))

        assert final.status == WorkflowExecutionStatus.FAILED
        assert "exceeded 2 iterations" in final.last_error

    def test_start_requires_active_definition(self, db_manager, definition_manager, config):
        engine = WorkflowEngine(db_manager, config=config)
        workflow_id = _workflow(definition_manager, _review_flow(), activate=False)

        with pytest.raises(WorkflowValidationError):
            engine.start_execution(workflow_id)

    def test_agent_step_without_invoker_fails(self, db_manager, definition_manager, config):
        engine = WorkflowEngine(db_manager, config=config)
        workflow_id = _workflow(definition_manager, _review_flow())

        execution = engine.start_execution(workflow_id)
        outcome = asyncio.run(engine.execute_next_step(execution.id))

        assert outcome.status == StepResultStatus.FAILED
        assert outcome.error == "No agent invoker configured"
        assert engine.get_execution(execution.id).status == WorkflowExecutionStatus.FAILED


class TestRetries:
    """Test step retry accounting and escalation."""

    def _escalating_flow(self, escalate=True):
        specs = [
            StepSpec(id="work", label="Implement", step_type="agent_call", agent_type="coding",
                     acceptance_criteria="PASS, all green", max_retries=3,
                     escalation_step_id="escalate" if escalate else None),
        ]
        if escalate:
            specs.append(StepSpec(id="escalate", label="Ask a human", step_type="escalation"))
        return specs

    def test_escalates_exactly_once_after_third_failure(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({"coding": ["FAIL"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, self._escalating_flow())

        execution = engine.start_execution(workflow_id)
        outcomes = [asyncio.run(engine.execute_next_step(execution.id)) for _ in range(2)]
        assert all(o.retry_after_ms == 0 for o in outcomes)
        assert engine.get_execution(execution.id).current_step_id == "work"

        final = asyncio.run(engine.run_to_completion(execution.id))

        attempts = _results_for(engine, execution.id, "work")
        assert [a.retries for a in attempts] == [1, 2, 3]
        assert all(a.acceptance_check is False for a in attempts)
        assert len(_results_for(engine, execution.id, "escalate")) == 1
        assert final.status == WorkflowExecutionStatus.ESCALATED
        assert "Ask a human" in final.last_error
        assert final.variables["$escalated"] is True
        assert final.step_retries == {}

    def test_exhaustion_without_escalation_fails(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({"coding": ["FAIL"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, self._escalating_flow(escalate=False))

        execution = engine.start_execution(workflow_id)
        final = asyncio.run(engine.run_to_completion(execution.id))

        assert final.status == WorkflowExecutionStatus.FAILED
        assert "failed after 3 attempts" in final.last_error
        assert len(_results_for(engine, execution.id, "work")) == 3

    def test_success_after_retry_clears_counter(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({"coding": ["FAIL", "all green"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, self._escalating_flow())

        execution = engine.start_execution(workflow_id)
        final = asyncio.run(engine.run_to_completion(execution.id))

        assert final.status == WorkflowExecutionStatus.COMPLETED
        assert final.step_retries == {}
        assert [a.status for a in _results_for(engine, execution.id, "work")] == [
            StepResultStatus.FAILED, StepResultStatus.COMPLETED,
        ]

    def test_invoker_exception_counts_as_failure(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({"coding": [RuntimeError("model offline")]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, self._escalating_flow(escalate=False))

        execution = engine.start_execution(workflow_id)
        outcome = asyncio.run(engine.execute_next_step(execution.id))

        assert outcome.status == StepResultStatus.FAILED
        assert outcome.error == "Agent error: model offline"


class TestParallel:
    """Test parallel fan-out and join."""

    def _fan_flow(self):
        return [
            StepSpec(id="fan", label="Fan out", step_type="parallel", parallel_step_ids=["a", "b"]),
            StepSpec(id="a", label="Verify", step_type="agent_call", agent_type="verification"),
            StepSpec(id="b", label="Document", step_type="agent_call", agent_type="documentation"),
        ]

    def test_all_branches_succeed(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({"verification": ["verified"], "documentation": ["documented"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, self._fan_flow())

        execution = engine.start_execution(workflow_id)
        final = asyncio.run(engine.run_to_completion(execution.id))

        assert final.status == WorkflowExecutionStatus.COMPLETED
        assert final.variables["$parallelResults"] == ["verified", "documented"]
        state = engine.get_execution_state(execution.id)
        assert sorted(r.step_id for r in state.results) == ["a", "b", "fan"]

    def test_first_failing_branch_fails_join(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({
            "verification": ["verified"],
            "documentation": [RuntimeError("disk full")],
        })
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, self._fan_flow())

        execution = engine.start_execution(workflow_id)
        final = asyncio.run(engine.run_to_completion(execution.id))

        assert final.status == WorkflowExecutionStatus.FAILED
        assert "Parallel branch 'Document' failed: Agent error: disk full" in final.last_error
        assert _results_for(engine, execution.id, "a")[0].status == StepResultStatus.COMPLETED
        assert _results_for(engine, execution.id, "b")[0].status == StepResultStatus.FAILED


class TestApproval:
    """Test approval gates."""

    def _gate_flow(self):
        return [
            StepSpec(id="gate", label="Sign off", step_type="approval_gate", next_step_id="ship"),
            StepSpec(id="ship", label="Ship", step_type="agent_call", agent_type="deployment"),
        ]

    def test_approval_resumes_execution(self, db_manager, definition_manager, ticket_manager, config):
        invoker = ScriptedAgentInvoker({"deployment": ["shipped"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, ticket_manager=ticket_manager, config=config)
        workflow_id = _workflow(definition_manager, self._gate_flow())
        ticket = ticket_manager.create_ticket("Release 1.2")

        execution = engine.start_execution(workflow_id, ticket_id=ticket.id)
        waiting = asyncio.run(engine.run_to_completion(execution.id))

        assert waiting.status == WorkflowExecutionStatus.WAITING_APPROVAL
        assert ticket_manager.get_ticket(ticket.id).status == TicketStatus.IN_REVIEW

        approved = engine.handle_approval(execution.id, approved=True, notes="LGTM")
        assert approved.status == WorkflowExecutionStatus.RUNNING
        assert approved.current_step_id == "ship"
        assert approved.variables["$userApproved"] is True

        final = asyncio.run(engine.run_to_completion(execution.id))
        assert final.status == WorkflowExecutionStatus.COMPLETED

    def test_rejection_fails_execution(self, db_manager, definition_manager, config):
        engine = WorkflowEngine(db_manager, config=config)
        workflow_id = _workflow(definition_manager, self._gate_flow())

        execution = engine.start_execution(workflow_id)
        asyncio.run(engine.execute_next_step(execution.id))
        rejected = engine.handle_approval(execution.id, approved=False, notes="Not yet")

        assert rejected.status == WorkflowExecutionStatus.FAILED
        assert rejected.last_error == "Approval rejected: Not yet"

    def test_approval_requires_waiting_execution(self, db_manager, definition_manager, config):
        engine = WorkflowEngine(db_manager, config=config)
        workflow_id = _workflow(definition_manager, self._gate_flow())
        execution = engine.start_execution(workflow_id)

        with pytest.raises(InvalidTransitionError):
            engine.handle_approval(execution.id, approved=True)


class TestExecutionControl:
    """Test pause, resume, cancel, recovery and tree routing."""

    def test_pause_resume_cancel(self, db_manager, definition_manager, config):
        engine = WorkflowEngine(db_manager, agent_invoker=ScriptedAgentInvoker(), config=config)
        workflow_id = _workflow(definition_manager, _review_flow())
        execution = engine.start_execution(workflow_id)

        assert engine.pause_execution(execution.id).status == WorkflowExecutionStatus.PENDING
        assert asyncio.run(engine.execute_next_step(execution.id)) is None

        assert engine.resume_execution(execution.id).status == WorkflowExecutionStatus.RUNNING

        cancelled = engine.cancel_execution(execution.id, "no longer needed")
        assert cancelled.status == WorkflowExecutionStatus.CANCELLED
        assert cancelled.last_error == "Cancelled: no longer needed"

        with pytest.raises(InvalidTransitionError):
            engine.resume_execution(execution.id)

    def test_recover_pending_executions(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({"planning": ["ok"], "coding": ["done"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        workflow_id = _workflow(definition_manager, _review_flow())
        first = engine.start_execution(workflow_id)
        second = engine.start_execution(workflow_id)

        assert asyncio.run(engine.recover_pending_executions()) == 2
        assert engine.get_execution(first.id).status == WorkflowExecutionStatus.COMPLETED
        assert engine.get_execution(second.id).status == WorkflowExecutionStatus.COMPLETED

    def test_agent_call_routes_through_tree(self, db_manager, definition_manager, default_tree,
                                            mock_agent_invoker, config):
        engine = WorkflowEngine(db_manager, tree_manager=default_tree, agent_invoker=mock_agent_invoker, config=config)
        workflow_id = _workflow(definition_manager, [
            StepSpec(id="verify", label="Verify", step_type="agent_call", agent_type="verification"),
        ])

        execution = engine.start_execution(workflow_id)
        final = asyncio.run(engine.run_to_completion(execution.id))

        assert final.status == WorkflowExecutionStatus.COMPLETED
        role, prompt, context = mock_agent_invoker.invoke.call_args[0]
        assert role == "verification"
        assert context["node_name"] == "UnitTestManager"
        node = default_tree.get_node(context["node_id"])
        assert node.tokens_consumed == 12


class TestConcurrentDrivers:
    """Test that only the caller holding the step claim runs and moves an execution."""

    def _failing_step(self):
        return [
            StepSpec(id="work", label="Implement", step_type="agent_call", agent_type="coding",
                     acceptance_criteria="PASS", max_retries=3),
        ]

    def _slow_invoker(self, calls, before_return=None):
        async def run(role, prompt, context):
            calls.append(role)
            await asyncio.sleep(0.01)
            if before_return:
                before_return()
            return "FAIL"

        return CallableAgentInvoker(run)

    def test_concurrent_callers_run_step_once(self, db_manager, definition_manager, config):
        calls = []
        engine = WorkflowEngine(db_manager, agent_invoker=self._slow_invoker(calls), config=config)
        execution = engine.start_execution(_workflow(definition_manager, self._failing_step()))

        async def drive_twice():
            return await asyncio.gather(
                engine.execute_next_step(execution.id),
                engine.execute_next_step(execution.id),
            )

        outcomes = asyncio.run(drive_twice())

        assert len(calls) == 1
        assert len([o for o in outcomes if o is not None]) == 1
        assert engine.get_execution(execution.id).step_retries == {"work": 1}
        assert len(_results_for(engine, execution.id, "work")) == 1

        # The claim is released once the attempt is persisted.
        asyncio.run(engine.execute_next_step(execution.id))
        assert len(calls) == 2
        assert engine.get_execution(execution.id).step_retries == {"work": 2}

    def test_outcome_discarded_when_claim_lost(self, db_manager, definition_manager, config):
        calls = []
        execution_ids = []

        def steal_claim():
            with db_manager.session_scope() as session:
                session.get(WorkflowExecution, execution_ids[0]).step_claim_token = "another-caller"

        engine = WorkflowEngine(db_manager, agent_invoker=self._slow_invoker(calls, steal_claim), config=config)
        execution = engine.start_execution(_workflow(definition_manager, self._failing_step()))
        execution_ids.append(execution.id)

        assert asyncio.run(engine.execute_next_step(execution.id)) is None

        current = engine.get_execution(execution.id)
        assert len(calls) == 1
        assert current.current_step_id == "work"
        assert current.step_retries == {}
        assert _results_for(engine, execution.id, "work") == []

    def test_recovery_skips_live_claims(self, db_manager, definition_manager, config):
        invoker = ScriptedAgentInvoker({"planning": ["ok"], "coding": ["done"]})
        engine = WorkflowEngine(db_manager, agent_invoker=invoker, config=config)
        execution = engine.start_execution(_workflow(definition_manager, _review_flow()))

        def claim(claimed_at):
            with db_manager.session_scope() as session:
                row = session.get(WorkflowExecution, execution.id)
                row.step_claim_token = "live-worker"
                row.step_claimed_at = claimed_at

        claim(datetime.utcnow())
        assert asyncio.run(engine.recover_pending_executions()) == 0
        assert invoker.calls == []
        assert asyncio.run(engine.execute_next_step(execution.id)) is None

        claim(datetime.utcnow() - timedelta(seconds=config.claim_lease_seconds + 1))
        assert asyncio.run(engine.recover_pending_executions()) == 1
        assert engine.get_execution(execution.id).status == WorkflowExecutionStatus.COMPLETED
