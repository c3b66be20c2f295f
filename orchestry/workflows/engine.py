"""Workflow engine: walks an execution through its step graph.

Each call to ``execute_next_step`` performs one step attempt in three phases:
claim the current step and snapshot the execution, run the step without
holding a session (agent calls are awaited), then persist the outcome and move
the execution if the claim still holds.
"""

import time
import uuid
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_

from orchestry.core.database import (
    DatabaseManager,
    Ticket,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
    WorkflowStepResult,
)
from orchestry.core.exceptions import (
    ExecutionNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from orchestry.core.simple_config import SimpleConfig, get_config
from orchestry.core.states import (
    EXECUTION_TRANSITIONS,
    StepResultStatus,
    TicketStatus,
    WorkflowExecutionStatus,
    WorkflowStatus,
    WorkflowStepType,
    ensure_transition,
)
from orchestry.interfaces.agent_invoker import AgentInvoker
from orchestry.workflows.conditions import ConditionEvaluator, interpolate
from orchestry.workflows.models import ExecutionRecord, ExecutionState, StepOutcome, StepRecord, StepResultRecord

logger = logging.getLogger(__name__)

VISITED_KEY = "__visited_steps"


class WorkflowEngine:
    """Executes workflow definitions step by step."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        tree_manager=None,
        agent_invoker: Optional[AgentInvoker] = None,
        ticket_manager=None,
        config: Optional[SimpleConfig] = None,
    ):
        """Initialize workflow engine.

        Args:
            db_manager: Database manager instance
            tree_manager: Agent tree used to route agent_call steps to a node
            agent_invoker: Capability that actually runs agent prompts
            ticket_manager: Used to put linked tickets in review at approval gates
            config: Safety limits; defaults to the process config
        """
        self.db_manager = db_manager
        self.tree_manager = tree_manager
        self.agent_invoker = agent_invoker
        self.ticket_manager = ticket_manager
        self.config = config or get_config()
        self.evaluator = ConditionEvaluator()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_execution(
        self,
        workflow_id: str,
        ticket_id: Optional[str] = None,
        task_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> ExecutionRecord:
        """Start a run of the current version of an active workflow at its first step."""
        with self.db_manager.session_scope() as session:
            definition = session.get(WorkflowDefinition, workflow_id)
            if definition is None:
                raise WorkflowNotFoundError(workflow_id)
            if definition.status != WorkflowStatus.ACTIVE.value:
                raise WorkflowValidationError(
                    f"Workflow '{definition.name}' is not active (status: {definition.status})"
                )

            first_step = (
                session.query(WorkflowStep)
                .filter(WorkflowStep.workflow_id == workflow_id, WorkflowStep.version == definition.version)
                .order_by(WorkflowStep.sort_order, WorkflowStep.created_at)
                .first()
            )
            if first_step is None:
                raise WorkflowValidationError(f"Workflow '{definition.name}' has no steps")

            ensure_transition(
                "execution", EXECUTION_TRANSITIONS, WorkflowExecutionStatus,
                WorkflowExecutionStatus.PENDING.value, WorkflowExecutionStatus.RUNNING.value,
            )
            execution = WorkflowExecution(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                workflow_version=definition.version,
                ticket_id=ticket_id,
                task_id=task_id,
                current_step_id=first_step.id,
                status=WorkflowExecutionStatus.RUNNING.value,
                variables=dict(variables or {}),
                step_results={},
                step_retries={},
            )
            session.add(execution)
            session.flush()
            record = ExecutionRecord.model_validate(execution)
            name = definition.name

        logger.info(
            f"[WORKFLOW] Started execution {record.id[:8]} of '{name}' v{record.workflow_version} "
            f"(ticket: {ticket_id}, task: {task_id})"
        )
        return record

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        with self.db_manager.session_scope() as session:
            execution = session.get(WorkflowExecution, execution_id)
            return ExecutionRecord.model_validate(execution) if execution else None

    def get_execution_state(self, execution_id: str) -> Optional[ExecutionState]:
        """Execution, the steps of the version it runs, and its attempt history."""
        with self.db_manager.session_scope() as session:
            execution = session.get(WorkflowExecution, execution_id)
            if execution is None:
                return None
            steps = (
                session.query(WorkflowStep)
                .filter(
                    WorkflowStep.workflow_id == execution.workflow_id,
                    WorkflowStep.version == execution.workflow_version,
                )
                .order_by(WorkflowStep.sort_order)
                .all()
            )
            results = (
                session.query(WorkflowStepResult)
                .filter(WorkflowStepResult.execution_id == execution_id)
                .order_by(WorkflowStepResult.created_at)
                .all()
            )
            return ExecutionState(
                execution=ExecutionRecord.model_validate(execution),
                steps=[StepRecord.model_validate(step) for step in steps],
                results=[StepResultRecord.model_validate(result) for result in results],
            )

    # ------------------------------------------------------------------
    # Status helpers (caller holds the session)
    # ------------------------------------------------------------------

    @staticmethod
    def _set_status(execution: WorkflowExecution, target: WorkflowExecutionStatus) -> None:
        ensure_transition("execution", EXECUTION_TRANSITIONS, WorkflowExecutionStatus, execution.status, target.value)
        execution.status = target.value
        if target in (
            WorkflowExecutionStatus.COMPLETED,
            WorkflowExecutionStatus.FAILED,
            WorkflowExecutionStatus.ESCALATED,
            WorkflowExecutionStatus.CANCELLED,
        ):
            execution.completed_at = datetime.utcnow()

    def _fail(self, execution: WorkflowExecution, error: str) -> None:
        self._set_status(execution, WorkflowExecutionStatus.FAILED)
        execution.last_error = error
        logger.warning(f"[WORKFLOW] Execution {execution.id[:8]} failed: {error}")

    def _finish(self, execution: WorkflowExecution, last_step: Optional[WorkflowStep]) -> None:
        execution.current_step_id = None
        if last_step is not None and last_step.step_type == WorkflowStepType.ESCALATION.value:
            self._set_status(execution, WorkflowExecutionStatus.ESCALATED)
            execution.last_error = f"Escalated at step '{last_step.label}'"
            logger.warning(f"[WORKFLOW] Execution {execution.id[:8]} ended escalated at '{last_step.label}'")
        else:
            self._set_status(execution, WorkflowExecutionStatus.COMPLETED)
            logger.info(f"[WORKFLOW] Execution {execution.id[:8]} completed")

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    def _claim_lapsed(self, execution: WorkflowExecution, now: datetime) -> bool:
        if not execution.step_claim_token or execution.step_claimed_at is None:
            return True
        return execution.step_claimed_at + timedelta(seconds=self.config.claim_lease_seconds) <= now

    def _prepare(self, execution_id: str) -> Optional[Tuple[ExecutionRecord, StepRecord, Dict[str, Any], str, str]]:
        """Phase one: claim the current step, validate limits and snapshot what the step needs.

        Returns None when the execution is not running or another caller holds the step.
        """
        with self.db_manager.exclusive_session() as session:
            execution = (
                session.query(WorkflowExecution)
                .filter(WorkflowExecution.id == execution_id)
                .with_for_update()
                .one_or_none()
            )
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            if execution.status != WorkflowExecutionStatus.RUNNING.value:
                return None

            now = datetime.utcnow()
            if not self._claim_lapsed(execution, now):
                logger.info(f"[WORKFLOW] Execution {execution_id[:8]} step already claimed by another caller")
                return None

            if not execution.current_step_id:
                self._finish(execution, None)
                return None

            attempts = session.query(WorkflowStepResult).filter(
                WorkflowStepResult.execution_id == execution_id
            ).count()
            if attempts >= self.config.max_steps_per_execution:
                self._fail(execution, f"Max steps exceeded ({self.config.max_steps_per_execution})")
                return None

            step = session.get(WorkflowStep, execution.current_step_id)
            if step is None or step.workflow_id != execution.workflow_id:
                self._fail(execution, f"Step {execution.current_step_id} not found in workflow")
                return None

            variables = dict(execution.variables or {})
            retrying = (execution.step_retries or {}).get(step.id, 0) > 0
            if not retrying and step.step_type != WorkflowStepType.LOOP.value:
                visited = list(variables.get(VISITED_KEY, []))
                visits = visited.count(step.id)
                if visits >= self.config.max_step_visits:
                    self._fail(execution, f"Loop detected: step '{step.label}' visited {visits} times")
                    return None
                visited.append(step.id)
                variables[VISITED_KEY] = visited

            routing_context = ""
            if execution.ticket_id:
                ticket = session.get(Ticket, execution.ticket_id)
                if ticket is not None:
                    routing_context = " ".join(
                        part for part in (ticket.title, ticket.operation_type, (ticket.body or "")[:500]) if part
                    )

            claim_token = str(uuid.uuid4())
            execution.step_claim_token = claim_token
            execution.step_claimed_at = now
            session.flush()

            return (
                ExecutionRecord.model_validate(execution),
                StepRecord.model_validate(step),
                variables,
                routing_context,
                claim_token,
            )

    def _release_claim(self, execution_id: str, claim_token: str) -> None:
        with self.db_manager.session_scope() as session:
            execution = session.get(WorkflowExecution, execution_id)
            if execution is not None and execution.step_claim_token == claim_token:
                execution.step_claim_token = None
                execution.step_claimed_at = None

    async def execute_next_step(self, execution_id: str) -> Optional[StepOutcome]:
        """Run one attempt of the current step and advance the execution.

        Only the caller holding the step claim runs the step and moves the
        execution; concurrent callers get None.

        Returns:
            The attempt's outcome, or None if the execution is not running,
            has just finished, or its step is held by another caller
        """
        prepared = self._prepare(execution_id)
        if prepared is None:
            return None
        execution, step, variables, routing_context, claim_token = prepared

        logger.info(f"[WORKFLOW] Executing step '{step.label}' ({step.step_type.value}) in {execution_id[:8]}")
        started = time.monotonic()
        try:
            outcome, branches = await self._run_step(execution, step, variables, routing_context)
        except BaseException:
            self._release_claim(execution_id, claim_token)
            raise
        outcome.duration_ms = int((time.monotonic() - started) * 1000)

        applied, ticket_for_review = self._persist(execution_id, step, outcome, branches, variables, claim_token)
        if ticket_for_review:
            self._mark_ticket_in_review(ticket_for_review)
        return outcome if applied else None

    def _persist(
        self,
        execution_id: str,
        step: StepRecord,
        outcome: StepOutcome,
        branches: List[StepOutcome],
        variables: Dict[str, Any],
        claim_token: str,
    ) -> Tuple[bool, Optional[str]]:
        """Phase three: record the attempt and move the execution.

        The outcome is discarded when the claim was lost or the execution has
        moved off the step since it was prepared.

        Returns:
            Whether the outcome was applied, and the ticket id to put in review
            when the step was an approval gate
        """
        ticket_for_review = None
        with self.db_manager.exclusive_session() as session:
            execution = (
                session.query(WorkflowExecution)
                .filter(WorkflowExecution.id == execution_id)
                .with_for_update()
                .one_or_none()
            )
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            if execution.step_claim_token != claim_token or execution.current_step_id != step.id:
                logger.warning(
                    f"[WORKFLOW] Discarding stale outcome of step '{step.label}' in {execution_id[:8]}: "
                    f"claim lost or execution moved on"
                )
                return False, None
            execution.step_claim_token = None
            execution.step_claimed_at = None
            step_row = session.get(WorkflowStep, step.id)

            retries = dict(execution.step_retries or {})
            if not outcome.succeeded and outcome.status != StepResultStatus.WAITING_APPROVAL:
                outcome.retries = retries.get(step.id, 0) + 1

            for result in [*branches, outcome]:
                session.add(WorkflowStepResult(
                    id=str(uuid.uuid4()),
                    execution_id=execution_id,
                    step_id=result.step_id,
                    status=result.status.value,
                    agent_response=result.agent_response,
                    acceptance_check=result.acceptance_check,
                    retries=result.retries,
                    duration_ms=result.duration_ms,
                    tokens_used=result.tokens_used,
                    error=result.error,
                ))

            history = {key: list(value) for key, value in (execution.step_results or {}).items()}
            history.setdefault(step.id, []).append(outcome.summary())
            execution.step_results = history
            execution.variables = variables
            execution.tokens_consumed = (execution.tokens_consumed or 0) + outcome.tokens_used

            if execution.status != WorkflowExecutionStatus.RUNNING.value:
                # Paused or cancelled while the step ran; keep the record, do not move.
                return True, None

            if outcome.succeeded:
                retries.pop(step.id, None)
                execution.step_retries = retries
                if outcome.next_step_id:
                    execution.current_step_id = outcome.next_step_id
                else:
                    self._finish(execution, step_row)

            elif outcome.status == StepResultStatus.WAITING_APPROVAL:
                self._set_status(execution, WorkflowExecutionStatus.WAITING_APPROVAL)
                ticket_for_review = execution.ticket_id
                logger.info(f"[WORKFLOW] Execution {execution_id[:8]} waiting for approval at '{step.label}'")

            else:
                attempts = outcome.retries
                execution.last_error = outcome.error
                if attempts < step.max_retries:
                    retries[step.id] = attempts
                    outcome.retry_after_ms = step.retry_delay_ms
                    logger.info(
                        f"[WORKFLOW] Step '{step.label}' failed, will retry ({attempts}/{step.max_retries}): {outcome.error}"
                    )
                elif step.escalation_step_id:
                    retries.pop(step.id, None)
                    execution.current_step_id = step.escalation_step_id
                    logger.warning(
                        f"[WORKFLOW] Step '{step.label}' exhausted {attempts} attempts, "
                        f"escalating to step {step.escalation_step_id[:8]}"
                    )
                else:
                    retries.pop(step.id, None)
                    self._fail(execution, f"Step '{step.label}' failed after {attempts} attempts: {outcome.error}")
                execution.step_retries = retries

        return True, ticket_for_review

    def _mark_ticket_in_review(self, ticket_id: str) -> None:
        if self.ticket_manager is None:
            return
        try:
            self.ticket_manager.transition(ticket_id, TicketStatus.IN_REVIEW.value)
        except (InvalidTransitionError, NotFoundError) as e:
            logger.warning(f"[WORKFLOW] Could not put ticket {ticket_id[:8]} in review: {e}")

    # ------------------------------------------------------------------
    # Step types
    # ------------------------------------------------------------------

    async def _run_step(
        self,
        execution: ExecutionRecord,
        step: StepRecord,
        variables: Dict[str, Any],
        routing_context: str,
    ) -> Tuple[StepOutcome, List[StepOutcome]]:
        """Phase two: run a step. Mutates ``variables``; returns the outcome and any branch outcomes."""
        step_type = step.step_type
        if step_type == WorkflowStepType.AGENT_CALL:
            return await self._run_agent_call(execution, step, variables, routing_context), []
        if step_type == WorkflowStepType.CONDITION:
            return self._run_condition(step, variables), []
        if step_type == WorkflowStepType.PARALLEL:
            return await self._run_parallel(execution, step, variables, routing_context)
        if step_type == WorkflowStepType.APPROVAL_GATE:
            return StepOutcome(
                step_id=step.id,
                status=StepResultStatus.WAITING_APPROVAL,
                agent_response=f"Waiting for approval: {step.label}",
            ), []
        if step_type == WorkflowStepType.ESCALATION:
            variables["$escalated"] = True
            return StepOutcome(
                step_id=step.id,
                status=StepResultStatus.COMPLETED,
                agent_response=f"Escalation triggered: {step.label}",
                next_step_id=step.next_step_id,
            ), []
        if step_type == WorkflowStepType.WAIT:
            delay_ms = min(step.retry_delay_ms, self.config.max_wait_ms)
            await asyncio.sleep(delay_ms / 1000)
            return StepOutcome(
                step_id=step.id,
                status=StepResultStatus.COMPLETED,
                agent_response=f"Waited {delay_ms}ms",
                next_step_id=step.next_step_id,
            ), []
        if step_type == WorkflowStepType.LOOP:
            return self._run_loop(step, variables), []

        return StepOutcome(
            step_id=step.id,
            status=StepResultStatus.FAILED,
            error=f"Unknown step type: {step_type}",
        ), []

    async def _run_agent_call(
        self,
        execution: ExecutionRecord,
        step: StepRecord,
        variables: Dict[str, Any],
        routing_context: str,
    ) -> StepOutcome:
        if self.agent_invoker is None:
            return StepOutcome(step_id=step.id, status=StepResultStatus.FAILED, error="No agent invoker configured")
        if not step.agent_type:
            return StepOutcome(step_id=step.id, status=StepResultStatus.FAILED, error="Step has no agent_type configured")

        node = None
        if self.tree_manager is not None:
            node = self.tree_manager.resolve_node(step.agent_type, context=routing_context or step.label)

        prompt = interpolate(step.agent_prompt or "", variables)
        context = {
            "execution_id": execution.id,
            "step_id": step.id,
            "ticket_id": execution.ticket_id,
            "task_id": execution.task_id,
            "node_id": node.id if node else None,
            "node_name": node.name if node else None,
            "variables": dict(variables),
        }

        try:
            response = await self.agent_invoker.invoke(step.agent_type, prompt, context)
        except Exception as e:
            logger.error(f"[WORKFLOW] Agent '{step.agent_type}' failed on step '{step.label}': {e}")
            return StepOutcome(step_id=step.id, status=StepResultStatus.FAILED, error=f"Agent error: {e}")

        if node is not None and response.tokens_used:
            self.tree_manager.record_telemetry(node.id, tokens=response.tokens_used)

        variables["$result"] = response.content
        variables["$tokens"] = response.tokens_used

        acceptance = None
        if step.acceptance_criteria:
            keywords = [kw.strip().lower() for kw in step.acceptance_criteria.split(",") if kw.strip()]
            content = (response.content or "").lower()
            acceptance = any(keyword in content for keyword in keywords)

        return StepOutcome(
            step_id=step.id,
            status=StepResultStatus.FAILED if acceptance is False else StepResultStatus.COMPLETED,
            agent_response=response.content,
            acceptance_check=acceptance,
            tokens_used=response.tokens_used,
            error="Acceptance criteria not met" if acceptance is False else None,
            next_step_id=step.next_step_id,
        )

    def _run_condition(self, step: StepRecord, variables: Dict[str, Any]) -> StepOutcome:
        result = self.evaluator.evaluate(step.condition_expression, variables)
        variables["$conditionResult"] = result
        branch = step.true_branch_step_id if result else step.false_branch_step_id
        return StepOutcome(
            step_id=step.id,
            status=StepResultStatus.COMPLETED,
            agent_response=f"Condition evaluated: {str(result).lower()}",
            next_step_id=branch or step.next_step_id,
        )

    def _run_loop(self, step: StepRecord, variables: Dict[str, Any]) -> StepOutcome:
        counter_key = f"__loop_{step.id}"
        if not self.evaluator.evaluate(step.condition_expression, variables):
            variables.pop(counter_key, None)
            return StepOutcome(
                step_id=step.id,
                status=StepResultStatus.COMPLETED,
                agent_response="Loop condition false, exiting loop",
                next_step_id=step.next_step_id,
            )

        iteration = int(variables.get(counter_key, 0)) + 1
        variables[counter_key] = iteration
        if iteration > self.config.max_loop_iterations:
            return StepOutcome(
                step_id=step.id,
                status=StepResultStatus.FAILED,
                error=f"Loop exceeded {self.config.max_loop_iterations} iterations",
            )
        return StepOutcome(
            step_id=step.id,
            status=StepResultStatus.COMPLETED,
            agent_response=f"Loop iteration {iteration}",
            next_step_id=step.true_branch_step_id or step.next_step_id,
        )

    async def _run_parallel(
        self,
        execution: ExecutionRecord,
        step: StepRecord,
        variables: Dict[str, Any],
        routing_context: str,
    ) -> Tuple[StepOutcome, List[StepOutcome]]:
        """Run every branch concurrently and join.

        The step waits for all branches. If any branch failed the step fails
        with the error of the first failing branch in declared order.
        """
        if not step.parallel_step_ids:
            return StepOutcome(
                step_id=step.id,
                status=StepResultStatus.COMPLETED,
                agent_response="No parallel steps to execute",
                next_step_id=step.next_step_id,
            ), []

        with self.db_manager.session_scope() as session:
            rows = {
                row.id: StepRecord.model_validate(row)
                for row in session.query(WorkflowStep).filter(WorkflowStep.id.in_(step.parallel_step_ids)).all()
            }

        async def run_branch(branch_id: str) -> Tuple[StepOutcome, List[StepOutcome]]:
            branch = rows.get(branch_id)
            if branch is None:
                return StepOutcome(
                    step_id=branch_id, status=StepResultStatus.FAILED, error=f"Parallel step {branch_id} not found"
                ), []
            started = time.monotonic()
            branch_outcome, nested = await self._run_step(execution, branch, dict(variables), routing_context)
            branch_outcome.duration_ms = int((time.monotonic() - started) * 1000)
            if branch_outcome.status == StepResultStatus.WAITING_APPROVAL:
                branch_outcome.status = StepResultStatus.FAILED
                branch_outcome.error = "Approval gates cannot run inside a parallel branch"
            return branch_outcome, nested

        joined = await asyncio.gather(*(run_branch(branch_id) for branch_id in step.parallel_step_ids))

        recorded: List[StepOutcome] = []
        responses = []
        first_failure = None
        tokens = 0
        for branch_id, (branch_outcome, nested) in zip(step.parallel_step_ids, joined):
            recorded.extend(nested)
            recorded.append(branch_outcome)
            tokens += branch_outcome.tokens_used
            if branch_outcome.agent_response:
                responses.append(branch_outcome.agent_response)
            if not branch_outcome.succeeded and first_failure is None:
                label = rows[branch_id].label if branch_id in rows else branch_id
                first_failure = f"Parallel branch '{label}' failed: {branch_outcome.error}"

        variables["$parallelResults"] = responses
        return StepOutcome(
            step_id=step.id,
            status=StepResultStatus.FAILED if first_failure else StepResultStatus.COMPLETED,
            agent_response="\n---\n".join(responses),
            tokens_used=tokens,
            error=first_failure,
            next_step_id=step.next_step_id,
        ), recorded

    # ------------------------------------------------------------------
    # Execution control
    # ------------------------------------------------------------------

    async def run_to_completion(self, execution_id: str) -> ExecutionRecord:
        """Execute steps until the execution stops running."""
        for _ in range(self.config.max_steps_per_execution):
            outcome = await self.execute_next_step(execution_id)
            if outcome is None:
                break
            if outcome.retry_after_ms:
                await asyncio.sleep(outcome.retry_after_ms / 1000)
        return self.get_execution(execution_id)

    def handle_approval(self, execution_id: str, approved: bool, notes: Optional[str] = None) -> ExecutionRecord:
        """Resume (approved) or fail (rejected) an execution waiting at an approval gate."""
        with self.db_manager.session_scope() as session:
            execution = session.get(WorkflowExecution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            if execution.status != WorkflowExecutionStatus.WAITING_APPROVAL.value:
                raise InvalidTransitionError(
                    "execution", execution.status,
                    WorkflowExecutionStatus.RUNNING.value if approved else WorkflowExecutionStatus.FAILED.value,
                )

            variables = dict(execution.variables or {})
            variables["$userApproved"] = approved
            variables["$approvalNotes"] = notes or ""
            execution.variables = variables

            step = session.get(WorkflowStep, execution.current_step_id) if execution.current_step_id else None
            if approved:
                self._set_status(execution, WorkflowExecutionStatus.RUNNING)
                next_step_id = step.next_step_id if step else None
                if next_step_id:
                    execution.current_step_id = next_step_id
                else:
                    self._finish(execution, None)
                logger.info(f"[WORKFLOW] Execution {execution_id[:8]} approved")
            else:
                self._fail(execution, f"Approval rejected: {notes or 'no reason given'}")

            session.flush()
            return ExecutionRecord.model_validate(execution)

    def _control(self, execution_id: str, target: WorkflowExecutionStatus, reason: Optional[str] = None) -> ExecutionRecord:
        with self.db_manager.session_scope() as session:
            execution = session.get(WorkflowExecution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            self._set_status(execution, target)
            if reason:
                execution.last_error = reason
            session.flush()
            record = ExecutionRecord.model_validate(execution)

        logger.info(f"[WORKFLOW] Execution {execution_id[:8]} -> {target.value}")
        return record

    def pause_execution(self, execution_id: str) -> ExecutionRecord:
        """Park a running execution; ``pending`` doubles as paused."""
        return self._control(execution_id, WorkflowExecutionStatus.PENDING)

    def resume_execution(self, execution_id: str) -> ExecutionRecord:
        return self._control(execution_id, WorkflowExecutionStatus.RUNNING)

    def cancel_execution(self, execution_id: str, reason: Optional[str] = None) -> ExecutionRecord:
        return self._control(execution_id, WorkflowExecutionStatus.CANCELLED, reason=f"Cancelled: {reason}" if reason else None)

    async def recover_pending_executions(self) -> int:
        """Resume executions left running by a crashed process.

        Executions whose step is claimed by a live caller are left alone; a
        claim older than the lease counts as abandoned.

        Returns:
            Number of executions driven to a stop
        """
        lapsed_before = datetime.utcnow() - timedelta(seconds=self.config.claim_lease_seconds)
        with self.db_manager.session_scope() as session:
            ids = [
                row[0] for row in session.query(WorkflowExecution.id)
                .filter(
                    WorkflowExecution.status == WorkflowExecutionStatus.RUNNING.value,
                    or_(
                        WorkflowExecution.step_claim_token.is_(None),
                        WorkflowExecution.step_claimed_at <= lapsed_before,
                    ),
                )
                .order_by(WorkflowExecution.started_at)
                .all()
            ]

        recovered = 0
        for execution_id in ids:
            logger.info(f"[WORKFLOW] Recovering interrupted execution {execution_id[:8]}")
            try:
                await self.run_to_completion(execution_id)
                recovered += 1
            except Exception as e:
                logger.error(f"[WORKFLOW] Recovery failed for {execution_id[:8]}: {e}")
                with self.db_manager.session_scope() as session:
                    execution = session.get(WorkflowExecution, execution_id)
                    if execution is not None and execution.status == WorkflowExecutionStatus.RUNNING.value:
                        self._fail(execution, f"Recovery failed: {e}")

        if recovered:
            logger.info(f"[WORKFLOW] Recovered {recovered} interrupted executions")
        return recovered
