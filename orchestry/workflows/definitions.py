"""Workflow definition manager: authoring, versioning and validation of step graphs."""

import uuid
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from orchestry.core.database import DatabaseManager, WorkflowDefinition, WorkflowExecution, WorkflowStep
from orchestry.core.exceptions import StepNotFoundError, WorkflowNotFoundError, WorkflowValidationError
from orchestry.core.states import WORKFLOW_TRANSITIONS, WorkflowStatus, WorkflowStepType, ensure_transition
from orchestry.workflows.models import DefinitionRecord, StepRecord, StepSpec

logger = logging.getLogger(__name__)

REFERENCE_FIELDS = ("next_step_id", "true_branch_step_id", "false_branch_step_id", "escalation_step_id")


def validate_step_spec(spec: StepSpec, known_ids: set, own_id: Optional[str] = None) -> None:
    """Check one step against the ids it may reference.

    Raises:
        WorkflowValidationError: If the step is malformed or references an unknown step
    """
    if spec.step_type == WorkflowStepType.AGENT_CALL and not spec.agent_type:
        raise WorkflowValidationError(f"Step '{spec.label}': agent_call steps need an agent_type")
    if spec.step_type in (WorkflowStepType.CONDITION, WorkflowStepType.LOOP) and not spec.condition_expression:
        raise WorkflowValidationError(f"Step '{spec.label}': {spec.step_type.value} steps need a condition_expression")
    if own_id and own_id in spec.parallel_step_ids:
        raise WorkflowValidationError(f"Step '{spec.label}': a parallel step cannot fan out to itself")
    if len(set(spec.parallel_step_ids)) != len(spec.parallel_step_ids):
        raise WorkflowValidationError(f"Step '{spec.label}': duplicate parallel branch")

    unknown = [ref for ref in spec.references() if ref not in known_ids]
    if unknown:
        raise WorkflowValidationError(
            f"Step '{spec.label}' references steps outside this workflow version: {', '.join(unknown)}"
        )


class WorkflowDefinitionManager:
    """Manages workflow definitions and their versioned step sets."""

    def __init__(self, db_manager: DatabaseManager):
        """Initialize definition manager.

        Args:
            db_manager: Database manager instance
        """
        self.db_manager = db_manager

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, workflow_id: str) -> WorkflowDefinition:
        definition = session.get(WorkflowDefinition, workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)
        return definition

    @staticmethod
    def _current_steps(session: Session, definition: WorkflowDefinition) -> List[WorkflowStep]:
        return (
            session.query(WorkflowStep)
            .filter(WorkflowStep.workflow_id == definition.id, WorkflowStep.version == definition.version)
            .order_by(WorkflowStep.sort_order, WorkflowStep.created_at)
            .all()
        )

    def _bump_version(self, session: Session, definition: WorkflowDefinition) -> Dict[str, str]:
        """Start a new definition version.

        Steps referenced by an execution are never touched: when the current
        version is in use its steps are copied to the new version with their
        references remapped. Otherwise the steps are re-tagged in place.

        Returns:
            Mapping from current-version step ids to new-version step ids
        """
        old_version = definition.version
        new_version = old_version + 1
        steps = self._current_steps(session, definition)
        in_use = session.query(WorkflowExecution.id).filter(
            WorkflowExecution.workflow_id == definition.id,
            WorkflowExecution.workflow_version == old_version,
        ).first() is not None

        if not in_use:
            for step in steps:
                step.version = new_version
            definition.version = new_version
            return {step.id: step.id for step in steps}

        mapping = {step.id: str(uuid.uuid4()) for step in steps}
        for step in steps:
            session.add(WorkflowStep(
                id=mapping[step.id],
                workflow_id=definition.id,
                version=new_version,
                label=step.label,
                step_type=step.step_type,
                agent_type=step.agent_type,
                agent_prompt=step.agent_prompt,
                condition_expression=step.condition_expression,
                acceptance_criteria=step.acceptance_criteria,
                next_step_id=mapping.get(step.next_step_id, step.next_step_id),
                true_branch_step_id=mapping.get(step.true_branch_step_id, step.true_branch_step_id),
                false_branch_step_id=mapping.get(step.false_branch_step_id, step.false_branch_step_id),
                parallel_step_ids=[mapping.get(ref, ref) for ref in (step.parallel_step_ids or [])],
                escalation_step_id=mapping.get(step.escalation_step_id, step.escalation_step_id),
                max_retries=step.max_retries,
                retry_delay_ms=step.retry_delay_ms,
                sort_order=step.sort_order,
            ))
        definition.version = new_version
        session.flush()
        logger.info(
            f"[WORKFLOW] Definition '{definition.name}' v{old_version} is in use; "
            f"copied {len(steps)} steps to v{new_version}"
        )
        return mapping

    @staticmethod
    def _write_fields(step: WorkflowStep, spec: StepSpec, mapping: Dict[str, str]) -> None:
        step.label = spec.label
        step.step_type = spec.step_type.value
        step.agent_type = spec.agent_type
        step.agent_prompt = spec.agent_prompt
        step.condition_expression = spec.condition_expression
        step.acceptance_criteria = spec.acceptance_criteria
        for field_name in REFERENCE_FIELDS:
            ref = getattr(spec, field_name)
            setattr(step, field_name, mapping.get(ref, ref) if ref else None)
        step.parallel_step_ids = [mapping.get(ref, ref) for ref in spec.parallel_step_ids]
        step.max_retries = spec.max_retries
        step.retry_delay_ms = spec.retry_delay_ms
        if spec.sort_order is not None:
            step.sort_order = spec.sort_order

    def _refresh_mermaid(self, session: Session, definition: WorkflowDefinition) -> None:
        session.flush()
        definition.mermaid_source = self._render_mermaid(self._current_steps(session, definition))

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def create_definition(self, name: str, description: Optional[str] = None) -> DefinitionRecord:
        """Create an empty draft definition at version 1."""
        with self.db_manager.session_scope() as session:
            definition = WorkflowDefinition(
                id=str(uuid.uuid4()),
                name=name,
                description=description,
                status=WorkflowStatus.DRAFT.value,
                version=1,
            )
            session.add(definition)
            session.flush()
            record = DefinitionRecord.model_validate(definition)

        logger.info(f"[WORKFLOW] Created definition '{name}' ({record.id[:8]})")
        return record

    def get_definition(self, workflow_id: str) -> Optional[DefinitionRecord]:
        with self.db_manager.session_scope() as session:
            definition = session.get(WorkflowDefinition, workflow_id)
            return DefinitionRecord.model_validate(definition) if definition else None

    def list_definitions(self, status: Optional[str] = None) -> List[DefinitionRecord]:
        with self.db_manager.session_scope() as session:
            query = session.query(WorkflowDefinition)
            if status:
                query = query.filter(WorkflowDefinition.status == WorkflowStatus(status).value)
            return [DefinitionRecord.model_validate(d) for d in query.order_by(WorkflowDefinition.name).all()]

    def _set_status(self, workflow_id: str, target: WorkflowStatus) -> DefinitionRecord:
        with self.db_manager.session_scope() as session:
            definition = self._load(session, workflow_id)
            ensure_transition("workflow", WORKFLOW_TRANSITIONS, WorkflowStatus, definition.status, target.value)

            if target == WorkflowStatus.ACTIVE:
                steps = self._current_steps(session, definition)
                if not steps:
                    raise WorkflowValidationError(f"Workflow '{definition.name}' has no steps")
                known = {step.id for step in steps}
                for step in steps:
                    validate_step_spec(StepSpec.model_validate(step, from_attributes=True), known, own_id=step.id)

            definition.status = target.value
            session.flush()
            record = DefinitionRecord.model_validate(definition)

        logger.info(f"[WORKFLOW] Definition '{record.name}' v{record.version} is now {target.value}")
        return record

    def activate(self, workflow_id: str) -> DefinitionRecord:
        """Make a definition runnable after validating its current step graph."""
        return self._set_status(workflow_id, WorkflowStatus.ACTIVE)

    def deprecate(self, workflow_id: str) -> DefinitionRecord:
        return self._set_status(workflow_id, WorkflowStatus.DEPRECATED)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def get_steps(self, workflow_id: str, version: Optional[int] = None) -> List[StepRecord]:
        """Steps of a definition version (current version by default) in sort order."""
        with self.db_manager.session_scope() as session:
            definition = self._load(session, workflow_id)
            rows = (
                session.query(WorkflowStep)
                .filter(
                    WorkflowStep.workflow_id == workflow_id,
                    WorkflowStep.version == (version or definition.version),
                )
                .order_by(WorkflowStep.sort_order, WorkflowStep.created_at)
                .all()
            )
            return [StepRecord.model_validate(row) for row in rows]

    def get_step(self, step_id: str) -> Optional[StepRecord]:
        with self.db_manager.session_scope() as session:
            step = session.get(WorkflowStep, step_id)
            return StepRecord.model_validate(step) if step else None

    def add_steps(self, workflow_id: str, specs: List[StepSpec]) -> List[StepRecord]:
        """Add several steps as one structural change.

        Steps in the batch may reference each other through caller-chosen ids.
        """
        if not specs:
            return []

        with self.db_manager.session_scope() as session:
            definition = self._load(session, workflow_id)
            current = self._current_steps(session, definition)

            batch_ids = [spec.id or str(uuid.uuid4()) for spec in specs]
            if len(set(batch_ids)) != len(batch_ids):
                raise WorkflowValidationError("Duplicate step ids in batch")
            clashes = session.query(WorkflowStep.id).filter(WorkflowStep.id.in_(batch_ids)).all()
            if clashes:
                raise WorkflowValidationError(f"Step ids already exist: {', '.join(row[0] for row in clashes)}")

            known = {step.id for step in current} | set(batch_ids)
            for spec, step_id in zip(specs, batch_ids):
                validate_step_spec(spec, known, own_id=step_id)

            mapping = self._bump_version(session, definition)
            next_order = max((step.sort_order for step in current), default=-1) + 1

            created = []
            for spec, step_id in zip(specs, batch_ids):
                step = WorkflowStep(
                    id=step_id,
                    workflow_id=workflow_id,
                    version=definition.version,
                    sort_order=next_order,
                )
                next_order += 1
                self._write_fields(step, spec, mapping)
                session.add(step)
                created.append(step)

            self._refresh_mermaid(session, definition)
            records = [StepRecord.model_validate(step) for step in created]
            version = definition.version

        logger.info(f"[WORKFLOW] Added {len(records)} steps to workflow {workflow_id[:8]} (now v{version})")
        return records

    def add_step(self, workflow_id: str, spec: StepSpec) -> StepRecord:
        return self.add_steps(workflow_id, [spec])[0]

    def update_step(self, workflow_id: str, step_id: str, spec: StepSpec) -> StepRecord:
        """Replace a step's fields.

        Returns:
            The step as it exists in the new version (a copy when the old
            version is referenced by an execution)
        """
        with self.db_manager.session_scope() as session:
            definition = self._load(session, workflow_id)
            current = {step.id: step for step in self._current_steps(session, definition)}
            if step_id not in current:
                raise StepNotFoundError(step_id)
            validate_step_spec(spec, set(current), own_id=step_id)

            mapping = self._bump_version(session, definition)
            step = session.get(WorkflowStep, mapping[step_id])
            self._write_fields(step, spec, mapping)

            self._refresh_mermaid(session, definition)
            record = StepRecord.model_validate(step)

        logger.info(f"[WORKFLOW] Updated step '{record.label}' in workflow {workflow_id[:8]} (v{record.version})")
        return record

    def remove_step(self, workflow_id: str, step_id: str) -> None:
        """Remove a step that no other step references."""
        with self.db_manager.session_scope() as session:
            definition = self._load(session, workflow_id)
            current = self._current_steps(session, definition)
            if step_id not in {step.id for step in current}:
                raise StepNotFoundError(step_id)

            referrers = [
                step.label for step in current
                if step.id != step_id and step_id in StepSpec.model_validate(step, from_attributes=True).references()
            ]
            if referrers:
                raise WorkflowValidationError(f"Step {step_id} is still referenced by: {', '.join(referrers)}")

            mapping = self._bump_version(session, definition)
            session.delete(session.get(WorkflowStep, mapping[step_id]))
            self._refresh_mermaid(session, definition)

        logger.info(f"[WORKFLOW] Removed step {step_id[:8]} from workflow {workflow_id[:8]}")

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @staticmethod
    def _render_mermaid(steps: List[WorkflowStep]) -> str:
        aliases = {step.id: f"S{index}" for index, step in enumerate(steps, start=1)}
        lines = ["flowchart TD"]

        for step in steps:
            label = step.label.replace('"', "'")
            if step.step_type in (WorkflowStepType.CONDITION.value, WorkflowStepType.LOOP.value):
                lines.append(f'    {aliases[step.id]}{{"{label}"}}')
            else:
                lines.append(f'    {aliases[step.id]}["{label}"]')

        def edge(source, target, tag=None, arrow="-->"):
            if target in aliases:
                middle = f"{arrow}|{tag}|" if tag else arrow
                lines.append(f"    {aliases[source]} {middle} {aliases[target]}")

        for step in steps:
            if step.step_type in (WorkflowStepType.CONDITION.value, WorkflowStepType.LOOP.value):
                edge(step.id, step.true_branch_step_id, "true")
                edge(step.id, step.false_branch_step_id, "false")
            for branch in step.parallel_step_ids or []:
                edge(step.id, branch, "parallel", arrow="-.->")
            edge(step.id, step.next_step_id)
            edge(step.id, step.escalation_step_id, "escalate")

        return "\n".join(lines)

    def to_mermaid(self, workflow_id: str, version: Optional[int] = None) -> str:
        """Render a definition version's step graph as a Mermaid flowchart."""
        with self.db_manager.session_scope() as session:
            definition = self._load(session, workflow_id)
            if version is None or version == definition.version:
                return self._render_mermaid(self._current_steps(session, definition))
            rows = (
                session.query(WorkflowStep)
                .filter(WorkflowStep.workflow_id == workflow_id, WorkflowStep.version == version)
                .order_by(WorkflowStep.sort_order, WorkflowStep.created_at)
                .all()
            )
            return self._render_mermaid(rows)
