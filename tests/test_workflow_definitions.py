"""Tests for workflow definition authoring, validation and versioning."""

import pytest

from orchestry.core.exceptions import (
    InvalidTransitionError,
    StepNotFoundError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from orchestry.core.states import WorkflowStatus, WorkflowStepType
from orchestry.workflows.engine import WorkflowEngine
from orchestry.workflows.models import StepSpec


def _linear_specs():
    return [
        StepSpec(id="plan", label="Plan", step_type="agent_call", agent_type="planning", next_step_id="check"),
        StepSpec(
            id="check",
            label="Plan approved?",
            step_type="condition",
            condition_expression="$result.contains('ok')",
            true_branch_step_id="build",
            false_branch_step_id="plan",
        ),
        StepSpec(id="build", label="Build", step_type="agent_call", agent_type="coding"),
    ]


class TestDefinitionLifecycle:
    """Test definition status changes."""

    def test_create_draft(self, definition_manager):
        definition = definition_manager.create_definition("Feature flow", "Plan, then build")

        assert definition.status == WorkflowStatus.DRAFT
        assert definition.version == 1
        assert definition_manager.get_definition(definition.id).name == "Feature flow"

    def test_activate_requires_steps(self, definition_manager):
        definition = definition_manager.create_definition("Empty")

        with pytest.raises(WorkflowValidationError):
            definition_manager.activate(definition.id)

    def test_activate_and_deprecate(self, definition_manager):
        definition = definition_manager.create_definition("Flow")
        definition_manager.add_steps(definition.id, _linear_specs())

        assert definition_manager.activate(definition.id).status == WorkflowStatus.ACTIVE
        assert definition_manager.deprecate(definition.id).status == WorkflowStatus.DEPRECATED
        assert [d.id for d in definition_manager.list_definitions(status="deprecated")] == [definition.id]

    def test_cannot_return_to_draft(self, definition_manager):
        definition = definition_manager.create_definition("Flow")
        definition_manager.add_steps(definition.id, _linear_specs())
        definition_manager.activate(definition.id)

        with pytest.raises(InvalidTransitionError):
            definition_manager._set_status(definition.id, WorkflowStatus.DRAFT)

    def test_missing_definition(self, definition_manager):
        with pytest.raises(WorkflowNotFoundError):
            definition_manager.get_steps("missing")


class TestStepValidation:
    """Test validation of authored steps."""

    def test_batch_steps_may_reference_each_other(self, definition_manager):
        definition = definition_manager.create_definition("Flow")

        steps = definition_manager.add_steps(definition.id, _linear_specs())

        assert [s.id for s in steps] == ["plan", "check", "build"]
        assert [s.sort_order for s in steps] == [0, 1, 2]
        assert steps[1].true_branch_step_id == "build"

    def test_unknown_reference_rejected(self, definition_manager):
        definition = definition_manager.create_definition("Flow")

        with pytest.raises(WorkflowValidationError):
            definition_manager.add_step(definition.id, StepSpec(
                label="Dangling", step_type="agent_call", agent_type="coding", next_step_id="nowhere"
            ))
        assert definition_manager.get_steps(definition.id) == []

    def test_agent_call_needs_agent_type(self, definition_manager):
        definition = definition_manager.create_definition("Flow")

        with pytest.raises(WorkflowValidationError):
            definition_manager.add_step(definition.id, StepSpec(label="Who?", step_type="agent_call"))

    def test_condition_needs_expression(self, definition_manager):
        definition = definition_manager.create_definition("Flow")

        with pytest.raises(WorkflowValidationError):
            definition_manager.add_step(definition.id, StepSpec(label="If", step_type="condition"))

    def test_parallel_cannot_include_itself(self, definition_manager):
        definition = definition_manager.create_definition("Flow")

        with pytest.raises(WorkflowValidationError):
            definition_manager.add_step(definition.id, StepSpec(
                id="fan", label="Fan out", step_type="parallel", parallel_step_ids=["fan"]
            ))

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            StepSpec(label="Bad", step_type="wait", max_retries=-1)

    def test_remove_referenced_step_rejected(self, definition_manager):
        definition = definition_manager.create_definition("Flow")
        definition_manager.add_steps(definition.id, _linear_specs())

        with pytest.raises(WorkflowValidationError):
            definition_manager.remove_step(definition.id, "build")

        with pytest.raises(StepNotFoundError):
            definition_manager.remove_step(definition.id, "missing")


class TestVersioning:
    """Test that structural changes create new versions."""

    def test_edits_bump_version_in_place_when_unused(self, definition_manager):
        definition = definition_manager.create_definition("Flow")
        definition_manager.add_steps(definition.id, _linear_specs())

        updated = definition_manager.update_step(definition.id, "build", StepSpec(
            label="Build and test", step_type="agent_call", agent_type="coding"
        ))

        assert updated.id == "build"
        assert updated.version == 3
        assert definition_manager.get_definition(definition.id).version == 3
        assert len(definition_manager.get_steps(definition.id)) == 3

    def test_in_use_version_is_copied(self, definition_manager, db_manager, config):
        definition = definition_manager.create_definition("Flow")
        definition_manager.add_steps(definition.id, _linear_specs())
        definition_manager.activate(definition.id)
        execution = WorkflowEngine(db_manager, config=config).start_execution(definition.id)
        assert execution.workflow_version == 2

        updated = definition_manager.update_step(definition.id, "build", StepSpec(
            label="Build v2", step_type="agent_call", agent_type="coding"
        ))

        assert updated.id != "build"
        assert updated.version == 3
        old_steps = definition_manager.get_steps(definition.id, version=2)
        new_steps = definition_manager.get_steps(definition.id)
        assert {s.label for s in old_steps} == {"Plan", "Plan approved?", "Build"}
        assert {s.label for s in new_steps} == {"Plan", "Plan approved?", "Build v2"}

        new_check = next(s for s in new_steps if s.step_type == WorkflowStepType.CONDITION)
        new_ids = {s.id for s in new_steps}
        assert new_check.true_branch_step_id in new_ids
        assert new_check.false_branch_step_id in new_ids

    def test_mermaid_rendering(self, definition_manager):
        definition = definition_manager.create_definition("Flow")
        definition_manager.add_steps(definition.id, _linear_specs())

        diagram = definition_manager.to_mermaid(definition.id)

        assert diagram.splitlines()[0] == "flowchart TD"
        assert 'S2{"Plan approved?"}' in diagram
        assert "S1 --> S2" in diagram
        assert "S2 -->|true| S3" in diagram
        assert "S2 -->|false| S1" in diagram
        assert definition_manager.get_definition(definition.id).mermaid_source == diagram
