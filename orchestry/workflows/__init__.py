"""Workflow definitions, condition evaluation and the execution engine."""

from orchestry.workflows.conditions import ConditionEvaluator
from orchestry.workflows.definitions import WorkflowDefinitionManager
from orchestry.workflows.engine import WorkflowEngine

__all__ = ["ConditionEvaluator", "WorkflowDefinitionManager", "WorkflowEngine"]
