"""cadence.workflows — workflow definitions: storage and save-time validation."""

from .manager import WorkflowManager, parse_workflow
from .validator import WorkflowValidator, subject_entity_type

__all__ = ["WorkflowManager", "WorkflowValidator", "parse_workflow", "subject_entity_type"]
