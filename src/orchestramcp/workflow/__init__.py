"""Workflow domain: multi-step operations with explicit partial failure."""

from __future__ import annotations

from orchestramcp.workflow.capture import CAPTURE_KNOWLEDGE
from orchestramcp.workflow.capture import capture_knowledge_steps
from orchestramcp.workflow.coordinator import WorkflowContext
from orchestramcp.workflow.coordinator import WorkflowCoordinator
from orchestramcp.workflow.coordinator import WorkflowResult
from orchestramcp.workflow.coordinator import WorkflowStep
from orchestramcp.workflow.coordinator import dispatch_step

__all__ = [
    "CAPTURE_KNOWLEDGE",
    "WorkflowContext",
    "WorkflowCoordinator",
    "WorkflowResult",
    "WorkflowStep",
    "capture_knowledge_steps",
    "dispatch_step",
]
