"""Durable Flow: a workflow engine with an append-only execution journal."""

from .core.runtime import WorkflowRuntime
from .core.activity_registry import ActivityRegistry
from .models.core import WorkflowDefinition, ExecutionStatusEnum, NodeStatusEnum

__version__ = "1.0.0"

__all__ = [
    "WorkflowRuntime",
    "ActivityRegistry",
    "WorkflowDefinition",
    "ExecutionStatusEnum",
    "NodeStatusEnum",
]
