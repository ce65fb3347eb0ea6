"""Sponsored tasks: escrow, executions and their settlement."""

from taskmarket.tasks.engine import TaskEngine
from taskmarket.tasks.models import (
    Evidence,
    ExecutionStatus,
    ExecutionView,
    ResolutionOutcome,
    ResolvedBy,
    TaskCreate,
    TaskStatus,
    TaskView,
)

__all__ = [
    "Evidence",
    "ExecutionStatus",
    "ExecutionView",
    "ResolutionOutcome",
    "ResolvedBy",
    "TaskCreate",
    "TaskEngine",
    "TaskStatus",
    "TaskView",
]
