"""Domain models for sponsored tasks and their executions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    EXPIRED = "expired"


class ExecutionStatus(str, Enum):
    """Execution lifecycle states."""

    PENDING = "pending"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    AUTO_APPROVED = "auto_approved"
    REJECTED = "rejected"


OPEN_EXECUTION_STATUSES = frozenset({ExecutionStatus.PENDING, ExecutionStatus.IN_REVIEW})
TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.AUTO_APPROVED, ExecutionStatus.REJECTED},
)


class ResolutionOutcome(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ResolvedBy(str, Enum):
    """Who finalized an execution."""

    MODERATOR = "moderator"
    VERIFIER = "verifier"
    REVIEW_TIMEOUT = "review_timeout"
    SYSTEM = "system"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    task_type: str
    title: str
    target_url: str
    reward: int
    total_executions: int
    description: str | None = None
    is_top_promoted: bool = False
    auto_check: bool | None = None
    expires_at: datetime | None = None
    min_account_age_days: int = 0
    min_tier: str = "bronze"


@dataclass(slots=True, frozen=True)
class CostBreakdown:
    """What a task costs its author up front."""

    rewards_cost: int
    commission: int
    promotion_fee: int
    total_cost: int


@dataclass(slots=True)
class Evidence:
    url: str | None = None
    comment: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for callers and the CLI."""

    task_id: str
    author_id: str
    task_type: str
    check_type: str | None
    title: str
    description: str | None
    target_url: str
    reward: int
    total_executions: int
    completed_executions: int
    remaining_executions: int
    rewards_cost: int
    commission: int
    promotion_fee: int
    total_cost: int
    frozen_amount: int
    spent_amount: int
    refunded_amount: int
    status: TaskStatus
    auto_check: bool
    is_top_promoted: bool
    priority: int
    min_account_age_days: int
    min_tier: str
    clicks: int
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class ExecutionView:
    """Readable execution view."""

    execution_id: str
    task_id: str
    user_id: str
    status: ExecutionStatus
    reward_amount: int
    auto_check_attempts: int
    auto_check_result: dict[str, Any] | None
    evidence_url: str | None
    evidence_comment: str | None
    rejection_reason: str | None
    resolved_by: ResolvedBy | None
    started_at: datetime
    expires_at: datetime
    submitted_at: datetime | None
    resolved_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


@dataclass(slots=True)
class SweepSummary:
    """Counters reported by the periodic sweeps."""

    processed: int = 0
    skipped: int = 0
    refunded_amount: int = 0
    ids: list[str] = field(default_factory=list)
