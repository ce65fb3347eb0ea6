"""Domain models for the auto-check job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_QUEUE_NAME = "auto_check"


class JobStatus(str, Enum):
    """Durable verification job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_FINAL = "failed_final"


class VerifierOutcome(str, Enum):
    """What an external lookup could establish."""

    PASSED = "passed"
    NOT_SATISFIED = "not_satisfied"
    UNDETERMINED = "undetermined"


class Decision(str, Enum):
    """What the pipeline does with one verification attempt."""

    APPROVE = "approve"
    RETRY = "retry"
    REJECT = "reject"
    ESCALATE = "escalate"


@dataclass(slots=True)
class VerifierResult:
    outcome: VerifierOutcome
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.outcome == VerifierOutcome.PASSED

    def as_dict(self) -> dict[str, Any]:
        return {"outcome": self.outcome.value, "details": self.details}


@dataclass(slots=True)
class VerificationJobView:
    """Readable job view for the worker and the CLI."""

    job_id: str
    queue_name: str
    execution_id: str
    user_id: str
    check_type: str
    target_url: str
    status: JobStatus
    attempt: int
    max_deliveries: int
    run_after: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    worker_id: str | None
    outcome: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    job: VerificationJobView
    events: list[JobEventView]
