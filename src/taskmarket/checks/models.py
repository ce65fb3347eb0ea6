"""Domain models for gift checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class CheckType(str, Enum):
    PERSONAL = "personal"
    MULTI = "multi"


@dataclass(slots=True)
class CheckCreate:
    """Input payload for issuing a check."""

    check_type: CheckType | str
    total_amount: int
    max_activations: int = 1
    password: str | None = None
    target_user_id: str | None = None
    required_subscription: str | None = None
    comment: str | None = None
    expires_at: datetime | None = None


@dataclass(slots=True)
class CheckView:
    """Readable check view; never exposes the password hash."""

    check_id: str
    creator_id: str
    code: str
    check_type: CheckType
    total_amount: int
    amount_per_activation: int
    max_activations: int
    current_activations: int
    has_password: bool
    target_user_id: str | None
    required_subscription: str | None
    comment: str | None
    is_active: bool
    refunded_amount: int
    expires_at: datetime
    created_at: datetime
    closed_at: datetime | None

    @property
    def remaining_activations(self) -> int:
        return self.max_activations - self.current_activations

    @property
    def outstanding_escrow(self) -> int:
        """Currency still held by the check; 0 once it is closed and refunded."""

        return (
            self.total_amount
            - self.current_activations * self.amount_per_activation
            - self.refunded_amount
        )


@dataclass(slots=True)
class ActivationView:
    activation_id: int
    check_id: str
    user_id: str
    amount: int
    activated_at: datetime


@dataclass(slots=True)
class ExpirySummary:
    """Result of one ``expire_checks`` sweep."""

    processed: int = 0
    skipped: int = 0
    refunded_amount: int = 0
    check_ids: list[str] = field(default_factory=list)
