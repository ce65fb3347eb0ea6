"""SQLModel ORM tables for the marketplace database."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class Account(SQLModel, table=True):
    __tablename__ = "accounts"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("frozen_balance >= 0", name="ck_accounts_frozen_non_negative"),
    )

    account_id: str = Field(primary_key=True)
    display_name: str | None = None
    tier: str = Field(default="bronze")
    balance: int = 0
    frozen_balance: int = 0
    total_earned: int = 0
    total_spent: int = 0
    registered_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "ledger_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_ledger_entries_account", "account_id", "entry_id"),)

    entry_id: int | None = Field(default=None, primary_key=True)
    account_id: str = Field(
        sa_column=Column(
            ForeignKey("accounts.account_id", ondelete="RESTRICT"),
            nullable=False,
        ),
    )
    kind: str
    reason: str = Field(index=True)
    amount: int
    frozen_delta: int
    balance_before: int
    balance_after: int
    frozen_before: int
    frozen_after: int
    related_task_id: str | None = Field(default=None, index=True)
    related_check_id: str | None = Field(default=None, index=True)
    description: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MarketTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint("frozen_amount >= 0", name="ck_tasks_frozen_non_negative"),
        CheckConstraint(
            "completed_executions + remaining_executions <= total_executions",
            name="ck_tasks_execution_counts",
        ),
        Index("idx_tasks_feed", "status", "priority", "created_at"),
        Index("idx_tasks_author_created", "author_id", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    author_id: str = Field(
        sa_column=Column(
            ForeignKey("accounts.account_id", ondelete="RESTRICT"),
            nullable=False,
        ),
    )
    task_type: str
    check_type: str | None = None
    title: str
    description: str | None = None
    target_url: str
    reward: int
    total_executions: int
    completed_executions: int = 0
    remaining_executions: int
    rewards_cost: int
    commission: int
    promotion_fee: int
    total_cost: int
    frozen_amount: int
    spent_amount: int = 0
    refunded_amount: int = 0
    status: str = Field(index=True)
    auto_check: bool = True
    is_top_promoted: bool = False
    priority: int = 1
    min_account_age_days: int = 0
    min_tier: str = "bronze"
    clicks: int = 0
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskExecution(SQLModel, table=True):
    __tablename__ = "task_executions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "user_id", name="uq_task_executions_task_user"),
        Index("idx_task_executions_status_submitted", "status", "submitted_at"),
        Index("idx_task_executions_user", "user_id", "started_at"),
    )

    execution_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("accounts.account_id", ondelete="RESTRICT"),
            nullable=False,
        ),
    )
    status: str
    reward_amount: int
    auto_check_attempts: int = 0
    auto_check_result_json: str | None = Field(default=None, sa_column=Column(Text))
    evidence_url: str | None = None
    evidence_comment: str | None = None
    rejection_reason: str | None = None
    resolved_by: str | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    submitted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GiftCheck(SQLModel, table=True):
    __tablename__ = "checks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("code", name="uq_checks_code"),
        CheckConstraint(
            "current_activations <= max_activations",
            name="ck_checks_activation_cap",
        ),
        Index("idx_checks_active_expiry", "is_active", "expires_at"),
        Index("idx_checks_creator", "creator_id", "created_at"),
    )

    check_id: str = Field(primary_key=True)
    creator_id: str = Field(
        sa_column=Column(
            ForeignKey("accounts.account_id", ondelete="RESTRICT"),
            nullable=False,
        ),
    )
    code: str
    check_type: str
    total_amount: int
    amount_per_activation: int
    max_activations: int
    current_activations: int = 0
    password_hash: str | None = None
    target_user_id: str | None = None
    required_subscription: str | None = None
    comment: str | None = None
    is_active: bool = True
    refunded_amount: int = 0
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class CheckActivation(SQLModel, table=True):
    __tablename__ = "check_activations"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("check_id", "user_id", name="uq_check_activations_check_user"),
        Index("idx_check_activations_user", "user_id", "activated_at"),
    )

    activation_id: int | None = Field(default=None, primary_key=True)
    check_id: str = Field(
        sa_column=Column(
            ForeignKey("checks.check_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("accounts.account_id", ondelete="RESTRICT"),
            nullable=False,
        ),
    )
    amount: int
    activated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class VerificationJob(SQLModel, table=True):
    __tablename__ = "verification_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_verification_jobs_queue", "queue_name", "status", "run_after", "created_at"),
        Index(
            "uq_verification_jobs_open_execution",
            "execution_id",
            unique=True,
            sqlite_where=text("status IN ('queued', 'running')"),
        ),
    )

    job_id: str = Field(primary_key=True)
    queue_name: str
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("task_executions.execution_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    user_id: str
    check_type: str
    target_url: str
    status: str
    attempt: int = 0
    max_deliveries: int = 10
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    worker_id: str | None = None
    outcome: str | None = None
    last_error: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class VerificationJobEvent(SQLModel, table=True):
    __tablename__ = "verification_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_verification_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("verification_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_notifications_pending", "delivered_at", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    kind: str
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    delivered_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
