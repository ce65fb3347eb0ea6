"""Accounts, ledger, tasks, executions and gift checks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("tier", sa.String(), nullable=False, server_default="bronze"),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("frozen_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        sa.CheckConstraint("frozen_balance >= 0", name="ck_accounts_frozen_non_negative"),
        sa.PrimaryKeyConstraint("account_id"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("frozen_delta", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("frozen_before", sa.Integer(), nullable=False),
        sa.Column("frozen_after", sa.Integer(), nullable=False),
        sa.Column("related_task_id", sa.String(), nullable=True),
        sa.Column("related_check_id", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.account_id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index(
        "idx_ledger_entries_account",
        "ledger_entries",
        ["account_id", "entry_id"],
        unique=False,
    )
    op.create_index("ix_ledger_entries_reason", "ledger_entries", ["reason"], unique=False)
    op.create_index(
        "ix_ledger_entries_related_task_id",
        "ledger_entries",
        ["related_task_id"],
        unique=False,
    )
    op.create_index(
        "ix_ledger_entries_related_check_id",
        "ledger_entries",
        ["related_check_id"],
        unique=False,
    )

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("author_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("check_type", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("target_url", sa.String(), nullable=False),
        sa.Column("reward", sa.Integer(), nullable=False),
        sa.Column("total_executions", sa.Integer(), nullable=False),
        sa.Column("completed_executions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_executions", sa.Integer(), nullable=False),
        sa.Column("rewards_cost", sa.Integer(), nullable=False),
        sa.Column("commission", sa.Integer(), nullable=False),
        sa.Column("promotion_fee", sa.Integer(), nullable=False),
        sa.Column("total_cost", sa.Integer(), nullable=False),
        sa.Column("frozen_amount", sa.Integer(), nullable=False),
        sa.Column("spent_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refunded_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("auto_check", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_top_promoted", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("min_account_age_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("min_tier", sa.String(), nullable=False, server_default="bronze"),
        sa.Column("clicks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("frozen_amount >= 0", name="ck_tasks_frozen_non_negative"),
        sa.CheckConstraint(
            "completed_executions + remaining_executions <= total_executions",
            name="ck_tasks_execution_counts",
        ),
        sa.ForeignKeyConstraint(["author_id"], ["accounts.account_id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_status", "tasks", ["status"], unique=False)
    op.create_index("idx_tasks_feed", "tasks", ["status", "priority", "created_at"], unique=False)
    op.create_index(
        "idx_tasks_author_created",
        "tasks",
        ["author_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "task_executions",
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("reward_amount", sa.Integer(), nullable=False),
        sa.Column("auto_check_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("auto_check_result_json", sa.Text(), nullable=True),
        sa.Column("evidence_url", sa.String(), nullable=True),
        sa.Column("evidence_comment", sa.String(), nullable=True),
        sa.Column("rejection_reason", sa.String(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["accounts.account_id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("execution_id"),
        sa.UniqueConstraint("task_id", "user_id", name="uq_task_executions_task_user"),
    )
    op.create_index(
        "idx_task_executions_status_submitted",
        "task_executions",
        ["status", "submitted_at"],
        unique=False,
    )
    op.create_index(
        "idx_task_executions_user",
        "task_executions",
        ["user_id", "started_at"],
        unique=False,
    )

    op.create_table(
        "checks",
        sa.Column("check_id", sa.String(), nullable=False),
        sa.Column("creator_id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("check_type", sa.String(), nullable=False),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("amount_per_activation", sa.Integer(), nullable=False),
        sa.Column("max_activations", sa.Integer(), nullable=False),
        sa.Column("current_activations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("target_user_id", sa.String(), nullable=True),
        sa.Column("required_subscription", sa.String(), nullable=True),
        sa.Column("comment", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("refunded_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "current_activations <= max_activations",
            name="ck_checks_activation_cap",
        ),
        sa.ForeignKeyConstraint(["creator_id"], ["accounts.account_id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("check_id"),
        sa.UniqueConstraint("code", name="uq_checks_code"),
    )
    op.create_index(
        "idx_checks_active_expiry",
        "checks",
        ["is_active", "expires_at"],
        unique=False,
    )
    op.create_index("idx_checks_creator", "checks", ["creator_id", "created_at"], unique=False)

    op.create_table(
        "check_activations",
        sa.Column("activation_id", sa.Integer(), nullable=False),
        sa.Column("check_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["check_id"], ["checks.check_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["accounts.account_id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("activation_id"),
        sa.UniqueConstraint("check_id", "user_id", name="uq_check_activations_check_user"),
    )
    op.create_index(
        "idx_check_activations_user",
        "check_activations",
        ["user_id", "activated_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_check_activations_user", table_name="check_activations")
    op.drop_table("check_activations")
    op.drop_index("idx_checks_creator", table_name="checks")
    op.drop_index("idx_checks_active_expiry", table_name="checks")
    op.drop_table("checks")
    op.drop_index("idx_task_executions_user", table_name="task_executions")
    op.drop_index("idx_task_executions_status_submitted", table_name="task_executions")
    op.drop_table("task_executions")
    op.drop_index("idx_tasks_author_created", table_name="tasks")
    op.drop_index("idx_tasks_feed", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_ledger_entries_related_check_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_related_task_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_reason", table_name="ledger_entries")
    op.drop_index("idx_ledger_entries_account", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_table("accounts")
