"""Controllers for marketplace CLI commands."""

from __future__ import annotations

import json
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from taskmarket.checks.models import CheckCreate, CheckView
from taskmarket.config import Settings
from taskmarket.ledger.models import AccountView
from taskmarket.maintenance import run_sweep
from taskmarket.service import Marketplace
from taskmarket.storage.common import utc_now
from taskmarket.tasks.models import Evidence, ExecutionView, ResolutionOutcome, TaskCreate, TaskView
from taskmarket.verification.models import JobStatus


@dataclass(slots=True)
class AccountOpenCommand:
    """CLI input for opening an account."""

    db_path: Path | None
    account_id: str
    display_name: str | None = None
    tier: str = "bronze"
    registered_at: datetime | None = None


@dataclass(slots=True)
class AccountAmountCommand:
    """CLI input for deposits and withdrawals."""

    db_path: Path | None
    account_id: str
    amount: int
    description: str | None = None


@dataclass(slots=True)
class AccountCommand:
    db_path: Path | None
    account_id: str


@dataclass(slots=True)
class AccountHistoryCommand:
    db_path: Path | None
    account_id: str
    limit: int = 20


@dataclass(slots=True)
class SupplyCommand:
    db_path: Path | None


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    author_id: str
    task_type: str
    title: str
    target_url: str
    reward: int
    executions: int
    description: str | None = None
    promoted: bool = False
    auto_check: bool | None = None
    min_tier: str = "bronze"
    min_account_age_days: int = 0
    lifetime_hours: int | None = None


@dataclass(slots=True)
class TaskShowCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing.

    ``user_id`` lists tasks available to that user, ``author_id`` lists the
    author's own tasks, and with ``review`` the executions awaiting review.
    """

    db_path: Path | None
    user_id: str | None = None
    author_id: str | None = None
    review: bool = False
    limit: int = 20


@dataclass(slots=True)
class TaskStartCommand:
    db_path: Path | None
    task_id: str
    user_id: str


@dataclass(slots=True)
class TaskSubmitCommand:
    db_path: Path | None
    execution_id: str
    user_id: str | None = None
    evidence_url: str | None = None
    comment: str | None = None


@dataclass(slots=True)
class TaskResolveCommand:
    """CLI input for moderator approve/reject."""

    db_path: Path | None
    execution_id: str
    author_id: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class CheckCreateCommand:
    """CLI input for check creation."""

    db_path: Path | None
    creator_id: str
    check_type: str
    total_amount: int
    activations: int = 1
    password: str | None = None
    target_user_id: str | None = None
    required_subscription: str | None = None
    comment: str | None = None
    lifetime_hours: int | None = None


@dataclass(slots=True)
class CheckActivateCommand:
    db_path: Path | None
    user_id: str
    code: str
    password: str | None = None


@dataclass(slots=True)
class CheckShowCommand:
    db_path: Path | None
    code: str


@dataclass(slots=True)
class CheckDeactivateCommand:
    db_path: Path | None
    check_id: str
    creator_id: str


@dataclass(slots=True)
class VerifyWorkerCommand:
    """CLI input for verification worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None = None
    max_idle_polls: int = 1
    concurrency: int = 1


@dataclass(slots=True)
class VerifyJobsCommand:
    db_path: Path | None
    status: str | None = None
    execution_id: str | None = None
    limit: int = 20


@dataclass(slots=True)
class VerifyInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class MaintenanceSweepCommand:
    db_path: Path | None


class MarketCliController:
    """Coordinates ledger, task, check and verification CLI operations."""

    # -- accounts ----------------------------------------------------------

    def open_account(self, command: AccountOpenCommand) -> list[str]:
        with _market(command.db_path) as market:
            account = market.ledger.open_account(
                command.account_id,
                display_name=command.display_name,
                tier=command.tier,
                registered_at=command.registered_at,
            )
        return [f"Account: {_account_line(account)}"]

    def deposit(self, command: AccountAmountCommand) -> list[str]:
        with _market(command.db_path) as market:
            account = market.ledger.deposit(
                command.account_id,
                command.amount,
                description=command.description,
            )
        return [f"Deposited {command.amount} GRAM: {_account_line(account)}"]

    def withdraw(self, command: AccountAmountCommand) -> list[str]:
        with _market(command.db_path) as market:
            account = market.ledger.withdraw(
                command.account_id,
                command.amount,
                description=command.description,
            )
        return [f"Withdrew {command.amount} GRAM: {_account_line(account)}"]

    def balance(self, command: AccountCommand) -> list[str]:
        with _market(command.db_path) as market:
            account = market.ledger.get_account(command.account_id)
        return [
            _account_line(account),
            f"total_earned={account.total_earned} total_spent={account.total_spent}",
        ]

    def history(self, command: AccountHistoryCommand) -> list[str]:
        with _market(command.db_path) as market:
            entries = market.ledger.list_entries(command.account_id, limit=command.limit)
        if not entries:
            return ["No ledger entries."]
        return [
            f"#{entry.entry_id} {entry.created_at.isoformat()} {entry.kind.value:<8} "
            f"{entry.reason.value:<12} amount={entry.amount:+d} frozen={entry.frozen_delta:+d} "
            f"balance={entry.balance_before}->{entry.balance_after} "
            f"frozen_balance={entry.frozen_before}->{entry.frozen_after}"
            for entry in entries
        ]

    def reconcile(self, command: AccountCommand) -> list[str]:
        with _market(command.db_path) as market:
            report = market.ledger.reconcile(command.account_id)
        lines = [
            f"Reconcile {report.account_id}: entries={report.entries} "
            f"replayed={report.replayed_balance}/{report.replayed_frozen} "
            f"stored={report.stored_balance}/{report.stored_frozen}",
            "Status: OK" if report.ok else "Status: MISMATCH",
        ]
        if report.first_broken_entry_id is not None:
            lines.append(f"First broken entry: #{report.first_broken_entry_id}")
        return lines

    def supply(self, command: SupplyCommand) -> list[str]:
        with _market(command.db_path) as market:
            snapshot = market.ledger.supply_snapshot()
        return [
            f"balances={snapshot.total_balance} frozen={snapshot.total_frozen} "
            f"check_escrow={snapshot.outstanding_check_escrow}",
            f"circulating={snapshot.circulating} "
            f"deposits={snapshot.deposits} withdrawals={snapshot.withdrawals}",
            "Conservation: OK" if snapshot.conserved else "Conservation: BROKEN",
        ]

    # -- tasks -------------------------------------------------------------

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        expires_at = (
            utc_now() + timedelta(hours=command.lifetime_hours)
            if command.lifetime_hours
            else None
        )
        with _market(command.db_path) as market:
            task = market.tasks.create_task(
                command.author_id,
                TaskCreate(
                    task_type=command.task_type,
                    title=command.title,
                    target_url=command.target_url,
                    reward=command.reward,
                    total_executions=command.executions,
                    description=command.description,
                    is_top_promoted=command.promoted,
                    auto_check=command.auto_check,
                    expires_at=expires_at,
                    min_account_age_days=command.min_account_age_days,
                    min_tier=command.min_tier,
                ),
            )
        return [
            f"Task created: task_id={task.task_id} status={task.status.value}",
            f"Cost: rewards={task.rewards_cost} commission={task.commission} "
            f"promotion={task.promotion_fee} total={task.total_cost}",
        ]

    def show_task(self, command: TaskShowCommand) -> list[str]:
        with _market(command.db_path) as market:
            task = market.tasks.get_task(command.task_id)
        return [
            _task_line(task),
            f"target={task.target_url} auto_check={task.auto_check} "
            f"check_type={task.check_type or '-'}",
            f"escrow: total={task.total_cost} frozen={task.frozen_amount} "
            f"spent={task.spent_amount} refunded={task.refunded_amount}",
            f"expires_at={task.expires_at.isoformat()} clicks={task.clicks}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        with _market(command.db_path) as market:
            if command.review:
                if command.author_id is None:
                    raise ValueError("--review requires --author.")
                executions = market.tasks.list_review_queue(
                    command.author_id,
                    limit=command.limit,
                )
                return [_execution_line(item) for item in executions] or ["Review queue is empty."]
            if command.author_id is not None:
                tasks = market.tasks.list_author_tasks(command.author_id, limit=command.limit)
            elif command.user_id is not None:
                tasks = market.tasks.list_available_tasks(command.user_id, limit=command.limit)
            else:
                raise ValueError("Pass --user or --author.")
        return [_task_line(task) for task in tasks] or ["No tasks."]

    def start_execution(self, command: TaskStartCommand) -> list[str]:
        with _market(command.db_path) as market:
            execution = market.tasks.start_execution(command.task_id, command.user_id)
        return [f"Execution started: {_execution_line(execution)}"]

    def submit_execution(self, command: TaskSubmitCommand) -> list[str]:
        with _market(command.db_path) as market:
            execution = market.tasks.submit_execution(
                command.execution_id,
                Evidence(url=command.evidence_url, comment=command.comment),
                user_id=command.user_id,
            )
        return [f"Execution submitted: {_execution_line(execution)}"]

    def approve_execution(self, command: TaskResolveCommand) -> list[str]:
        return self._resolve(command, ResolutionOutcome.APPROVE)

    def reject_execution(self, command: TaskResolveCommand) -> list[str]:
        return self._resolve(command, ResolutionOutcome.REJECT)

    def _resolve(self, command: TaskResolveCommand, outcome: ResolutionOutcome) -> list[str]:
        with _market(command.db_path) as market:
            execution = market.tasks.resolve_execution(
                command.execution_id,
                outcome,
                reason=command.reason,
                actor_id=command.author_id,
            )
        return [f"Execution resolved: {_execution_line(execution)}"]

    # -- checks ------------------------------------------------------------

    def create_check(self, command: CheckCreateCommand) -> list[str]:
        expires_at = (
            utc_now() + timedelta(hours=command.lifetime_hours)
            if command.lifetime_hours
            else None
        )
        with _market(command.db_path) as market:
            check = market.checks.create_check(
                command.creator_id,
                CheckCreate(
                    check_type=command.check_type,
                    total_amount=command.total_amount,
                    max_activations=command.activations,
                    password=command.password,
                    target_user_id=command.target_user_id,
                    required_subscription=command.required_subscription,
                    comment=command.comment,
                    expires_at=expires_at,
                ),
            )
        return [
            f"Check created: check_id={check.check_id} code={check.code}",
            _check_line(check),
        ]

    def activate_check(self, command: CheckActivateCommand) -> list[str]:
        with _market(command.db_path) as market:
            activation = market.checks.activate_check(
                command.user_id,
                command.code,
                command.password,
            )
        return [f"Check activated: +{activation.amount} GRAM for {activation.user_id}"]

    def show_check(self, command: CheckShowCommand) -> list[str]:
        with _market(command.db_path) as market:
            check = market.checks.get_check_by_code(command.code)
        return [
            f"check_id={check.check_id} creator={check.creator_id}",
            _check_line(check),
        ]

    def deactivate_check(self, command: CheckDeactivateCommand) -> list[str]:
        with _market(command.db_path) as market:
            check = market.checks.deactivate_check(command.check_id, creator_id=command.creator_id)
        return [f"Check deactivated: {_check_line(check)} refunded={check.refunded_amount}"]

    # -- verification ------------------------------------------------------

    def run_worker(self, command: VerifyWorkerCommand) -> list[str]:
        with _market(command.db_path) as market:
            if command.concurrency > 1:
                return _run_pool(market, concurrency=command.concurrency)
            worker = market.worker()
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} approved={summary.approved} "
            f"rejected={summary.rejected} retried={summary.retried} "
            f"escalated={summary.escalated} skipped={summary.skipped} "
            f"idle_polls={summary.idle_polls}",
        ]

    def list_jobs(self, command: VerifyJobsCommand) -> list[str]:
        status = JobStatus(command.status) if command.status else None
        with _market(command.db_path) as market:
            jobs = market.queue.list_jobs(
                status=status,
                execution_id=command.execution_id,
                limit=command.limit,
            )
        if not jobs:
            return ["No verification jobs."]
        return [
            f"{job.job_id} {job.status.value:<10} attempt={job.attempt} "
            f"check={job.check_type} execution={job.execution_id} "
            f"run_after={job.run_after.isoformat()} outcome={job.outcome or '-'}"
            for job in jobs
        ]

    def inspect_job(self, command: VerifyInspectCommand) -> list[str]:
        with _market(command.db_path) as market:
            details = market.queue.get_job_details(job_id=command.job_id)
        if details is None:
            raise ValueError(f"Verification job not found: {command.job_id}")
        job = details.job
        lines = [
            f"Job {job.job_id}: status={job.status.value} attempt={job.attempt}"
            f"/{job.max_deliveries} worker={job.worker_id or '-'}",
            f"execution={job.execution_id} user={job.user_id} check={job.check_type}",
            f"target={job.target_url} last_error={job.last_error or '-'}",
            "Events:",
        ]
        for event in details.events:
            transition = (
                f"{event.status_from.value if event.status_from else '-'}"
                f"->{event.status_to.value if event.status_to else '-'}"
            )
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} {transition} "
                f"{json.dumps(event.details, ensure_ascii=False, sort_keys=True)}",
            )
        return lines

    # -- maintenance -------------------------------------------------------

    def sweep(self, command: MaintenanceSweepCommand) -> list[str]:
        with _market(command.db_path) as market:
            summary = run_sweep(market)
        return ["Maintenance sweep:", *(f"  {line}" for line in summary.lines())]


def _run_pool(market: Marketplace, *, concurrency: int) -> list[str]:
    pool = market.pool(concurrency)
    pool.start()
    try:
        while pool.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        pool.stop()
    return [f"Verification pool with {concurrency} workers stopped."]


@contextmanager
def _market(db_path: Path | None) -> Iterator[Marketplace]:
    settings = Settings.from_env(db_path=db_path)
    market = Marketplace.build(settings)
    market.init_schema()
    try:
        yield market
    finally:
        market.close()


def _account_line(account: AccountView) -> str:
    return (
        f"{account.account_id} tier={account.tier} "
        f"balance={account.balance} frozen={account.frozen_balance}"
    )


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} [{task.status.value}] {task.task_type} '{task.title}' "
        f"reward={task.reward} done={task.completed_executions}/{task.total_executions} "
        f"remaining={task.remaining_executions} priority={task.priority}"
    )


def _execution_line(execution: ExecutionView) -> str:
    line = (
        f"execution_id={execution.execution_id} task={execution.task_id} "
        f"user={execution.user_id} status={execution.status.value} "
        f"reward={execution.reward_amount} attempts={execution.auto_check_attempts}"
    )
    if execution.rejection_reason:
        line += f" reason={execution.rejection_reason}"
    return line


def _check_line(check: CheckView) -> str:
    state = "active" if check.is_active else "closed"
    return (
        f"[{state}] {check.check_type.value} total={check.total_amount} "
        f"per_activation={check.amount_per_activation} "
        f"activations={check.current_activations}/{check.max_activations} "
        f"expires_at={check.expires_at.isoformat()}"
    )
