"""Task escrow and the execution lifecycle."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskmarket.config import TIER_ORDER, Settings, TaskTypeSettings
from taskmarket.errors import (
    AlreadyExecuted,
    AlreadyProcessed,
    ExecutionNotFound,
    NotEligible,
    QuotaExceeded,
    TaskNotAvailable,
    TaskNotFound,
    ValidationError,
)
from taskmarket.ledger.models import LedgerReason
from taskmarket.ledger.store import LedgerStore
from taskmarket.notifications import NotificationKind, NotificationSink, notify_after_commit
from taskmarket.storage.common import to_db_datetime, to_utc_aware, to_utc_aware_or_none, utc_now
from taskmarket.storage.database import Database, UnitOfWork
from taskmarket.storage.sqlmodel_models import MarketTask, TaskExecution
from taskmarket.tasks.models import (
    OPEN_EXECUTION_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
    Evidence,
    ExecutionStatus,
    ExecutionView,
    ResolutionOutcome,
    ResolvedBy,
    SweepSummary,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from taskmarket.tasks.pricing import compute_cost, reward_for, task_priority
from taskmarket.verification.policy import VerificationPolicy
from taskmarket.verification.repository import VerificationQueue

logger = logging.getLogger(__name__)

TARGET_URL_PATTERN = re.compile(r"^https://t\.me/(.+)$")
OPEN_STATUS_VALUES = tuple(status.value for status in OPEN_EXECUTION_STATUSES)
AUTO_CHECK_EXHAUSTED = "auto-check exhausted"
EXECUTION_EXPIRED = "execution expired"


class TaskEngine:
    """Creates tasks, runs executions and settles their escrow.

    Every balance movement goes through ``LedgerStore.adjust`` inside the same
    unit of work as the task and execution rows it belongs to.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        database: Database,
        ledger: LedgerStore,
        settings: Settings,
        queue: VerificationQueue,
        policy: VerificationPolicy,
        notifier: NotificationSink,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.settings = settings
        self.queue = queue
        self.policy = policy
        self.notifier = notifier

    # -- creation and discovery ------------------------------------------------

    def create_task(
        self,
        author_id: str,
        payload: TaskCreate,
        *,
        now: datetime | None = None,
    ) -> TaskView:
        """Validate, price and escrow a new task."""

        current = now or utc_now()
        type_settings = self._validate_task(payload, now=current)
        auto_check = type_settings.auto_check if payload.auto_check is None else payload.auto_check
        if auto_check and type_settings.check_type is None:
            raise ValidationError(f"Task type {payload.task_type!r} cannot be checked automatically.")
        expires_at = payload.expires_at or current + timedelta(
            seconds=self.settings.tasks.default_lifetime_seconds,
        )

        with self.database.unit_of_work() as unit:
            session = unit.session
            author = self.ledger.load_account(author_id, uow=unit)
            tier = self.settings.tiers[author.tier]
            if tier.daily_task_quota >= 0:
                created_today = _count_tasks_since(
                    session,
                    author_id=author_id,
                    since=current.replace(hour=0, minute=0, second=0, microsecond=0),
                )
                if created_today >= tier.daily_task_quota:
                    raise QuotaExceeded(
                        f"Daily task creation limit reached ({tier.daily_task_quota}).",
                    )

            cost = compute_cost(
                reward=payload.reward,
                total_executions=payload.total_executions,
                commission_rate=tier.commission_rate,
                promotion_fee=self.settings.tasks.promotion_fee,
                promoted=payload.is_top_promoted,
            )
            task_id = str(uuid4())
            self.ledger.adjust(
                author_id,
                -cost.total_cost,
                cost.total_cost,
                reason=LedgerReason.TASK_ESCROW,
                related_task_id=task_id,
                description=f"Task escrow: {payload.title}",
                uow=unit,
            )
            db_now = to_db_datetime(current)
            row = MarketTask(
                task_id=task_id,
                author_id=author_id,
                task_type=payload.task_type,
                check_type=type_settings.check_type,
                title=payload.title.strip(),
                description=payload.description,
                target_url=payload.target_url,
                reward=payload.reward,
                total_executions=payload.total_executions,
                completed_executions=0,
                remaining_executions=payload.total_executions,
                rewards_cost=cost.rewards_cost,
                commission=cost.commission,
                promotion_fee=cost.promotion_fee,
                total_cost=cost.total_cost,
                frozen_amount=cost.total_cost,
                spent_amount=0,
                refunded_amount=0,
                status=TaskStatus.ACTIVE.value,
                auto_check=auto_check,
                is_top_promoted=payload.is_top_promoted,
                priority=task_priority(tier, promoted=payload.is_top_promoted),
                min_account_age_days=payload.min_account_age_days,
                min_tier=payload.min_tier,
                clicks=0,
                expires_at=to_db_datetime(expires_at),
                created_at=db_now,
                updated_at=db_now,
            )
            session.add(row)
            session.flush()
            notify_after_commit(
                unit,
                self.notifier,
                user_id=author_id,
                kind=NotificationKind.TASK_CREATED,
                payload={"task_id": task_id, "title": row.title, "total_cost": cost.total_cost},
            )
            view = _to_task_view(row)

        logger.info(
            "Task created: %s by %s reward=%d executions=%d cost=%d",
            view.task_id,
            author_id,
            view.reward,
            view.total_executions,
            view.total_cost,
        )
        return view

    def get_task(self, task_id: str) -> TaskView:
        with self.database.read_session() as session:
            row = session.get(MarketTask, task_id)
            if row is None:
                raise TaskNotFound(f"Task not found: {task_id}")
            return _to_task_view(row)

    def list_author_tasks(self, author_id: str, *, limit: int = 50) -> list[TaskView]:
        with self.database.read_session() as session:
            rows = session.exec(
                select(MarketTask)
                .where(MarketTask.author_id == author_id)
                .order_by(col(MarketTask.created_at).desc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_available_tasks(
        self,
        user_id: str,
        *,
        limit: int = 20,
        now: datetime | None = None,
    ) -> list[TaskView]:
        """Tasks the user could start right now, highest priority first."""

        current = now or utc_now()
        account = self.ledger.get_account(user_id)
        with self.database.read_session() as session:
            executed = select(TaskExecution.task_id).where(TaskExecution.user_id == user_id)
            rows = session.exec(
                select(MarketTask)
                .where(
                    MarketTask.status == TaskStatus.ACTIVE.value,
                    col(MarketTask.expires_at) > to_db_datetime(current),
                    MarketTask.author_id != user_id,
                    col(MarketTask.task_id).not_in(executed),
                )
                .order_by(col(MarketTask.priority).desc(), col(MarketTask.created_at).asc()),
            ).all()
            open_counts = _open_counts(session, [row.task_id for row in rows])

        available: list[TaskView] = []
        for row in rows:
            if row.remaining_executions <= open_counts.get(row.task_id, 0):
                continue
            problem = _eligibility_problem(
                row,
                tier=account.tier,
                registered_at=account.registered_at,
                now=current,
            )
            if problem is not None:
                continue
            available.append(_to_task_view(row))
            if len(available) >= limit:
                break
        return available

    def pause_task(self, task_id: str, *, author_id: str) -> TaskView:
        return self._author_transition(
            task_id,
            author_id=author_id,
            from_status=TaskStatus.ACTIVE,
            to_status=TaskStatus.PAUSED,
        )

    def resume_task(self, task_id: str, *, author_id: str, now: datetime | None = None) -> TaskView:
        current = now or utc_now()
        task = self.get_task(task_id)
        if task.expires_at <= current:
            raise TaskNotAvailable(f"Task {task_id} has expired and cannot be resumed.")
        return self._author_transition(
            task_id,
            author_id=author_id,
            from_status=TaskStatus.PAUSED,
            to_status=TaskStatus.ACTIVE,
        )

    # -- execution lifecycle ---------------------------------------------------

    def start_execution(
        self,
        task_id: str,
        user_id: str,
        *,
        now: datetime | None = None,
    ) -> ExecutionView:
        """Reserve one slot of an active task for ``user_id``."""

        current = now or utc_now()
        with self.database.unit_of_work() as unit:
            session = unit.session
            task = _task_for_update(session, task_id)
            if task.status != TaskStatus.ACTIVE.value:
                raise TaskNotAvailable(f"Task {task_id} is {task.status}.")
            if to_utc_aware(task.expires_at) <= current:
                raise TaskNotAvailable(f"Task {task_id} has expired.")
            if task.author_id == user_id:
                raise NotEligible("Authors cannot execute their own tasks.")
            if _has_executed(session, task_id=task_id, user_id=user_id):
                raise AlreadyExecuted(f"User {user_id} already executed task {task_id}.")
            if task.remaining_executions <= _open_counts(session, [task_id]).get(task_id, 0):
                raise TaskNotAvailable(f"Task {task_id} has no free slots.")

            account = self.ledger.load_account(user_id, uow=unit)
            problem = _eligibility_problem(
                task,
                tier=account.tier,
                registered_at=account.registered_at,
                now=current,
            )
            if problem is not None:
                raise NotEligible(problem)

            db_now = to_db_datetime(current)
            row = TaskExecution(
                execution_id=str(uuid4()),
                task_id=task_id,
                user_id=user_id,
                status=ExecutionStatus.PENDING.value,
                reward_amount=reward_for(task.reward, executor_tier=account.tier),
                started_at=db_now,
                expires_at=to_db_datetime(
                    current + timedelta(seconds=self.settings.tasks.execution_lifetime_seconds),
                ),
                updated_at=db_now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as exc:
                raise AlreadyExecuted(f"User {user_id} already executed task {task_id}.") from exc
            task.clicks += 1
            task.updated_at = db_now
            session.add(task)
            session.flush()
            view = _to_execution_view(row)

        logger.info("Execution started: %s task=%s user=%s", view.execution_id, task_id, user_id)
        return view

    def submit_execution(
        self,
        execution_id: str,
        evidence: Evidence | None = None,
        *,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> ExecutionView:
        """Attach evidence and route the execution to auto-check or manual review."""

        current = now or utc_now()
        evidence = evidence or Evidence()
        with self.database.unit_of_work() as unit:
            session = unit.session
            row = _execution_for_update(session, execution_id)
            if user_id is not None and row.user_id != user_id:
                raise NotEligible("Only the executor can submit this execution.")
            if row.status != ExecutionStatus.PENDING.value or row.submitted_at is not None:
                raise AlreadyProcessed(f"Execution {execution_id} was already submitted.")
            if to_utc_aware(row.expires_at) <= current:
                raise TaskNotAvailable(f"Execution {execution_id} has expired.")

            task = _task_for_update(session, row.task_id)
            db_now = to_db_datetime(current)
            row.evidence_url = evidence.url
            row.evidence_comment = evidence.comment
            row.submitted_at = db_now
            row.updated_at = db_now

            if task.auto_check and not self.policy.requires_manual_review(task.check_type):
                session.add(row)
                session.flush()
                self.queue.enqueue(
                    execution_id=execution_id,
                    user_id=row.user_id,
                    check_type=task.check_type or "",
                    target_url=task.target_url,
                    uow=unit,
                )
                route = "auto_check"
            else:
                row.status = ExecutionStatus.IN_REVIEW.value
                session.add(row)
                session.flush()
                notify_after_commit(
                    unit,
                    self.notifier,
                    user_id=task.author_id,
                    kind=NotificationKind.TASK_REVIEW_REQUIRED,
                    payload={"task_id": task.task_id, "execution_id": execution_id},
                )
                route = "review"
            view = _to_execution_view(row)

        logger.info("Execution submitted: %s route=%s", execution_id, route)
        return view

    def resolve_execution(  # noqa: PLR0913
        self,
        execution_id: str,
        outcome: ResolutionOutcome | str,
        *,
        reason: str | None = None,
        resolved_by: ResolvedBy | str = ResolvedBy.MODERATOR,
        actor_id: str | None = None,
        uow: UnitOfWork | None = None,
        now: datetime | None = None,
    ) -> ExecutionView:
        """Finalize an execution exactly once.

        Approval credits the executor and settles the same amount out of the
        author's escrow; rejection moves no money. A second call for a
        terminal execution raises ``AlreadyProcessed``. When the last slot is
        used the task completes and its leftover escrow goes back to the author.
        """

        outcome = ResolutionOutcome(outcome)
        resolved_by = ResolvedBy(resolved_by)
        current = now or utc_now()
        with self.database.unit_of_work(uow) as unit:
            session = unit.session
            row = _execution_for_update(session, execution_id)
            previous = ExecutionStatus(row.status)
            if previous in TERMINAL_EXECUTION_STATUSES:
                raise AlreadyProcessed(f"Execution {execution_id} is already {previous.value}.")
            task = _task_for_update(session, row.task_id)
            if actor_id is not None and actor_id != task.author_id:
                raise NotEligible("Only the task author can moderate its executions.")

            if outcome == ResolutionOutcome.APPROVE:
                new_status = (
                    ExecutionStatus.COMPLETED
                    if resolved_by == ResolvedBy.MODERATOR
                    else ExecutionStatus.AUTO_APPROVED
                )
            else:
                new_status = ExecutionStatus.REJECTED

            db_now = to_db_datetime(current)
            result = session.exec(
                sa_update(TaskExecution)
                .where(
                    col(TaskExecution.execution_id) == execution_id,
                    col(TaskExecution.status) == previous.value,
                )
                .values(
                    status=new_status.value,
                    resolved_by=resolved_by.value,
                    resolved_at=db_now,
                    rejection_reason=reason if new_status == ExecutionStatus.REJECTED else None,
                    updated_at=db_now,
                ),
            )
            if result.rowcount != 1:
                raise AlreadyProcessed(f"Execution {execution_id} changed concurrently.")

            if outcome == ResolutionOutcome.APPROVE:
                self._pay_reward(unit, task=task, execution=row, now=current)
            refunded = self._release_closed_escrow(unit, task=task, now=current)

            executor_kind = (
                NotificationKind.EXECUTION_APPROVED
                if outcome == ResolutionOutcome.APPROVE
                else NotificationKind.EXECUTION_REJECTED
            )
            notify_after_commit(
                unit,
                self.notifier,
                user_id=row.user_id,
                kind=executor_kind,
                payload={
                    "task_id": task.task_id,
                    "execution_id": execution_id,
                    "reward": row.reward_amount if outcome == ResolutionOutcome.APPROVE else 0,
                    "reason": reason,
                },
            )
            if task.status == TaskStatus.COMPLETED.value and task.remaining_executions == 0:
                notify_after_commit(
                    unit,
                    self.notifier,
                    user_id=task.author_id,
                    kind=NotificationKind.TASK_COMPLETED,
                    payload={"task_id": task.task_id, "refunded": refunded},
                )
            session.refresh(row)
            view = _to_execution_view(row)

        logger.info(
            "Execution resolved: %s status=%s by=%s",
            execution_id,
            new_status.value,
            resolved_by.value,
        )
        return view

    def escalate_to_review(
        self,
        execution_id: str,
        reason: str,
        *,
        result: dict[str, Any] | None = None,
        uow: UnitOfWork | None = None,
    ) -> ExecutionView:
        """Hand a pending execution to its task author for manual judgment."""

        with self.database.unit_of_work(uow) as unit:
            session = unit.session
            row = _execution_for_update(session, execution_id)
            if row.status != ExecutionStatus.PENDING.value:
                raise AlreadyProcessed(f"Execution {execution_id} is already {row.status}.")
            stored = dict(result or _load_json(row.auto_check_result_json) or {})
            stored["escalation_reason"] = reason
            update = session.exec(
                sa_update(TaskExecution)
                .where(
                    col(TaskExecution.execution_id) == execution_id,
                    col(TaskExecution.status) == ExecutionStatus.PENDING.value,
                )
                .values(
                    status=ExecutionStatus.IN_REVIEW.value,
                    auto_check_result_json=json.dumps(stored, sort_keys=True, default=str),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if update.rowcount != 1:
                raise AlreadyProcessed(f"Execution {execution_id} changed concurrently.")
            task = session.get(MarketTask, row.task_id)
            if task is not None:
                notify_after_commit(
                    unit,
                    self.notifier,
                    user_id=task.author_id,
                    kind=NotificationKind.TASK_REVIEW_REQUIRED,
                    payload={
                        "task_id": task.task_id,
                        "execution_id": execution_id,
                        "reason": reason,
                    },
                )
            session.refresh(row)
            view = _to_execution_view(row)

        logger.info("Execution escalated to review: %s (%s)", execution_id, reason)
        return view

    def record_auto_check_attempt(
        self,
        execution_id: str,
        result: dict[str, Any],
        *,
        uow: UnitOfWork | None = None,
    ) -> int:
        """Count one verification attempt and keep its result; returns attempts so far."""

        with self.database.unit_of_work(uow) as unit:
            row = _execution_for_update(unit.session, execution_id)
            if row.status != ExecutionStatus.PENDING.value:
                raise AlreadyProcessed(f"Execution {execution_id} is already {row.status}.")
            row.auto_check_attempts += 1
            row.auto_check_result_json = json.dumps(result, sort_keys=True, default=str)
            row.updated_at = to_db_datetime(utc_now())
            unit.session.add(row)
            unit.session.flush()
            return row.auto_check_attempts

    def get_execution(self, execution_id: str) -> ExecutionView:
        with self.database.read_session() as session:
            row = session.get(TaskExecution, execution_id)
            if row is None:
                raise ExecutionNotFound(f"Execution not found: {execution_id}")
            return _to_execution_view(row)

    def list_user_executions(self, user_id: str, *, limit: int = 50) -> list[ExecutionView]:
        with self.database.read_session() as session:
            rows = session.exec(
                select(TaskExecution)
                .where(TaskExecution.user_id == user_id)
                .order_by(col(TaskExecution.started_at).desc())
                .limit(limit),
            ).all()
        return [_to_execution_view(row) for row in rows]

    def list_review_queue(self, author_id: str, *, limit: int = 50) -> list[ExecutionView]:
        """Executions waiting for this author's judgment, oldest first."""

        with self.database.read_session() as session:
            rows = session.exec(
                select(TaskExecution)
                .join(MarketTask, col(MarketTask.task_id) == col(TaskExecution.task_id))
                .where(
                    MarketTask.author_id == author_id,
                    TaskExecution.status == ExecutionStatus.IN_REVIEW.value,
                )
                .order_by(col(TaskExecution.submitted_at).asc())
                .limit(limit),
            ).all()
        return [_to_execution_view(row) for row in rows]

    # -- sweeps ----------------------------------------------------------------

    def auto_approve_stale_reviews(
        self,
        *,
        timeout: timedelta | None = None,
        now: datetime | None = None,
    ) -> SweepSummary:
        """Approve executions left in review longer than ``timeout``."""

        current = now or utc_now()
        timeout = timeout or timedelta(seconds=self.settings.tasks.review_timeout_seconds)
        with self.database.read_session() as session:
            execution_ids = session.exec(
                select(TaskExecution.execution_id).where(
                    TaskExecution.status == ExecutionStatus.IN_REVIEW.value,
                    col(TaskExecution.submitted_at) < to_db_datetime(current - timeout),
                ),
            ).all()

        summary = SweepSummary()
        for execution_id in execution_ids:
            try:
                self.resolve_execution(
                    execution_id,
                    ResolutionOutcome.APPROVE,
                    resolved_by=ResolvedBy.REVIEW_TIMEOUT,
                    now=current,
                )
            except AlreadyProcessed:
                summary.skipped += 1
                continue
            summary.processed += 1
            summary.ids.append(execution_id)
        if summary.processed:
            logger.info("Auto-approved %d stale reviews", summary.processed)
        return summary

    def expire_abandoned_executions(self, *, now: datetime | None = None) -> SweepSummary:
        """Reject pending executions that were never submitted before their deadline."""

        current = now or utc_now()
        with self.database.read_session() as session:
            execution_ids = session.exec(
                select(TaskExecution.execution_id).where(
                    TaskExecution.status == ExecutionStatus.PENDING.value,
                    col(TaskExecution.submitted_at).is_(None),
                    col(TaskExecution.expires_at) < to_db_datetime(current),
                ),
            ).all()

        summary = SweepSummary()
        for execution_id in execution_ids:
            try:
                self.resolve_execution(
                    execution_id,
                    ResolutionOutcome.REJECT,
                    reason=EXECUTION_EXPIRED,
                    resolved_by=ResolvedBy.SYSTEM,
                    now=current,
                )
            except AlreadyProcessed:
                summary.skipped += 1
                continue
            summary.processed += 1
            summary.ids.append(execution_id)
        return summary

    def expire_tasks(self, *, now: datetime | None = None) -> SweepSummary:
        """Expire overdue tasks and refund escrow not reserved by open executions."""

        current = now or utc_now()
        with self.database.read_session() as session:
            task_ids = session.exec(
                select(MarketTask.task_id).where(
                    col(MarketTask.status).in_((TaskStatus.ACTIVE.value, TaskStatus.PAUSED.value)),
                    col(MarketTask.expires_at) < to_db_datetime(current),
                ),
            ).all()

        summary = SweepSummary()
        for task_id in task_ids:
            with self.database.unit_of_work() as unit:
                session = unit.session
                task = _task_for_update(session, task_id)
                previous = task.status
                if previous not in (TaskStatus.ACTIVE.value, TaskStatus.PAUSED.value):
                    summary.skipped += 1
                    continue
                result = session.exec(
                    sa_update(MarketTask)
                    .where(
                        col(MarketTask.task_id) == task_id,
                        col(MarketTask.status) == previous,
                    )
                    .values(
                        status=TaskStatus.EXPIRED.value,
                        finished_at=to_db_datetime(current),
                        updated_at=to_db_datetime(current),
                    ),
                )
                if result.rowcount != 1:
                    summary.skipped += 1
                    continue
                session.refresh(task)
                refunded = self._release_closed_escrow(unit, task=task, now=current)
                notify_after_commit(
                    unit,
                    self.notifier,
                    user_id=task.author_id,
                    kind=NotificationKind.TASK_EXPIRED,
                    payload={"task_id": task_id, "refunded": refunded},
                )
            summary.processed += 1
            summary.refunded_amount += refunded
            summary.ids.append(task_id)
            logger.info("Task expired: %s refunded=%d", task_id, refunded)
        return summary

    # -- internals -------------------------------------------------------------

    def _validate_task(self, payload: TaskCreate, *, now: datetime) -> TaskTypeSettings:
        type_settings = self.settings.tasks.types.get(payload.task_type)
        if type_settings is None:
            raise ValidationError(f"Unknown task type: {payload.task_type!r}")
        if not payload.title.strip():
            raise ValidationError("Task title must not be empty.")
        if not type_settings.min_reward <= payload.reward <= type_settings.max_reward:
            raise ValidationError(
                f"Reward must be between {type_settings.min_reward} and "
                f"{type_settings.max_reward} GRAM.",
            )
        bounds = self.settings.tasks
        if not bounds.min_executions <= payload.total_executions <= bounds.max_executions:
            raise ValidationError(
                f"Total executions must be between {bounds.min_executions} and "
                f"{bounds.max_executions}.",
            )
        if TARGET_URL_PATTERN.match(payload.target_url) is None:
            raise ValidationError(f"Invalid target URL for this task type: {payload.target_url}")
        if payload.min_tier not in TIER_ORDER:
            raise ValidationError(f"Unknown tier: {payload.min_tier!r}")
        if payload.min_account_age_days < 0:
            raise ValidationError("Minimum account age must be >= 0.")
        if payload.expires_at is not None and payload.expires_at <= now:
            raise ValidationError("Task expiry must be in the future.")
        return type_settings

    def _author_transition(
        self,
        task_id: str,
        *,
        author_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
    ) -> TaskView:
        with self.database.unit_of_work() as unit:
            session = unit.session
            task = _task_for_update(session, task_id)
            if task.author_id != author_id:
                raise NotEligible("Only the task author can change its status.")
            result = session.exec(
                sa_update(MarketTask)
                .where(
                    col(MarketTask.task_id) == task_id,
                    col(MarketTask.status) == from_status.value,
                )
                .values(status=to_status.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                raise TaskNotAvailable(
                    f"Task {task_id} is {task.status}, expected {from_status.value}.",
                )
            session.refresh(task)
            view = _to_task_view(task)
        logger.info("Task %s: %s -> %s", task_id, from_status.value, to_status.value)
        return view

    def _pay_reward(
        self,
        unit: UnitOfWork,
        *,
        task: MarketTask,
        execution: TaskExecution,
        now: datetime,
    ) -> None:
        reward = execution.reward_amount
        self.ledger.adjust(
            task.author_id,
            0,
            -reward,
            reason=LedgerReason.TASK_PAYOUT,
            related_task_id=task.task_id,
            description=f"Reward paid for execution {execution.execution_id}",
            uow=unit,
        )
        self.ledger.adjust(
            execution.user_id,
            reward,
            reason=LedgerReason.TASK_REWARD,
            related_task_id=task.task_id,
            description=f"Reward for task: {task.title}",
            uow=unit,
        )
        task.completed_executions += 1
        task.remaining_executions -= 1
        task.spent_amount += reward
        task.frozen_amount -= reward
        task.updated_at = to_db_datetime(now)
        if task.remaining_executions == 0:
            task.status = TaskStatus.COMPLETED.value
            task.finished_at = to_db_datetime(now)
        unit.session.add(task)
        unit.session.flush()

    def _release_closed_escrow(
        self,
        unit: UnitOfWork,
        *,
        task: MarketTask,
        now: datetime,
    ) -> int:
        """Refund escrow a completed or expired task no longer needs; returns the refund."""

        if task.status == TaskStatus.COMPLETED.value:
            reserved = 0
        elif task.status == TaskStatus.EXPIRED.value:
            reserved = _reserved_for_open_executions(unit.session, task.task_id)
        else:
            return 0
        refund = task.frozen_amount - reserved
        if refund <= 0:
            return 0
        self.ledger.adjust(
            task.author_id,
            refund,
            -refund,
            reason=LedgerReason.TASK_REFUND,
            related_task_id=task.task_id,
            description=f"Unused escrow returned: {task.title}",
            uow=unit,
        )
        task.frozen_amount -= refund
        task.refunded_amount += refund
        task.updated_at = to_db_datetime(now)
        unit.session.add(task)
        unit.session.flush()
        return refund


def _task_for_update(session: Session, task_id: str) -> MarketTask:
    row = session.exec(
        select(MarketTask).where(MarketTask.task_id == task_id).with_for_update(),
    ).one_or_none()
    if row is None:
        raise TaskNotFound(f"Task not found: {task_id}")
    return row


def _execution_for_update(session: Session, execution_id: str) -> TaskExecution:
    row = session.exec(
        select(TaskExecution).where(TaskExecution.execution_id == execution_id).with_for_update(),
    ).one_or_none()
    if row is None:
        raise ExecutionNotFound(f"Execution not found: {execution_id}")
    return row


def _has_executed(session: Session, *, task_id: str, user_id: str) -> bool:
    existing = session.exec(
        select(TaskExecution.execution_id).where(
            TaskExecution.task_id == task_id,
            TaskExecution.user_id == user_id,
        ),
    ).first()
    return existing is not None


def _count_tasks_since(session: Session, *, author_id: str, since: datetime) -> int:
    return int(
        session.exec(
            select(func.count())
            .select_from(MarketTask)
            .where(
                MarketTask.author_id == author_id,
                col(MarketTask.created_at) >= to_db_datetime(since),
            ),
        ).one(),
    )


def _open_counts(session: Session, task_ids: list[str]) -> dict[str, int]:
    if not task_ids:
        return {}
    rows = session.exec(
        select(TaskExecution.task_id, func.count())
        .where(
            col(TaskExecution.task_id).in_(task_ids),
            col(TaskExecution.status).in_(OPEN_STATUS_VALUES),
        )
        .group_by(col(TaskExecution.task_id)),
    ).all()
    return {task_id: int(count) for task_id, count in rows}


def _reserved_for_open_executions(session: Session, task_id: str) -> int:
    return int(
        session.exec(
            select(func.coalesce(func.sum(TaskExecution.reward_amount), 0)).where(
                TaskExecution.task_id == task_id,
                col(TaskExecution.status).in_(OPEN_STATUS_VALUES),
            ),
        ).one(),
    )


def _eligibility_problem(
    task: MarketTask,
    *,
    tier: str,
    registered_at: datetime,
    now: datetime,
) -> str | None:
    if TIER_ORDER.index(tier) < TIER_ORDER.index(task.min_tier):
        return f"Task requires tier {task.min_tier} or higher."
    age_days = (now - to_utc_aware(registered_at)).days
    if age_days < task.min_account_age_days:
        return f"Task requires an account at least {task.min_account_age_days} days old."
    return None


def _load_json(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else None


def _to_task_view(row: MarketTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        author_id=row.author_id,
        task_type=row.task_type,
        check_type=row.check_type,
        title=row.title,
        description=row.description,
        target_url=row.target_url,
        reward=row.reward,
        total_executions=row.total_executions,
        completed_executions=row.completed_executions,
        remaining_executions=row.remaining_executions,
        rewards_cost=row.rewards_cost,
        commission=row.commission,
        promotion_fee=row.promotion_fee,
        total_cost=row.total_cost,
        frozen_amount=row.frozen_amount,
        spent_amount=row.spent_amount,
        refunded_amount=row.refunded_amount,
        status=TaskStatus(row.status),
        auto_check=row.auto_check,
        is_top_promoted=row.is_top_promoted,
        priority=row.priority,
        min_account_age_days=row.min_account_age_days,
        min_tier=row.min_tier,
        clicks=row.clicks,
        expires_at=to_utc_aware(row.expires_at),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        finished_at=to_utc_aware_or_none(row.finished_at),
    )


def _to_execution_view(row: TaskExecution) -> ExecutionView:
    return ExecutionView(
        execution_id=row.execution_id,
        task_id=row.task_id,
        user_id=row.user_id,
        status=ExecutionStatus(row.status),
        reward_amount=row.reward_amount,
        auto_check_attempts=row.auto_check_attempts,
        auto_check_result=_load_json(row.auto_check_result_json),
        evidence_url=row.evidence_url,
        evidence_comment=row.evidence_comment,
        rejection_reason=row.rejection_reason,
        resolved_by=ResolvedBy(row.resolved_by) if row.resolved_by else None,
        started_at=to_utc_aware(row.started_at),
        expires_at=to_utc_aware(row.expires_at),
        submitted_at=to_utc_aware_or_none(row.submitted_at),
        resolved_at=to_utc_aware_or_none(row.resolved_at),
    )
