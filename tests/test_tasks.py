from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from typing import Any

import allure
import pytest

from taskmarket.errors import (
    AlreadyExecuted,
    AlreadyProcessed,
    InsufficientBalance,
    NotEligible,
    QuotaExceeded,
    TaskNotAvailable,
    ValidationError,
)
from taskmarket.notifications import NotificationKind, RecordingNotificationSink
from taskmarket.service import Marketplace
from taskmarket.storage.common import utc_now
from taskmarket.tasks.models import (
    Evidence,
    ExecutionStatus,
    ResolutionOutcome,
    ResolvedBy,
    TaskCreate,
    TaskStatus,
)
from taskmarket.tasks.pricing import compute_cost
from taskmarket.verification.models import JobStatus

pytestmark = [
    allure.epic("Tasks"),
    allure.feature("Escrow & Executions"),
]


def _payload(**overrides: Any) -> TaskCreate:
    values: dict[str, Any] = {
        "task_type": "bot_interaction",
        "title": "Try the bot",
        "target_url": "https://t.me/market_bot",
        "reward": 100,
        "total_executions": 2,
    }
    values.update(overrides)
    return TaskCreate(**values)


def _approve(market: Marketplace, execution_id: str) -> None:
    market.tasks.resolve_execution(execution_id, ResolutionOutcome.APPROVE, actor_id="author")


def test_compute_cost_rounds_commission_up() -> None:
    cost = compute_cost(
        reward=100,
        total_executions=2,
        commission_rate=0.07,
        promotion_fee=50,
        promoted=False,
    )
    assert (cost.rewards_cost, cost.commission, cost.promotion_fee, cost.total_cost) == (
        200,
        14,
        0,
        214,
    )

    odd = compute_cost(
        reward=33,
        total_executions=1,
        commission_rate=0.07,
        promotion_fee=50,
        promoted=True,
    )
    assert odd.commission == 3
    assert odd.total_cost == 33 + 3 + 50


def test_two_executors_complete_task_and_author_gets_leftover(
    market: Marketplace,
    funded: Callable[..., object],
    notifier: RecordingNotificationSink,
) -> None:
    funded("author", 1000)
    funded("bob")
    funded("carol")

    task = market.tasks.create_task("author", _payload())
    assert task.total_cost == 214
    assert task.frozen_amount == 214
    author = market.ledger.get_account("author")
    assert (author.balance, author.frozen_balance) == (786, 214)

    for user_id in ("bob", "carol"):
        execution = market.tasks.start_execution(task.task_id, user_id)
        submitted = market.tasks.submit_execution(
            execution.execution_id,
            Evidence(comment="done"),
            user_id=user_id,
        )
        assert submitted.status == ExecutionStatus.IN_REVIEW
        _approve(market, execution.execution_id)

    finished = market.tasks.get_task(task.task_id)
    assert finished.status == TaskStatus.COMPLETED
    assert finished.spent_amount == 200
    assert finished.remaining_executions == 0
    assert finished.completed_executions == 2
    assert finished.refunded_amount == 14
    assert finished.frozen_amount == 0
    assert finished.finished_at is not None

    author = market.ledger.get_account("author")
    assert (author.balance, author.frozen_balance) == (800, 0)
    assert market.ledger.get_account("bob").balance == 100
    assert market.ledger.get_account("bob").total_earned == 100
    assert market.ledger.get_account("carol").balance == 100
    assert market.ledger.reconcile("author").ok
    assert market.ledger.supply_snapshot().conserved

    author_kinds = notifier.kinds_for("author")
    assert author_kinds[0] == NotificationKind.TASK_CREATED.value
    assert author_kinds.count(NotificationKind.TASK_REVIEW_REQUIRED.value) == 2
    assert author_kinds[-1] == NotificationKind.TASK_COMPLETED.value
    assert notifier.kinds_for("bob") == [NotificationKind.EXECUTION_APPROVED.value]


def test_resolve_execution_twice_pays_once(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 1000)
    funded("bob")
    task = market.tasks.create_task("author", _payload())
    execution = market.tasks.start_execution(task.task_id, "bob")
    market.tasks.submit_execution(execution.execution_id)

    resolved = market.tasks.resolve_execution(execution.execution_id, "approve")
    assert resolved.status == ExecutionStatus.COMPLETED
    assert resolved.resolved_by == ResolvedBy.MODERATOR

    with pytest.raises(AlreadyProcessed, match="already completed"):
        market.tasks.resolve_execution(execution.execution_id, "approve")
    with pytest.raises(AlreadyProcessed):
        market.tasks.resolve_execution(execution.execution_id, "reject", reason="late")

    assert market.ledger.get_account("bob").balance == 100
    assert market.tasks.get_task(task.task_id).spent_amount == 100


def test_concurrent_resolve_has_exactly_one_winner(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 1000)
    funded("bob")
    task = market.tasks.create_task("author", _payload())
    execution = market.tasks.start_execution(task.task_id, "bob")
    market.tasks.submit_execution(execution.execution_id)
    barrier = threading.Barrier(4)

    def _resolve(outcome: str) -> str:
        barrier.wait()
        try:
            market.tasks.resolve_execution(execution.execution_id, outcome, reason="race")
        except AlreadyProcessed:
            return "lost"
        return "won"

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(_resolve, ["approve", "approve", "reject", "approve"]))

    assert results.count("won") == 1
    assert results.count("lost") == 3
    final = market.tasks.get_execution(execution.execution_id)
    bob = market.ledger.get_account("bob")
    if final.status == ExecutionStatus.COMPLETED:
        assert bob.balance == 100
    else:
        assert final.status == ExecutionStatus.REJECTED
        assert bob.balance == 0
    assert market.ledger.supply_snapshot().conserved


def test_only_the_author_moderates(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 1000)
    funded("bob")
    task = market.tasks.create_task("author", _payload())
    execution = market.tasks.start_execution(task.task_id, "bob")
    market.tasks.submit_execution(execution.execution_id)

    with pytest.raises(NotEligible, match="Only the task author"):
        market.tasks.resolve_execution(execution.execution_id, "approve", actor_id="bob")

    assert market.tasks.get_execution(execution.execution_id).status == ExecutionStatus.IN_REVIEW


def test_rejection_moves_no_money_and_frees_the_slot(
    market: Marketplace,
    funded: Callable[..., object],
    notifier: RecordingNotificationSink,
) -> None:
    funded("author", 1000)
    funded("bob")
    funded("carol")
    task = market.tasks.create_task("author", _payload(total_executions=1))
    execution = market.tasks.start_execution(task.task_id, "bob")
    market.tasks.submit_execution(execution.execution_id)

    rejected = market.tasks.resolve_execution(
        execution.execution_id,
        ResolutionOutcome.REJECT,
        reason="no screenshot",
    )

    assert rejected.status == ExecutionStatus.REJECTED
    assert rejected.rejection_reason == "no screenshot"
    assert market.ledger.get_account("bob").balance == 0
    assert market.tasks.get_task(task.task_id).frozen_amount == task.total_cost
    assert notifier.kinds_for("bob") == [NotificationKind.EXECUTION_REJECTED.value]
    with pytest.raises(AlreadyExecuted):
        market.tasks.start_execution(task.task_id, "bob")
    market.tasks.start_execution(task.task_id, "carol")


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"task_type": "poll_vote"}, "Unknown task type"),
        ({"title": "   "}, "title must not be empty"),
        ({"reward": 99}, "Reward must be between 100 and 1500"),
        ({"total_executions": 0}, "Total executions must be between"),
        ({"target_url": "https://example.com/bot"}, "Invalid target URL"),
        ({"min_tier": "diamond"}, "Unknown tier"),
        ({"auto_check": True}, "cannot be checked automatically"),
        ({"expires_at": datetime(2000, 1, 1, tzinfo=UTC)}, "expiry must be in the future"),
    ],
)
def test_create_task_validation(
    market: Marketplace,
    funded: Callable[..., object],
    overrides: dict[str, Any],
    message: str,
) -> None:
    funded("author", 1000)

    with pytest.raises(ValidationError, match=message):
        market.tasks.create_task("author", _payload(**overrides))

    assert market.ledger.get_account("author").balance == 1000


def test_create_task_without_funds_leaves_nothing_behind(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 150)

    with pytest.raises(InsufficientBalance):
        market.tasks.create_task("author", _payload())

    assert market.tasks.list_author_tasks("author") == []
    assert market.ledger.get_account("author").balance == 150
    assert len(market.ledger.list_entries("author")) == 1


def test_daily_quota_resets_at_utc_midnight(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 5000)
    day_one = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)

    for index in range(5):
        market.tasks.create_task(
            "author",
            _payload(title=f"Task {index}", total_executions=1),
            now=day_one + timedelta(minutes=index),
        )
    with pytest.raises(QuotaExceeded, match="Daily task creation limit reached"):
        market.tasks.create_task(
            "author",
            _payload(total_executions=1),
            now=day_one + timedelta(hours=1),
        )

    market.tasks.create_task(
        "author",
        _payload(total_executions=1),
        now=day_one + timedelta(days=1),
    )
    assert len(market.tasks.list_author_tasks("author")) == 6


def test_start_execution_guards(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 2000)
    funded("bob")
    funded("carol")
    task = market.tasks.create_task("author", _payload(total_executions=1))

    with pytest.raises(NotEligible, match="Authors cannot execute"):
        market.tasks.start_execution(task.task_id, "author")

    execution = market.tasks.start_execution(task.task_id, "bob")
    assert execution.status == ExecutionStatus.PENDING
    assert execution.reward_amount == 100
    assert market.tasks.get_task(task.task_id).clicks == 1

    with pytest.raises(AlreadyExecuted):
        market.tasks.start_execution(task.task_id, "bob")
    with pytest.raises(TaskNotAvailable, match="no free slots"):
        market.tasks.start_execution(task.task_id, "carol")


def test_start_execution_checks_tier_and_account_age(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 2000)
    funded("newbie")
    funded("veteran", registered_at=utc_now() - timedelta(days=40), tier="gold")
    gated = market.tasks.create_task(
        "author",
        _payload(min_tier="silver", min_account_age_days=30),
    )

    with pytest.raises(NotEligible, match="requires tier silver"):
        market.tasks.start_execution(gated.task_id, "newbie")
    market.ledger.set_tier("newbie", "silver")
    with pytest.raises(NotEligible, match="at least 30 days old"):
        market.tasks.start_execution(gated.task_id, "newbie")

    market.tasks.start_execution(gated.task_id, "veteran")


def test_pause_and_resume(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 1000)
    funded("bob")
    task = market.tasks.create_task("author", _payload())

    with pytest.raises(NotEligible):
        market.tasks.pause_task(task.task_id, author_id="bob")
    paused = market.tasks.pause_task(task.task_id, author_id="author")
    assert paused.status == TaskStatus.PAUSED
    with pytest.raises(TaskNotAvailable, match="is paused"):
        market.tasks.start_execution(task.task_id, "bob")
    with pytest.raises(TaskNotAvailable, match="expected active"):
        market.tasks.pause_task(task.task_id, author_id="author")
    assert market.tasks.list_available_tasks("bob") == []

    resumed = market.tasks.resume_task(task.task_id, author_id="author")
    assert resumed.status == TaskStatus.ACTIVE
    market.tasks.start_execution(task.task_id, "bob")


def test_available_tasks_are_ranked_and_filtered(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 5000)
    funded("bob", 1000)
    plain = market.tasks.create_task("author", _payload(title="Plain"))
    promoted = market.tasks.create_task("author", _payload(title="Promoted", is_top_promoted=True))
    market.tasks.create_task("author", _payload(title="Gold only", min_tier="gold"))
    market.tasks.create_task("bob", _payload(title="Own task"))
    taken = market.tasks.create_task("author", _payload(title="Taken"))
    market.tasks.start_execution(taken.task_id, "bob")

    available = market.tasks.list_available_tasks("bob")

    assert [item.task_id for item in available] == [promoted.task_id, plain.task_id]
    assert promoted.promotion_fee == 50
    assert promoted.priority > plain.priority


def test_submit_routes_auto_check_task_to_queue(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 1000)
    funded("bob")
    task = market.tasks.create_task(
        "author",
        _payload(task_type="subscribe_channel", target_url="https://t.me/market_news", reward=50),
    )
    assert task.auto_check
    assert task.check_type == "subscription"
    execution = market.tasks.start_execution(task.task_id, "bob")

    with pytest.raises(NotEligible, match="Only the executor"):
        market.tasks.submit_execution(execution.execution_id, user_id="carol")
    submitted = market.tasks.submit_execution(execution.execution_id, user_id="bob")

    assert submitted.status == ExecutionStatus.PENDING
    assert submitted.submitted_at is not None
    jobs = market.queue.list_jobs(execution_id=execution.execution_id)
    assert [job.status for job in jobs] == [JobStatus.QUEUED]
    assert jobs[0].check_type == "subscription"
    with pytest.raises(AlreadyProcessed, match="already submitted"):
        market.tasks.submit_execution(execution.execution_id)


def test_expired_task_keeps_escrow_for_open_executions(
    market: Marketplace,
    funded: Callable[..., object],
    notifier: RecordingNotificationSink,
) -> None:
    funded("author", 1000)
    funded("bob")
    task = market.tasks.create_task(
        "author",
        _payload(expires_at=utc_now() + timedelta(hours=1)),
    )
    execution = market.tasks.start_execution(task.task_id, "bob")
    market.tasks.submit_execution(execution.execution_id)

    later = utc_now() + timedelta(hours=2)
    summary = market.tasks.expire_tasks(now=later)

    assert summary.processed == 1
    assert summary.refunded_amount == 114
    expired = market.tasks.get_task(task.task_id)
    assert expired.status == TaskStatus.EXPIRED
    assert expired.frozen_amount == 100
    assert market.tasks.expire_tasks(now=later).processed == 0
    assert NotificationKind.TASK_EXPIRED.value in notifier.kinds_for("author")

    _approve(market, execution.execution_id)

    settled = market.tasks.get_task(task.task_id)
    assert settled.status == TaskStatus.EXPIRED
    assert settled.frozen_amount == 0
    assert settled.spent_amount == 100
    author = market.ledger.get_account("author")
    assert (author.balance, author.frozen_balance) == (900, 0)
    assert market.ledger.supply_snapshot().conserved


def test_expired_task_refunds_reward_of_rejected_open_execution(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 1000)
    funded("bob")
    task = market.tasks.create_task(
        "author",
        _payload(expires_at=utc_now() + timedelta(hours=1)),
    )
    execution = market.tasks.start_execution(task.task_id, "bob")
    market.tasks.expire_tasks(now=utc_now() + timedelta(hours=2))

    market.tasks.resolve_execution(execution.execution_id, "reject", reason="late")

    refunded = market.tasks.get_task(task.task_id)
    assert refunded.frozen_amount == 0
    assert refunded.refunded_amount == 214
    assert market.ledger.get_account("author").balance == 1000


def test_abandoned_executions_are_rejected(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 1000)
    funded("bob")
    task = market.tasks.create_task("author", _payload())
    execution = market.tasks.start_execution(task.task_id, "bob")

    summary = market.tasks.expire_abandoned_executions(now=utc_now() + timedelta(hours=25))

    assert summary.ids == [execution.execution_id]
    expired = market.tasks.get_execution(execution.execution_id)
    assert expired.status == ExecutionStatus.REJECTED
    assert expired.rejection_reason == "execution expired"
    assert expired.resolved_by == ResolvedBy.SYSTEM


def test_stale_reviews_are_auto_approved(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 1000)
    funded("bob")
    task = market.tasks.create_task("author", _payload())
    execution = market.tasks.start_execution(task.task_id, "bob")
    market.tasks.submit_execution(execution.execution_id)
    assert [item.execution_id for item in market.tasks.list_review_queue("author")] == [
        execution.execution_id,
    ]

    assert market.tasks.auto_approve_stale_reviews().processed == 0
    summary = market.tasks.auto_approve_stale_reviews(now=utc_now() + timedelta(hours=25))

    assert summary.processed == 1
    approved = market.tasks.get_execution(execution.execution_id)
    assert approved.status == ExecutionStatus.AUTO_APPROVED
    assert approved.resolved_by == ResolvedBy.REVIEW_TIMEOUT
    assert market.ledger.get_account("bob").balance == 100
    assert market.tasks.list_review_queue("author") == []
    assert [item.status for item in market.tasks.list_user_executions("bob")] == [
        ExecutionStatus.AUTO_APPROVED,
    ]
    assert market.ledger.get_balance("bob").balance == 100
