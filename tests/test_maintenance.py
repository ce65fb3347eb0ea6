from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import Any

import allure

from taskmarket import maintenance
from taskmarket.checks.models import CheckCreate
from taskmarket.config import Settings
from taskmarket.maintenance import run_sweep
from taskmarket.service import Marketplace
from taskmarket.storage.common import utc_now
from taskmarket.tasks.models import ExecutionStatus, TaskCreate, TaskStatus
from taskmarket.verification.models import JobStatus

pytestmark = [
    allure.epic("Maintenance"),
    allure.feature("Sweeps"),
]


def _task(market: Marketplace, **overrides: Any) -> str:
    values: dict[str, Any] = {
        "task_type": "bot_interaction",
        "title": "Try the bot",
        "target_url": "https://t.me/market_bot",
        "reward": 100,
        "total_executions": 2,
    }
    values.update(overrides)
    return market.tasks.create_task("author", TaskCreate(**values)).task_id


def test_sweep_runs_every_step_once(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("author", 5000)
    funded("bob")
    funded("carol")
    now = utc_now()

    check = market.checks.create_check(
        "author",
        CheckCreate(
            check_type="multi",
            total_amount=300,
            max_activations=3,
            expires_at=now + timedelta(hours=1),
        ),
    )
    expiring_task = _task(market, expires_at=now + timedelta(hours=1))
    review_task = _task(market)
    abandoned = market.tasks.start_execution(review_task, "bob")
    reviewed = market.tasks.start_execution(review_task, "carol")
    market.tasks.submit_execution(reviewed.execution_id)

    auto_task = _task(
        market,
        task_type="join_group",
        target_url="https://t.me/market_chat",
        total_executions=1,
    )
    auto = market.tasks.start_execution(auto_task, "bob")
    market.tasks.submit_execution(auto.execution_id)
    stuck = market.queue.claim_next_ready_job(worker_id="crashed")
    assert stuck is not None

    summary = run_sweep(market, now=now + timedelta(hours=25))

    assert summary.expired_checks == 1
    assert summary.check_refunds == 300
    assert summary.expired_tasks == 1
    assert summary.task_refunds == 214
    assert summary.abandoned_executions == 1
    assert summary.auto_approved == 1
    assert summary.recovered_jobs == [stuck.job_id]
    assert "expired_checks=1 refunded=300" in summary.lines()

    assert not market.checks.get_check(check.check_id).is_active
    assert market.tasks.get_task(expiring_task).status == TaskStatus.EXPIRED
    assert market.tasks.get_execution(abandoned.execution_id).status == ExecutionStatus.REJECTED
    assert market.tasks.get_execution(reviewed.execution_id).status == ExecutionStatus.AUTO_APPROVED
    job = market.queue.get_job(stuck.job_id)
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert market.ledger.supply_snapshot().conserved

    again = run_sweep(market, now=now + timedelta(hours=25))
    assert again.lines() == [
        "expired_checks=0 refunded=0",
        "expired_tasks=0 refunded=0",
        "abandoned_executions=0",
        "auto_approved_reviews=0",
        "recovered_jobs=0",
    ]


def test_prefect_task_bodies_run_against_db_path(
    market: Marketplace,
    settings: Settings,
    funded: Callable[..., object],
) -> None:
    funded("author", 1000)
    _task(market)
    db_path = str(settings.db_path)

    assert maintenance.expire_tasks.fn(db_path) == (0, 0)
    assert maintenance.expire_checks.fn(db_path) == (0, 0)
    assert maintenance.expire_abandoned_executions.fn(db_path) == 0
    assert maintenance.auto_approve_stale_reviews.fn(db_path) == 0
    assert maintenance.recover_stale_jobs.fn(db_path) == []
