"""Periodic maintenance sweeps, runnable directly or as a Prefect flow.

The sweeps are idempotent: running two overlapping sweeps, or re-running one
that crashed half way, never refunds or approves anything twice.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from prefect import flow, task

from taskmarket.config import Settings
from taskmarket.service import Marketplace

logger = logging.getLogger(__name__)

_STEP_RETRIES = 2
_STEP_RETRY_DELAY = 30


@dataclass(slots=True)
class MaintenanceSummary:
    """Counters of one maintenance sweep."""

    expired_checks: int = 0
    check_refunds: int = 0
    expired_tasks: int = 0
    task_refunds: int = 0
    abandoned_executions: int = 0
    auto_approved: int = 0
    recovered_jobs: list[str] = field(default_factory=list)

    def lines(self) -> list[str]:
        return [
            f"expired_checks={self.expired_checks} refunded={self.check_refunds}",
            f"expired_tasks={self.expired_tasks} refunded={self.task_refunds}",
            f"abandoned_executions={self.abandoned_executions}",
            f"auto_approved_reviews={self.auto_approved}",
            f"recovered_jobs={len(self.recovered_jobs)}",
        ]


def run_sweep(market: Marketplace, *, now: datetime | None = None) -> MaintenanceSummary:
    """Run every sweep once against ``market``."""

    summary = MaintenanceSummary()
    checks = market.checks.expire_checks(now=now)
    summary.expired_checks = checks.processed
    summary.check_refunds = checks.refunded_amount

    tasks = market.tasks.expire_tasks(now=now)
    summary.expired_tasks = tasks.processed
    summary.task_refunds = tasks.refunded_amount

    summary.abandoned_executions = market.tasks.expire_abandoned_executions(now=now).processed
    summary.auto_approved = market.tasks.auto_approve_stale_reviews(now=now).processed
    summary.recovered_jobs = market.queue.recover_stale_running_jobs(
        stale_after=timedelta(seconds=market.settings.verification.stale_job_seconds),
        now=now,
    )
    logger.info("Maintenance sweep finished: %s", "; ".join(summary.lines()))
    return summary


@contextmanager
def _market(db_path: str | None) -> Iterator[Marketplace]:
    settings = Settings.from_env(db_path=Path(db_path) if db_path else None)
    market = Marketplace.build(settings)
    try:
        yield market
    finally:
        market.close()


@task(retries=_STEP_RETRIES, retry_delay_seconds=_STEP_RETRY_DELAY)
def expire_checks(db_path: str | None = None) -> tuple[int, int]:
    with _market(db_path) as market:
        result = market.checks.expire_checks()
    return result.processed, result.refunded_amount


@task(retries=_STEP_RETRIES, retry_delay_seconds=_STEP_RETRY_DELAY)
def expire_tasks(db_path: str | None = None) -> tuple[int, int]:
    with _market(db_path) as market:
        result = market.tasks.expire_tasks()
    return result.processed, result.refunded_amount


@task(retries=_STEP_RETRIES, retry_delay_seconds=_STEP_RETRY_DELAY)
def expire_abandoned_executions(db_path: str | None = None) -> int:
    with _market(db_path) as market:
        return market.tasks.expire_abandoned_executions().processed


@task(retries=_STEP_RETRIES, retry_delay_seconds=_STEP_RETRY_DELAY)
def auto_approve_stale_reviews(db_path: str | None = None) -> int:
    with _market(db_path) as market:
        return market.tasks.auto_approve_stale_reviews().processed


@task(retries=_STEP_RETRIES, retry_delay_seconds=_STEP_RETRY_DELAY)
def recover_stale_jobs(db_path: str | None = None) -> list[str]:
    with _market(db_path) as market:
        return market.queue.recover_stale_running_jobs(
            stale_after=timedelta(seconds=market.settings.verification.stale_job_seconds),
        )


@flow(name="maintenance_sweep")
def maintenance_sweep(db_path: str | None = None) -> MaintenanceSummary:
    """Expire checks and tasks, settle stale executions, recover stalled jobs.

    Each sweep is a Prefect task with retries; scheduling is left to the
    deployment.
    """

    with _market(db_path) as market:
        market.init_schema()

    summary = MaintenanceSummary()
    summary.expired_checks, summary.check_refunds = expire_checks(db_path)
    summary.expired_tasks, summary.task_refunds = expire_tasks(db_path)
    summary.abandoned_executions = expire_abandoned_executions(db_path)
    summary.auto_approved = auto_approve_stale_reviews(db_path)
    summary.recovered_jobs = recover_stale_jobs(db_path)
    logger.info("Maintenance flow finished: %s", "; ".join(summary.lines()))
    return summary
