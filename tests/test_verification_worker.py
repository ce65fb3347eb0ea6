from __future__ import annotations

import time
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import allure
import pytest

from taskmarket.config import CheckTypePolicy
from taskmarket.errors import ExternalVerifierError
from taskmarket.notifications import NotificationKind, RecordingNotificationSink
from taskmarket.service import Marketplace
from taskmarket.storage.common import utc_now
from taskmarket.tasks.engine import AUTO_CHECK_EXHAUSTED
from taskmarket.tasks.models import (
    ExecutionStatus,
    ExecutionView,
    ResolutionOutcome,
    ResolvedBy,
    TaskCreate,
)
from taskmarket.verification.models import (
    JobStatus,
    VerificationJobView,
    VerifierOutcome,
    VerifierResult,
)

if TYPE_CHECKING:
    from conftest import FakeVerifier

pytestmark = [
    allure.epic("Verification"),
    allure.feature("Worker"),
]

TARGETS = {
    "subscribe_channel": ("https://t.me/market_news", 50),
    "join_group": ("https://t.me/market_chat", 100),
    "react_post": ("https://t.me/market_news/42", 30),
    "view_post": ("https://t.me/market_news/42", 25),
}


def _submitted(
    market: Marketplace,
    funded: Callable[..., object],
    task_type: str,
    *,
    executors: tuple[str, ...] = ("bob",),
) -> list[ExecutionView]:
    funded("author", 2000)
    target_url, reward = TARGETS[task_type]
    task = market.tasks.create_task(
        "author",
        TaskCreate(
            task_type=task_type,
            title=f"{task_type} task",
            target_url=target_url,
            reward=reward,
            total_executions=len(executors),
        ),
    )
    executions = []
    for user_id in executors:
        funded(user_id)
        execution = market.tasks.start_execution(task.task_id, user_id)
        executions.append(market.tasks.submit_execution(execution.execution_id))
    return executions


def _only_job(market: Marketplace, execution_id: str) -> VerificationJobView:
    jobs = market.queue.list_jobs(execution_id=execution_id)
    assert len(jobs) == 1
    return jobs[0]


def test_passed_check_auto_approves_and_pays(
    market: Marketplace,
    funded: Callable[..., object],
    verifier: FakeVerifier,
) -> None:
    (execution,) = _submitted(market, funded, "subscribe_channel")

    summary = market.worker("w-test").run_loop()

    assert (summary.processed, summary.approved) == (1, 1)
    approved = market.tasks.get_execution(execution.execution_id)
    assert approved.status == ExecutionStatus.AUTO_APPROVED
    assert approved.resolved_by == ResolvedBy.VERIFIER
    assert approved.auto_check_attempts == 1
    assert approved.auto_check_result is not None
    assert approved.auto_check_result["outcome"] == "passed"
    assert market.ledger.get_account("bob").balance == 50
    job = _only_job(market, execution.execution_id)
    assert job.status == JobStatus.SUCCEEDED
    assert job.outcome == "approved"
    assert verifier.calls == [("membership", "bob", "https://t.me/market_news")]


def test_three_failed_subscription_checks_reject_without_payment(
    market: Marketplace,
    funded: Callable[..., object],
    verifier: FakeVerifier,
) -> None:
    (execution,) = _submitted(market, funded, "subscribe_channel")
    verifier.script = [VerifierOutcome.NOT_SATISFIED] * 3

    summary = market.worker("w-test").run_loop()

    assert (summary.processed, summary.retried, summary.rejected) == (3, 2, 1)
    rejected = market.tasks.get_execution(execution.execution_id)
    assert rejected.status == ExecutionStatus.REJECTED
    assert rejected.rejection_reason == AUTO_CHECK_EXHAUSTED
    assert rejected.auto_check_attempts == 3
    assert market.ledger.get_account("bob").balance == 0
    assert market.tasks.get_task(rejected.task_id).spent_amount == 0
    job = _only_job(market, execution.execution_id)
    assert job.status == JobStatus.FAILED_FINAL
    assert job.outcome == "rejected"
    assert job.attempt == 3
    assert len(verifier.calls) == 3


def test_failed_check_that_passes_on_retry_is_approved(
    market: Marketplace,
    funded: Callable[..., object],
    verifier: FakeVerifier,
) -> None:
    (execution,) = _submitted(market, funded, "join_group")
    verifier.script = [VerifierOutcome.NOT_SATISFIED]

    summary = market.worker("w-test").run_loop()

    assert (summary.retried, summary.approved) == (1, 1)
    assert market.tasks.get_execution(execution.execution_id).auto_check_attempts == 2
    assert market.ledger.get_account("bob").balance == 100


def test_exhausted_reaction_check_goes_to_author_review(
    market: Marketplace,
    funded: Callable[..., object],
    verifier: FakeVerifier,
    notifier: RecordingNotificationSink,
) -> None:
    (execution,) = _submitted(market, funded, "react_post")
    verifier.script = [VerifierOutcome.NOT_SATISFIED] * 3

    summary = market.worker("w-test").run_loop()

    assert summary.escalated == 1
    review = market.tasks.get_execution(execution.execution_id)
    assert review.status == ExecutionStatus.IN_REVIEW
    assert review.auto_check_result is not None
    assert review.auto_check_result["escalation_reason"] == AUTO_CHECK_EXHAUSTED
    assert NotificationKind.TASK_REVIEW_REQUIRED.value in notifier.kinds_for("author")
    assert _only_job(market, execution.execution_id).outcome == "escalated"
    assert verifier.calls[0][0] == "reaction"

    market.tasks.resolve_execution(execution.execution_id, ResolutionOutcome.APPROVE)
    assert market.ledger.get_account("bob").balance == 30


def test_verifier_outage_escalates_and_never_rejects(
    market: Marketplace,
    funded: Callable[..., object],
    verifier: FakeVerifier,
) -> None:
    (execution,) = _submitted(market, funded, "subscribe_channel")
    verifier.script = [ExternalVerifierError("Timeout calling getChatMember")] * 3

    summary = market.worker("w-test").run_loop()

    assert (summary.retried, summary.escalated, summary.rejected) == (2, 1, 0)
    review = market.tasks.get_execution(execution.execution_id)
    assert review.status == ExecutionStatus.IN_REVIEW
    details = market.queue.get_job_details(job_id=_only_job(market, execution.execution_id).job_id)
    assert details is not None
    retries = [event for event in details.events if event.event_type == "failed_retryable"]
    assert [event.details["error"] for event in retries] == ["Timeout calling getChatMember"] * 2


def test_crashing_verifier_counts_attempts_and_escalates(
    market: Marketplace,
    funded: Callable[..., object],
    verifier: FakeVerifier,
) -> None:
    (execution,) = _submitted(market, funded, "subscribe_channel")
    verifier.script = [RuntimeError("malformed getChatMember result")] * 3

    summary = market.worker("w-test").run_loop()

    assert (summary.retried, summary.escalated, summary.rejected) == (2, 1, 0)
    review = market.tasks.get_execution(execution.execution_id)
    assert review.status == ExecutionStatus.IN_REVIEW
    assert review.auto_check_attempts == 3
    job = _only_job(market, execution.execution_id)
    assert (job.status, job.outcome, job.attempt) == (JobStatus.FAILED_FINAL, "escalated", 3)
    assert market.ledger.get_account("bob").balance == 0


def test_worker_that_lost_its_job_leaves_no_effects(
    market: Marketplace,
    funded: Callable[..., object],
    verifier: FakeVerifier,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    (execution,) = _submitted(market, funded, "subscribe_channel")

    def _slow_check(*_: Any) -> VerifierResult:
        # Another worker recovers the job as stale and reclaims it mid-check.
        later = utc_now() + timedelta(seconds=1)
        market.queue.recover_stale_running_jobs(stale_after=timedelta(0), now=later)
        market.queue.claim_next_ready_job(worker_id="w2", now=later)
        return VerifierResult(VerifierOutcome.PASSED, {"fake": True})

    monkeypatch.setattr(verifier, "check_membership", _slow_check)

    summary = market.worker("w-slow").run_once()

    assert (summary.processed, summary.skipped, summary.approved) == (1, 1, 0)
    pending = market.tasks.get_execution(execution.execution_id)
    assert pending.status == ExecutionStatus.PENDING
    assert pending.auto_check_attempts == 0
    assert market.ledger.get_account("bob").balance == 0
    job = _only_job(market, execution.execution_id)
    assert (job.status, job.worker_id) == (JobStatus.RUNNING, "w2")


def test_optimistic_view_check_skips_the_verifier(
    market: Marketplace,
    funded: Callable[..., object],
    verifier: FakeVerifier,
) -> None:
    (execution,) = _submitted(market, funded, "view_post")

    summary = market.worker("w-test").run_loop()

    assert summary.approved == 1
    assert verifier.calls == []
    assert market.tasks.get_execution(execution.execution_id).status == ExecutionStatus.AUTO_APPROVED


def test_manual_policy_routes_submission_to_review(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    market.policy.policies["membership"] = CheckTypePolicy("manual", "review")

    (execution,) = _submitted(market, funded, "join_group")

    assert execution.status == ExecutionStatus.IN_REVIEW
    assert market.queue.list_jobs(execution_id=execution.execution_id) == []


def test_manual_policy_applied_to_already_queued_job(
    market: Marketplace,
    funded: Callable[..., object],
    verifier: FakeVerifier,
) -> None:
    (execution,) = _submitted(market, funded, "join_group")
    market.policy.policies["membership"] = CheckTypePolicy("manual", "review")

    summary = market.worker("w-test").run_loop()

    assert summary.escalated == 1
    assert verifier.calls == []
    review = market.tasks.get_execution(execution.execution_id)
    assert review.status == ExecutionStatus.IN_REVIEW
    assert review.auto_check_result == {"escalation_reason": "manual review policy"}


def test_job_for_resolved_execution_is_skipped(
    market: Marketplace,
    funded: Callable[..., object],
    verifier: FakeVerifier,
) -> None:
    (execution,) = _submitted(market, funded, "subscribe_channel")
    market.tasks.resolve_execution(execution.execution_id, "reject", reason="spam")

    summary = market.worker("w-test").run_loop()

    assert summary.skipped == 1
    assert verifier.calls == []
    job = _only_job(market, execution.execution_id)
    assert (job.status, job.outcome) == (JobStatus.SUCCEEDED, "skipped")


def test_resolution_failure_is_redelivered(
    market: Marketplace,
    funded: Callable[..., object],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    (execution,) = _submitted(market, funded, "subscribe_channel")
    original = market.tasks.resolve_execution
    failures = [RuntimeError("database hiccup")]

    def _flaky(*args: Any, **kwargs: Any) -> ExecutionView:
        if failures:
            raise failures.pop()
        return original(*args, **kwargs)

    monkeypatch.setattr(market.tasks, "resolve_execution", _flaky)

    summary = market.worker("w-test").run_loop()

    assert (summary.retried, summary.approved) == (1, 1)
    approved = market.tasks.get_execution(execution.execution_id)
    assert approved.status == ExecutionStatus.AUTO_APPROVED
    assert approved.auto_check_attempts == 1
    assert market.ledger.get_account("bob").balance == 50
    details = market.queue.get_job_details(job_id=_only_job(market, execution.execution_id).job_id)
    assert details is not None
    assert "redelivery" in [event.event_type for event in details.events]


def test_exhausted_deliveries_escalate(
    market: Marketplace,
    funded: Callable[..., object],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    market.queue.max_deliveries = 1
    (execution,) = _submitted(market, funded, "subscribe_channel")

    def _broken(*_: Any, **__: Any) -> ExecutionView:
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(market.tasks, "resolve_execution", _broken)

    summary = market.worker("w-test").run_loop()

    assert summary.escalated == 1
    assert market.tasks.get_execution(execution.execution_id).status == ExecutionStatus.IN_REVIEW
    job = _only_job(market, execution.execution_id)
    assert (job.status, job.outcome) == (JobStatus.FAILED_FINAL, "delivery_failed")
    assert job.last_error == "RuntimeError: database hiccup"


def test_pool_drains_queue_with_several_workers(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    executors = ("u1", "u2", "u3", "u4")
    executions = _submitted(market, funded, "subscribe_channel", executors=executors)

    with market.pool(concurrency=3):
        deadline = time.monotonic() + 20
        while time.monotonic() < deadline:
            if not market.queue.list_jobs(status=JobStatus.QUEUED) and not market.queue.list_jobs(
                status=JobStatus.RUNNING,
            ):
                break
            time.sleep(0.05)

    for execution in executions:
        assert market.tasks.get_execution(execution.execution_id).status == (
            ExecutionStatus.AUTO_APPROVED
        )
    for user_id in executors:
        assert market.ledger.get_account(user_id).balance == 50
    assert market.ledger.supply_snapshot().conserved
