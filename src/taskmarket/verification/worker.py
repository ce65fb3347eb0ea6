"""Queue worker that verifies pending task executions."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from taskmarket.errors import AlreadyProcessed, Conflict, ExternalVerifierError
from taskmarket.storage.common import utc_now
from taskmarket.storage.database import Database, UnitOfWork
from taskmarket.tasks.engine import AUTO_CHECK_EXHAUSTED, TaskEngine
from taskmarket.tasks.models import ExecutionStatus, ResolutionOutcome, ResolvedBy
from taskmarket.verification.models import (
    Decision,
    VerificationJobView,
    VerifierOutcome,
    VerifierResult,
)
from taskmarket.verification.policy import VerificationPolicy
from taskmarket.verification.repository import VerificationQueue
from taskmarket.verification.verifier import Verifier, run_check

logger = logging.getLogger(__name__)


class JobLeaseLost(RuntimeError):
    """The job was recovered as stale and is no longer held by this worker."""


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    approved: int = 0
    rejected: int = 0
    retried: int = 0
    escalated: int = 0
    skipped: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.approved += other.approved
        self.rejected += other.rejected
        self.retried += other.retried
        self.escalated += other.escalated
        self.skipped += other.skipped
        self.idle_polls += other.idle_polls


class VerificationWorker:
    """Consumes queued verification jobs and finalizes executions through ``TaskEngine``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        database: Database,
        queue: VerificationQueue,
        tasks: TaskEngine,
        policy: VerificationPolicy,
        verifier: Verifier,
        worker_id: str,
        retry_delay_seconds: int = 1800,
        stale_job_seconds: int = 1800,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.database = database
        self.queue = queue
        self.tasks = tasks
        self.policy = policy
        self.verifier = verifier
        self.worker_id = worker_id
        self.retry_delay_seconds = retry_delay_seconds
        self.stale_job_seconds = stale_job_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False
        self._current_job_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.job_id
        try:
            self._process(job, summary)
        except JobLeaseLost as exc:
            logger.warning("%s; discarding this delivery", exc)
            summary.skipped = 1
        except Exception as exc:  # noqa: BLE001
            logger.exception("Verification job %s failed during resolution", job.job_id)
            self._handle_delivery_error(job, error=f"{type(exc).__name__}: {exc}", summary=summary)
        finally:
            self._current_job_id = None
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until the queue is idle or ``max_jobs`` reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True

    def _claim_job(self) -> VerificationJobView | None:
        self._recover_stale_jobs()
        if self._stop_requested:
            return None
        return self.queue.claim_next_ready_job(worker_id=self.worker_id)

    def _recover_stale_jobs(self) -> None:
        if self.stale_job_seconds <= 0:
            return
        self.queue.recover_stale_running_jobs(stale_after=timedelta(seconds=self.stale_job_seconds))

    def _process(self, job: VerificationJobView, summary: WorkerRunSummary) -> None:
        execution = self.tasks.get_execution(job.execution_id)
        if execution.status != ExecutionStatus.PENDING:
            self.queue.complete_job(
                job_id=job.job_id,
                outcome="skipped",
                details={"execution_status": execution.status.value},
                worker_id=self.worker_id,
            )
            summary.skipped = 1
            return

        if self.policy.requires_manual_review(job.check_type):
            with self.database.unit_of_work() as unit:
                self._escalate(unit, job, reason="manual review policy", summary=summary)
            return

        # No transaction is open while the verifier is consulted.
        result = self._observe(job)

        with self.database.unit_of_work() as unit:
            try:
                attempts = self.tasks.record_auto_check_attempt(
                    job.execution_id,
                    {**result.as_dict(), "job_id": job.job_id},
                    uow=unit,
                )
            except AlreadyProcessed:
                self.queue.complete_job(
                    job_id=job.job_id,
                    outcome="skipped",
                    worker_id=self.worker_id,
                    uow=unit,
                )
                summary.skipped = 1
                return

            decision = self.policy.decide(
                check_type=job.check_type,
                outcome=result.outcome,
                attempts=attempts,
            )
            self._apply(unit, job, decision=decision, result=result, attempts=attempts, summary=summary)

        logger.info(
            "Verification job %s: %s after attempt %d (%s)",
            job.job_id,
            decision.value,
            attempts,
            result.outcome.value,
        )

    def _observe(self, job: VerificationJobView) -> VerifierResult:
        if self.policy.is_optimistic(job.check_type):
            return VerifierResult(VerifierOutcome.PASSED, {"mode": "optimistic"})
        try:
            return run_check(
                self.verifier,
                check_type=job.check_type,
                user_id=job.user_id,
                target_ref=job.target_url,
            )
        except ExternalVerifierError as exc:
            logger.warning("Verifier error for job %s: %s", job.job_id, exc)
            return VerifierResult(VerifierOutcome.UNDETERMINED, {"error": str(exc)})
        except Exception as exc:  # noqa: BLE001
            logger.exception("Verifier crashed for job %s", job.job_id)
            return VerifierResult(
                VerifierOutcome.UNDETERMINED,
                {"error": f"{type(exc).__name__}: {exc}"},
            )

    def _apply(  # noqa: PLR0913
        self,
        unit: UnitOfWork,
        job: VerificationJobView,
        *,
        decision: Decision,
        result: VerifierResult,
        attempts: int,
        summary: WorkerRunSummary,
    ) -> None:
        details = {"attempts": attempts, "verifier_outcome": result.outcome.value}
        if decision == Decision.APPROVE:
            self._require_lease(
                job,
                self.queue.complete_job(
                    job_id=job.job_id,
                    outcome="approved",
                    details=details,
                    worker_id=self.worker_id,
                    uow=unit,
                ),
            )
            self.tasks.resolve_execution(
                job.execution_id,
                ResolutionOutcome.APPROVE,
                resolved_by=ResolvedBy.VERIFIER,
                uow=unit,
            )
            summary.approved = 1
        elif decision == Decision.RETRY:
            self._require_lease(
                job,
                self.queue.schedule_retry(
                    job_id=job.job_id,
                    run_after=utc_now() + timedelta(seconds=self.retry_delay_seconds),
                    error=result.details.get("error"),
                    details=details,
                    worker_id=self.worker_id,
                    uow=unit,
                ),
            )
            summary.retried = 1
        elif decision == Decision.REJECT:
            self._require_lease(
                job,
                self.queue.fail_job(
                    job_id=job.job_id,
                    outcome="rejected",
                    details=details,
                    worker_id=self.worker_id,
                    uow=unit,
                ),
            )
            self.tasks.resolve_execution(
                job.execution_id,
                ResolutionOutcome.REJECT,
                reason=AUTO_CHECK_EXHAUSTED,
                resolved_by=ResolvedBy.VERIFIER,
                uow=unit,
            )
            summary.rejected = 1
        else:
            self._escalate(unit, job, reason=AUTO_CHECK_EXHAUSTED, summary=summary, details=details)

    def _escalate(
        self,
        unit: UnitOfWork,
        job: VerificationJobView,
        *,
        reason: str,
        summary: WorkerRunSummary,
        details: dict[str, object] | None = None,
    ) -> None:
        self._require_lease(
            job,
            self.queue.fail_job(
                job_id=job.job_id,
                outcome="escalated",
                details={"reason": reason, **(details or {})},
                worker_id=self.worker_id,
                uow=unit,
            ),
        )
        self.tasks.escalate_to_review(job.execution_id, reason, uow=unit)
        summary.escalated = 1

    def _require_lease(self, job: VerificationJobView, moved: bool) -> None:
        # Raising rolls back the caller's unit, attempt counter included.
        if not moved:
            raise JobLeaseLost(f"Job {job.job_id} is no longer held by {self.worker_id}")

    def _handle_delivery_error(
        self,
        job: VerificationJobView,
        *,
        error: str,
        summary: WorkerRunSummary,
    ) -> None:
        """Re-deliver a job whose resolution failed; escalate once deliveries run out."""

        with self.database.unit_of_work() as unit:
            if job.attempt < job.max_deliveries:
                if self.queue.schedule_retry(
                    job_id=job.job_id,
                    run_after=utc_now() + timedelta(seconds=self.retry_delay_seconds),
                    error=error,
                    event_type="redelivery",
                    details={"delivery": job.attempt},
                    worker_id=self.worker_id,
                    uow=unit,
                ):
                    summary.retried = 1
                else:
                    logger.warning("Job %s is no longer held by %s", job.job_id, self.worker_id)
                return
            if not self.queue.fail_job(
                job_id=job.job_id,
                outcome="delivery_failed",
                error=error,
                worker_id=self.worker_id,
                uow=unit,
            ):
                logger.warning("Job %s is no longer held by %s", job.job_id, self.worker_id)
                return
            try:
                self.tasks.escalate_to_review(job.execution_id, "verification delivery failed", uow=unit)
            except Conflict:
                logger.info("Execution %s already left pending state", job.execution_id)
            summary.escalated = 1

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info(
                "Stop requested by %s; finishing job %s",
                name,
                self._current_job_id or "-",
            )
            self.request_stop()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


class VerificationPool:
    """Bounded set of worker threads sharing one database."""

    def __init__(
        self,
        *,
        worker_factory: Callable[[str], VerificationWorker],
        concurrency: int,
        poll_interval_seconds: float = 2.0,
        name: str = "verifier",
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self._worker_factory = worker_factory
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.name = name
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._workers: list[VerificationWorker] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Verification pool is already started")
        self._stop.clear()
        for index in range(self.concurrency):
            thread = threading.Thread(
                target=self._worker_loop,
                args=(f"{self.name}-{index}",),
                daemon=True,
                name=f"{self.name}-{index}",
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Verification pool started with %d workers", self.concurrency)

    def stop(self, *, timeout: float = 15.0) -> None:
        self._stop.set()
        with self._lock:
            for worker in self._workers:
                worker.request_stop()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        with self._lock:
            self._workers = []
        logger.info("Verification pool stopped")

    def _worker_loop(self, worker_id: str) -> None:
        worker = self._worker_factory(worker_id)
        with self._lock:
            self._workers.append(worker)
        while not self._stop.is_set():
            try:
                summary = worker.run_once()
                if summary.processed == 0:
                    self._stop.wait(timeout=self.poll_interval_seconds)
            except Exception:  # noqa: BLE001
                logger.exception("Verification pool worker error")
                self._stop.wait(timeout=5)

    def __enter__(self) -> VerificationPool:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()
