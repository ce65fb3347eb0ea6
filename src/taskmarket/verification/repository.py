"""Durable verification job queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskmarket.storage.common import (
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_or_none,
    utc_now,
)
from taskmarket.storage.database import Database, UnitOfWork
from taskmarket.storage.sqlmodel_models import VerificationJob, VerificationJobEvent
from taskmarket.verification.models import (
    DEFAULT_QUEUE_NAME,
    JobDetails,
    JobEventView,
    JobStatus,
    VerificationJobView,
)

logger = logging.getLogger(__name__)

OPEN_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class VerificationQueue:
    """Queue persistence facade; every transition is compare-and-set on status."""

    def __init__(
        self,
        database: Database,
        *,
        queue_name: str = DEFAULT_QUEUE_NAME,
        max_deliveries: int = 10,
    ) -> None:
        self.database = database
        self.queue_name = queue_name
        self.max_deliveries = max_deliveries

    def enqueue(  # noqa: PLR0913
        self,
        *,
        execution_id: str,
        user_id: str,
        check_type: str,
        target_url: str,
        run_after: datetime | None = None,
        uow: UnitOfWork | None = None,
    ) -> VerificationJobView:
        """Create a queued job, or return the job already open for this execution."""

        now = to_db_datetime(utc_now())
        with self.database.unit_of_work(uow) as unit:
            session = unit.session
            existing = session.exec(
                select(VerificationJob).where(
                    VerificationJob.execution_id == execution_id,
                    col(VerificationJob.status).in_(OPEN_JOB_STATUSES),
                ),
            ).one_or_none()
            if existing is not None:
                return _to_job_view(existing)

            row = VerificationJob(
                job_id=str(uuid4()),
                queue_name=self.queue_name,
                execution_id=execution_id,
                user_id=user_id,
                check_type=check_type,
                target_url=target_url,
                status=JobStatus.QUEUED.value,
                attempt=0,
                max_deliveries=self.max_deliveries,
                run_after=to_db_datetime(run_after) if run_after is not None else now,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                job_id=row.job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={"execution_id": execution_id, "check_type": check_type},
            )
            return _to_job_view(row)

    def claim_next_ready_job(
        self,
        *,
        worker_id: str,
        now: datetime | None = None,
    ) -> VerificationJobView | None:
        """Atomically claim the oldest job that is ready to run."""

        while True:
            current = now or utc_now()
            with self.database.unit_of_work() as unit:
                session = unit.session
                candidate = session.exec(
                    select(VerificationJob)
                    .where(
                        VerificationJob.queue_name == self.queue_name,
                        VerificationJob.status == JobStatus.QUEUED.value,
                        col(VerificationJob.run_after) <= to_db_datetime(current),
                    )
                    .order_by(
                        col(VerificationJob.run_after).asc(),
                        col(VerificationJob.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(VerificationJob)
                    .where(
                        col(VerificationJob.job_id) == candidate.job_id,
                        col(VerificationJob.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        started_at=to_db_datetime(current),
                        heartbeat_at=to_db_datetime(current),
                        finished_at=None,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(current),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.expire_all()
                claimed = session.exec(
                    select(VerificationJob).where(VerificationJob.job_id == candidate.job_id),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.RUNNING,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                return _to_job_view(claimed)

    def complete_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        outcome: str,
        details: dict[str, Any] | None = None,
        worker_id: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> bool:
        """Mark a running job as succeeded.

        With ``worker_id`` the job must still be held by that worker.
        """

        return self._finish(
            job_id=job_id,
            status=JobStatus.SUCCEEDED,
            event_type="succeeded",
            outcome=outcome,
            error=None,
            details=details,
            worker_id=worker_id,
            uow=uow,
        )

    def fail_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        outcome: str,
        error: str | None = None,
        details: dict[str, Any] | None = None,
        worker_id: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> bool:
        """Mark a running job as finally failed."""

        return self._finish(
            job_id=job_id,
            status=JobStatus.FAILED_FINAL,
            event_type="failed_final",
            outcome=outcome,
            error=error,
            details=details,
            worker_id=worker_id,
            uow=uow,
        )

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        run_after: datetime,
        error: str | None = None,
        event_type: str = "failed_retryable",
        details: dict[str, Any] | None = None,
        worker_id: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> bool:
        """Requeue a running job to run again at ``run_after``."""

        now = to_db_datetime(utc_now())
        with self.database.unit_of_work(uow) as unit:
            session = unit.session
            result = session.exec(
                sa_update(VerificationJob)
                .where(*_held_by(job_id, worker_id))
                .values(
                    status=JobStatus.QUEUED.value,
                    run_after=to_db_datetime(run_after),
                    last_error=error,
                    started_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                return False
            event_details: dict[str, Any] = {"run_after": to_utc_aware(run_after).isoformat()}
            if error:
                event_details["error"] = error
            event_details.update(details or {})
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.QUEUED,
                details=event_details,
            )
            return True

    def recover_stale_running_jobs(
        self,
        *,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> list[str]:
        """Requeue running jobs whose heartbeat is older than ``stale_after``.

        Each update matches the heartbeat that was read, so a stalled delivery
        is re-queued once even when several workers recover concurrently.
        """

        current = now or utc_now()
        cutoff = to_db_datetime(current - stale_after)
        recovered: list[str] = []
        with self.database.unit_of_work() as unit:
            session = unit.session
            stale_rows = session.exec(
                select(VerificationJob).where(
                    VerificationJob.queue_name == self.queue_name,
                    VerificationJob.status == JobStatus.RUNNING.value,
                    col(VerificationJob.heartbeat_at) < cutoff,
                ),
            ).all()
            for row in stale_rows:
                result = session.exec(
                    sa_update(VerificationJob)
                    .where(
                        col(VerificationJob.job_id) == row.job_id,
                        col(VerificationJob.status) == JobStatus.RUNNING.value,
                        col(VerificationJob.heartbeat_at) == row.heartbeat_at,
                    )
                    .values(
                        status=JobStatus.QUEUED.value,
                        run_after=to_db_datetime(current),
                        started_at=None,
                        heartbeat_at=None,
                        worker_id=None,
                        last_error="stale running job recovered",
                        updated_at=to_db_datetime(current),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=row.job_id,
                    event_type="stale_recovered",
                    status_from=JobStatus.RUNNING,
                    status_to=JobStatus.QUEUED,
                    details={"worker_id": row.worker_id, "attempt": row.attempt},
                )
                recovered.append(row.job_id)
        for job_id in recovered:
            logger.warning("Recovered stale verification job %s", job_id)
        return recovered

    def get_job(self, job_id: str) -> VerificationJobView | None:
        with self.database.read_session() as session:
            row = session.get(VerificationJob, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        execution_id: str | None = None,
        limit: int = 50,
    ) -> list[VerificationJobView]:
        """List recent jobs, optionally filtered by status or execution."""

        with self.database.read_session() as session:
            statement = (
                select(VerificationJob)
                .where(VerificationJob.queue_name == self.queue_name)
                .order_by(col(VerificationJob.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(VerificationJob.status == status.value)
            if execution_id is not None:
                statement = statement.where(VerificationJob.execution_id == execution_id)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with self.database.read_session() as session:
            job = session.get(VerificationJob, job_id)
            if job is None:
                return None
            event_rows = session.exec(
                select(VerificationJobEvent)
                .where(VerificationJobEvent.job_id == job_id)
                .order_by(
                    col(VerificationJobEvent.created_at).asc(),
                    col(VerificationJobEvent.id).asc(),
                ),
            ).all()

        events: list[JobEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from else None,
                    status_to=JobStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware(row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=_to_job_view(job), events=events)

    def _finish(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        status: JobStatus,
        event_type: str,
        outcome: str,
        error: str | None,
        details: dict[str, Any] | None,
        worker_id: str | None,
        uow: UnitOfWork | None,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with self.database.unit_of_work(uow) as unit:
            session = unit.session
            result = session.exec(
                sa_update(VerificationJob)
                .where(*_held_by(job_id, worker_id))
                .values(
                    status=status.value,
                    outcome=outcome,
                    last_error=error,
                    finished_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                return False
            event_details: dict[str, Any] = {"outcome": outcome}
            if error:
                event_details["error"] = error
            event_details.update(details or {})
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=JobStatus.RUNNING,
                status_to=status,
                details=event_details,
            )
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            VerificationJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_job_view(row: VerificationJob) -> VerificationJobView:
    return VerificationJobView(
        job_id=row.job_id,
        queue_name=row.queue_name,
        execution_id=row.execution_id,
        user_id=row.user_id,
        check_type=row.check_type,
        target_url=row.target_url,
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_deliveries=row.max_deliveries,
        run_after=to_utc_aware(row.run_after),
        started_at=to_utc_aware_or_none(row.started_at),
        heartbeat_at=to_utc_aware_or_none(row.heartbeat_at),
        finished_at=to_utc_aware_or_none(row.finished_at),
        worker_id=row.worker_id,
        outcome=row.outcome,
        last_error=row.last_error,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _held_by(job_id: str, worker_id: str | None) -> list[Any]:
    """Conditions matching a running job, and its holder when ``worker_id`` is given."""

    conditions: list[Any] = [
        col(VerificationJob.job_id) == job_id,
        col(VerificationJob.status) == JobStatus.RUNNING.value,
    ]
    if worker_id is not None:
        conditions.append(col(VerificationJob.worker_id) == worker_id)
    return conditions
