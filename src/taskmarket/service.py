"""Composition root wiring the ledger, engines and verification pipeline."""

from __future__ import annotations

import logging

from taskmarket.checks.engine import CheckEngine
from taskmarket.config import Settings
from taskmarket.ledger.store import LedgerStore
from taskmarket.notifications import NotificationSink, SqlNotificationSink
from taskmarket.storage.database import Database
from taskmarket.tasks.engine import TaskEngine
from taskmarket.verification.policy import VerificationPolicy
from taskmarket.verification.repository import VerificationQueue
from taskmarket.verification.verifier import TelegramBotVerifier, Verifier
from taskmarket.verification.worker import VerificationPool, VerificationWorker

logger = logging.getLogger(__name__)


class Marketplace:
    """Explicitly constructed set of collaborators sharing one database.

    Build one per process (or per test) with :meth:`build`; nothing here is a
    module-level singleton.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        database: Database,
        ledger: LedgerStore,
        tasks: TaskEngine,
        checks: CheckEngine,
        queue: VerificationQueue,
        policy: VerificationPolicy,
        verifier: Verifier,
        notifier: NotificationSink,
        owns_verifier: bool = False,
    ) -> None:
        self.settings = settings
        self.database = database
        self.ledger = ledger
        self.tasks = tasks
        self.checks = checks
        self.queue = queue
        self.policy = policy
        self.verifier = verifier
        self.notifier = notifier
        self._owns_verifier = owns_verifier

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        verifier: Verifier | None = None,
        notifier: NotificationSink | None = None,
    ) -> Marketplace:
        settings.validate()
        database = Database(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
        ledger = LedgerStore(database)
        queue = VerificationQueue(database, max_deliveries=settings.verification.max_deliveries)
        policy = VerificationPolicy.from_settings(settings.verification)
        sink = notifier or SqlNotificationSink(database)
        owns_verifier = verifier is None
        active_verifier = verifier or TelegramBotVerifier(settings.telegram)
        tasks = TaskEngine(
            database=database,
            ledger=ledger,
            settings=settings,
            queue=queue,
            policy=policy,
            notifier=sink,
        )
        checks = CheckEngine(
            database=database,
            ledger=ledger,
            settings=settings,
            notifier=sink,
            verifier=active_verifier,
        )
        logger.debug("Marketplace built on %s", settings.db_path)
        return cls(
            settings=settings,
            database=database,
            ledger=ledger,
            tasks=tasks,
            checks=checks,
            queue=queue,
            policy=policy,
            verifier=active_verifier,
            notifier=sink,
            owns_verifier=owns_verifier,
        )

    def init_schema(self) -> None:
        self.database.init_schema()

    def worker(self, worker_id: str | None = None) -> VerificationWorker:
        verification = self.settings.verification
        return VerificationWorker(
            database=self.database,
            queue=self.queue,
            tasks=self.tasks,
            policy=self.policy,
            verifier=self.verifier,
            worker_id=worker_id or verification.worker_id,
            retry_delay_seconds=verification.retry_delay_seconds,
            stale_job_seconds=verification.stale_job_seconds,
            poll_interval_seconds=verification.poll_interval_seconds,
        )

    def pool(self, concurrency: int | None = None) -> VerificationPool:
        verification = self.settings.verification
        return VerificationPool(
            worker_factory=self.worker,
            concurrency=concurrency or verification.concurrency,
            poll_interval_seconds=verification.poll_interval_seconds,
            name=verification.worker_id,
        )

    def close(self) -> None:
        if self._owns_verifier and isinstance(self.verifier, TelegramBotVerifier):
            self.verifier.close()
        self.database.close()

    def __enter__(self) -> Marketplace:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
