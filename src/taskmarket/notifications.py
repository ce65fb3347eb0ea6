"""Notification sinks fed by the engines once their changes are committed."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from sqlmodel import col, select

from taskmarket.storage.common import to_db_datetime, to_utc_aware, utc_now
from taskmarket.storage.database import Database, UnitOfWork
from taskmarket.storage.sqlmodel_models import Notification

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    TASK_CREATED = "task_created"
    TASK_REVIEW_REQUIRED = "task_review_required"
    TASK_COMPLETED = "task_completed"
    TASK_EXPIRED = "task_expired"
    EXECUTION_APPROVED = "execution_approved"
    EXECUTION_REJECTED = "execution_rejected"
    CHECK_ACTIVATED = "check_activated"
    CHECK_CLOSED = "check_closed"


class NotificationSink(Protocol):
    """Fire-and-forget delivery of user-facing events."""

    def notify(self, user_id: str, kind: str, payload: dict[str, Any]) -> None: ...


class LoggingNotificationSink:
    def notify(self, user_id: str, kind: str, payload: dict[str, Any]) -> None:
        logger.info("Notify %s: %s %s", user_id, kind, payload)


class SqlNotificationSink:
    """Persist notifications for a delivery process to drain."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def notify(self, user_id: str, kind: str, payload: dict[str, Any]) -> None:
        with self.database.unit_of_work() as unit:
            unit.session.add(
                Notification(
                    user_id=user_id,
                    kind=kind,
                    payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True)
                    if payload
                    else None,
                    created_at=to_db_datetime(utc_now()),
                ),
            )

    def list_pending(self, *, limit: int = 100) -> list[StoredNotification]:
        with self.database.read_session() as session:
            rows = session.exec(
                select(Notification)
                .where(col(Notification.delivered_at).is_(None))
                .order_by(col(Notification.id).asc())
                .limit(limit),
            ).all()
        return [
            StoredNotification(
                notification_id=row.id or 0,
                user_id=row.user_id,
                kind=row.kind,
                payload=json.loads(row.payload_json) if row.payload_json else {},
                created_at=to_utc_aware(row.created_at),
            )
            for row in rows
        ]

    def mark_delivered(self, notification_ids: list[int]) -> None:
        if not notification_ids:
            return
        now = to_db_datetime(utc_now())
        with self.database.unit_of_work() as unit:
            rows = unit.session.exec(
                select(Notification).where(col(Notification.id).in_(notification_ids)),
            ).all()
            for row in rows:
                row.delivered_at = now
                unit.session.add(row)


@dataclass(slots=True)
class StoredNotification:
    notification_id: int
    user_id: str
    kind: str
    payload: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class SentNotification:
    user_id: str
    kind: str
    payload: dict[str, Any]


@dataclass(slots=True)
class RecordingNotificationSink:
    """In-memory sink for tests and embedding."""

    sent: list[SentNotification] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def notify(self, user_id: str, kind: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.sent.append(SentNotification(user_id=user_id, kind=kind, payload=dict(payload)))

    def kinds_for(self, user_id: str) -> list[str]:
        with self._lock:
            return [item.kind for item in self.sent if item.user_id == user_id]


def notify_after_commit(
    uow: UnitOfWork,
    sink: NotificationSink,
    *,
    user_id: str,
    kind: NotificationKind,
    payload: dict[str, Any],
) -> None:
    """Queue a notification that is sent only if ``uow`` commits."""

    def _send() -> None:
        try:
            sink.notify(user_id, kind.value, payload)
        except Exception:  # noqa: BLE001
            logger.warning("Notification %s to %s failed", kind.value, user_id, exc_info=True)

    uow.after_commit(_send)
