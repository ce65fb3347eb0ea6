from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import allure
import pytest

from taskmarket.config import Settings
from taskmarket.notifications import (
    LoggingNotificationSink,
    NotificationKind,
    RecordingNotificationSink,
    SqlNotificationSink,
    notify_after_commit,
)
from taskmarket.service import Marketplace
from taskmarket.tasks.models import TaskCreate

if TYPE_CHECKING:
    from conftest import FakeVerifier

pytestmark = [
    allure.epic("Notifications"),
    allure.feature("Sinks"),
]


def test_default_sink_persists_after_commit(settings: Settings, verifier: FakeVerifier) -> None:
    with Marketplace.build(settings, verifier=verifier) as market:
        market.init_schema()
        market.ledger.open_account("author")
        market.ledger.deposit("author", 1000)
        task = market.tasks.create_task(
            "author",
            TaskCreate(
                task_type="bot_interaction",
                title="Try the bot",
                target_url="https://t.me/market_bot",
                reward=100,
                total_executions=1,
            ),
        )

        sink = market.notifier
        assert isinstance(sink, SqlNotificationSink)
        pending = sink.list_pending()
        assert [(item.user_id, item.kind) for item in pending] == [
            ("author", NotificationKind.TASK_CREATED.value),
        ]
        assert pending[0].payload["task_id"] == task.task_id

        sink.mark_delivered([item.notification_id for item in pending])
        assert sink.list_pending() == []


def test_rolled_back_unit_sends_nothing(market: Marketplace) -> None:
    sink = RecordingNotificationSink()

    with pytest.raises(RuntimeError, match="boom"), market.database.unit_of_work() as unit:
        notify_after_commit(
            unit,
            sink,
            user_id="alice",
            kind=NotificationKind.CHECK_ACTIVATED,
            payload={"amount": 10},
        )
        raise RuntimeError("boom")

    assert sink.sent == []


def test_failing_sink_does_not_undo_the_commit(
    market: Marketplace,
    funded: Callable[..., object],
    caplog: pytest.LogCaptureFixture,
) -> None:
    class _BrokenSink:
        def notify(self, user_id: str, kind: str, payload: dict[str, Any]) -> None:
            raise ConnectionError("bot is down")

    funded("alice")
    caplog.set_level(logging.WARNING, logger="taskmarket.notifications")

    with market.database.unit_of_work() as unit:
        market.ledger.adjust("alice", 25, reason="deposit", uow=unit)
        notify_after_commit(
            unit,
            _BrokenSink(),
            user_id="alice",
            kind=NotificationKind.CHECK_ACTIVATED,
            payload={},
        )

    assert market.ledger.get_balance("alice").balance == 25
    assert "Notification check_activated to alice failed" in caplog.text


def test_logging_sink_writes_one_record(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="taskmarket.notifications")

    LoggingNotificationSink().notify("bob", "execution_approved", {"reward": 50})

    assert "Notify bob: execution_approved" in caplog.text
