from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from uuid import uuid4

import allure
import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from taskmarket.checks import engine as checks_engine
from taskmarket.checks.models import CheckCreate, CheckType
from taskmarket.errors import AlreadyActivated, AlreadyExecuted
from taskmarket.service import Marketplace
from taskmarket.storage.common import to_db_datetime, utc_now
from taskmarket.storage.sqlmodel_models import Account, CheckActivation, TaskExecution
from taskmarket.tasks import engine as tasks_engine
from taskmarket.tasks.models import ExecutionStatus, TaskCreate, TaskView

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Constraints"),
]


def _task(market: Marketplace, funded: Callable[..., object]) -> TaskView:
    funded("author", 1000)
    funded("bob")
    return market.tasks.create_task(
        "author",
        TaskCreate(
            task_type="join_group",
            title="Join the group",
            target_url="https://t.me/market_chat",
            reward=100,
            total_executions=2,
        ),
    )


def test_schema_declares_one_per_user_constraints(market: Marketplace) -> None:
    inspector = inspect(market.database.engine)

    def _names(table: str) -> set[str]:
        return {item["name"] for item in inspector.get_unique_constraints(table)}

    assert "uq_checks_code" in _names("checks")
    assert "uq_check_activations_check_user" in _names("check_activations")
    assert "uq_task_executions_task_user" in _names("task_executions")


def test_duplicate_activation_row_is_refused_by_the_database(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("creator", 500)
    funded("u1")
    check = market.checks.create_check(
        "creator",
        CheckCreate(check_type=CheckType.MULTI, total_amount=200, max_activations=2),
    )
    market.checks.activate_check("u1", check.code)

    with pytest.raises(IntegrityError), market.database.unit_of_work() as unit:
        unit.session.add(
            CheckActivation(
                check_id=check.check_id,
                user_id="u1",
                amount=100,
                activated_at=to_db_datetime(utc_now()),
            ),
        )
        unit.session.flush()


def test_duplicate_execution_row_is_refused_by_the_database(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    task = _task(market, funded)
    market.tasks.start_execution(task.task_id, "bob")
    now = utc_now()

    with pytest.raises(IntegrityError), market.database.unit_of_work() as unit:
        unit.session.add(
            TaskExecution(
                execution_id=str(uuid4()),
                task_id=task.task_id,
                user_id="bob",
                status=ExecutionStatus.PENDING.value,
                reward_amount=100,
                started_at=to_db_datetime(now),
                expires_at=to_db_datetime(now + timedelta(hours=1)),
                updated_at=to_db_datetime(now),
            ),
        )
        unit.session.flush()


def test_constraint_alone_stops_a_second_activation(
    market: Marketplace,
    funded: Callable[..., object],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    funded("creator", 500)
    funded("u1")
    check = market.checks.create_check(
        "creator",
        CheckCreate(check_type=CheckType.MULTI, total_amount=200, max_activations=2),
    )
    market.checks.activate_check("u1", check.code)
    entries_before = len(market.ledger.list_entries("u1"))
    monkeypatch.setattr(checks_engine, "_has_activated", lambda *_, **__: False)

    with pytest.raises(AlreadyActivated):
        market.checks.activate_check("u1", check.code)

    assert market.ledger.get_account("u1").balance == 100
    assert len(market.ledger.list_entries("u1")) == entries_before
    assert market.checks.get_check(check.check_id).current_activations == 1
    assert market.ledger.supply_snapshot().conserved


def test_constraint_alone_stops_a_second_execution(
    market: Marketplace,
    funded: Callable[..., object],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    task = _task(market, funded)
    market.tasks.start_execution(task.task_id, "bob")
    monkeypatch.setattr(tasks_engine, "_has_executed", lambda *_, **__: False)

    with pytest.raises(AlreadyExecuted):
        market.tasks.start_execution(task.task_id, "bob")

    assert market.tasks.get_task(task.task_id).clicks == 1
    assert len(market.tasks.list_user_executions("bob")) == 1


def test_read_session_does_not_block_writers(
    market: Marketplace,
    funded: Callable[..., object],
) -> None:
    funded("alice")

    with market.database.read_session() as session:
        assert session.exec(select(Account)).all()
        assert session.connection().get_execution_options()["sqlite_begin"] == "DEFERRED"
        market.ledger.deposit("alice", 25)

    assert market.ledger.get_account("alice").balance == 25
