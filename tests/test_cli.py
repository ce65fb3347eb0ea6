from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner, Result

from taskmarket import __version__
from taskmarket.main import taskmarket

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Marketplace Commands"),
]


def _invoke(runner: CliRunner, db_path: Path, *args: str) -> Result:
    group, command, *rest = args
    return runner.invoke(taskmarket, [group, command, "--db-path", str(db_path), *rest])


def _ok(runner: CliRunner, db_path: Path, *args: str) -> str:
    result = _invoke(runner, db_path, *args)
    assert result.exit_code == 0, result.output
    return result.output


def _field(output: str, name: str) -> str:
    match = re.search(rf"{name}=([\w-]+)", output)
    assert match is not None, output
    return match.group(1)


def test_version() -> None:
    result = CliRunner().invoke(taskmarket, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_task_flow_with_worker(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    assert "Account: author tier=bronze" in _ok(runner, db_path, "account", "open", "author")
    _ok(runner, db_path, "account", "open", "bob")
    deposited = _ok(runner, db_path, "account", "deposit", "author", "1000")
    assert "Deposited 1000 GRAM: author tier=bronze balance=1000 frozen=0" in deposited

    created = _ok(
        runner,
        db_path,
        "task",
        "create",
        "--author",
        "author",
        "--type",
        "view_post",
        "--title",
        "Read the launch post",
        "--url",
        "https://t.me/market_news/7",
        "--reward",
        "100",
        "--executions",
        "2",
    )
    assert "total=214" in created
    task_id = _field(created, "task_id")

    assert task_id in _ok(runner, db_path, "task", "list", "--user", "bob")
    started = _ok(runner, db_path, "task", "start", task_id, "--user", "bob")
    execution_id = _field(started, "execution_id")
    submitted = _ok(runner, db_path, "task", "submit", execution_id, "--user", "bob")
    assert "status=pending" in submitted

    worker = _ok(runner, db_path, "verify", "worker", "--loop")
    assert "Worker summary: processed=1 approved=1" in worker

    assert "bob tier=bronze balance=100 frozen=0" in _ok(runner, db_path, "account", "balance", "bob")
    jobs = _ok(runner, db_path, "verify", "jobs", "--status", "succeeded")
    job_id = jobs.split()[0]
    inspected = _ok(runner, db_path, "verify", "inspect", job_id)
    assert "status=succeeded" in inspected
    assert "claimed queued->running" in inspected

    shown = _ok(runner, db_path, "task", "show", task_id)
    assert "spent=100" in shown
    assert "Status: OK" in _ok(runner, db_path, "account", "reconcile", "author")
    assert "Conservation: OK" in _ok(runner, db_path, "account", "supply")


def test_cli_manual_review(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    for account_id in ("author", "bob"):
        _ok(runner, db_path, "account", "open", account_id)
    _ok(runner, db_path, "account", "deposit", "author", "1000")
    task_id = _field(
        _ok(
            runner,
            db_path,
            "task",
            "create",
            "--author",
            "author",
            "--type",
            "bot_interaction",
            "--title",
            "Try the bot",
            "--url",
            "https://t.me/market_bot",
            "--reward",
            "100",
            "--executions",
            "1",
        ),
        "task_id",
    )
    execution_id = _field(
        _ok(runner, db_path, "task", "start", task_id, "--user", "bob"),
        "execution_id",
    )
    assert "status=in_review" in _ok(runner, db_path, "task", "submit", execution_id)
    assert execution_id in _ok(runner, db_path, "task", "list", "--author", "author", "--review")

    denied = _invoke(runner, db_path, "task", "approve", execution_id, "--author", "bob")
    assert denied.exit_code != 0
    assert "not_eligible" in denied.output

    approved = _ok(runner, db_path, "task", "approve", execution_id, "--author", "author")
    assert "status=completed" in approved
    again = _ok(runner, db_path, "task", "reject", execution_id, "--reason", "late")
    assert "Already done:" in again


def test_cli_check_flow(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    for account_id in ("creator", "u1", "u2"):
        _ok(runner, db_path, "account", "open", account_id)
    _ok(runner, db_path, "account", "deposit", "creator", "500")

    created = _ok(
        runner,
        db_path,
        "check",
        "create",
        "--creator",
        "creator",
        "--type",
        "multi",
        "--amount",
        "300",
        "--activations",
        "2",
        "--password",
        "pw",
    )
    code = _field(created, "code")
    check_id = _field(created, "check_id")

    wrong = _invoke(runner, db_path, "check", "activate", code, "--user", "u1", "--password", "nope")
    assert wrong.exit_code != 0
    assert "invalid_password" in wrong.output

    activated = _ok(runner, db_path, "check", "activate", code, "--user", "u1", "--password", "pw")
    assert "Check activated: +150 GRAM for u1" in activated
    duplicate = _ok(runner, db_path, "check", "activate", code, "--user", "u1", "--password", "pw")
    assert "Already done:" in duplicate

    assert "activations=1/2" in _ok(runner, db_path, "check", "show", code)
    closed = _ok(runner, db_path, "check", "deactivate", check_id, "--creator", "creator")
    assert "refunded=150" in closed
    assert "balance=350" in _ok(runner, db_path, "account", "balance", "creator")

    history = _ok(runner, db_path, "account", "history", "creator")
    assert "check_refund" in history
    assert "check_issue" in history


def test_cli_reports_business_errors(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    _ok(runner, db_path, "account", "open", "alice")
    _ok(runner, db_path, "account", "deposit", "alice", "10")

    result = _invoke(runner, db_path, "account", "withdraw", "alice", "50")

    assert result.exit_code != 0
    assert "insufficient_funds" in result.output
    missing = _invoke(runner, db_path, "account", "balance", "ghost")
    assert missing.exit_code != 0
    assert "account_not_found" in missing.output
    assert "Maintenance sweep:" in _ok(runner, db_path, "maintenance", "sweep")
