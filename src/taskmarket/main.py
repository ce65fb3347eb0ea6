"""CLI entrypoint for taskmarket."""

from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import rich_click as click

from taskmarket import __version__
from taskmarket.config import TIER_ORDER
from taskmarket.controllers import (
    AccountAmountCommand,
    AccountCommand,
    AccountHistoryCommand,
    AccountOpenCommand,
    CheckActivateCommand,
    CheckCreateCommand,
    CheckDeactivateCommand,
    CheckShowCommand,
    MaintenanceSweepCommand,
    MarketCliController,
    SupplyCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskResolveCommand,
    TaskShowCommand,
    TaskStartCommand,
    TaskSubmitCommand,
    VerifyInspectCommand,
    VerifyJobsCommand,
    VerifyWorkerCommand,
)
from taskmarket.errors import Conflict, MarketError
from taskmarket.verification.models import JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = MarketCliController()

CommandT = TypeVar("CommandT")

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskmarket")
def taskmarket() -> None:
    """Micro-task marketplace: **ledger**, tasks, gift checks and auto-verification."""


@taskmarket.group()
def account() -> None:
    """Account and ledger commands."""


@account.command("open")
@DB_PATH_OPTION
@click.argument("account_id")
@click.option("--name", "display_name", default=None, help="Display name.")
@click.option(
    "--tier",
    type=click.Choice(list(TIER_ORDER)),
    default="bronze",
    show_default=True,
    help="Account tier.",
)
@click.option(
    "--registered-at",
    type=click.DateTime(),
    default=None,
    help="Registration time (UTC) when importing an existing user.",
)
def account_open(
    db_path: Path | None,
    account_id: str,
    display_name: str | None,
    tier: str,
    registered_at: datetime | None,
) -> None:
    """Open an account with zero balances (idempotent)."""

    _run(
        CONTROLLER.open_account,
        AccountOpenCommand(
            db_path=db_path,
            account_id=account_id,
            display_name=display_name,
            tier=tier,
            registered_at=registered_at,
        ),
    )


@account.command("deposit")
@DB_PATH_OPTION
@click.argument("account_id")
@click.argument("amount", type=click.IntRange(min=1))
@click.option("--description", default=None, help="Ledger entry description.")
def account_deposit(
    db_path: Path | None,
    account_id: str,
    amount: int,
    description: str | None,
) -> None:
    """Credit GRAM entering the system."""

    _run(
        CONTROLLER.deposit,
        AccountAmountCommand(
            db_path=db_path,
            account_id=account_id,
            amount=amount,
            description=description,
        ),
    )


@account.command("withdraw")
@DB_PATH_OPTION
@click.argument("account_id")
@click.argument("amount", type=click.IntRange(min=1))
@click.option("--description", default=None, help="Ledger entry description.")
def account_withdraw(
    db_path: Path | None,
    account_id: str,
    amount: int,
    description: str | None,
) -> None:
    """Debit GRAM leaving the system."""

    _run(
        CONTROLLER.withdraw,
        AccountAmountCommand(
            db_path=db_path,
            account_id=account_id,
            amount=amount,
            description=description,
        ),
    )


@account.command("balance")
@DB_PATH_OPTION
@click.argument("account_id")
def account_balance(db_path: Path | None, account_id: str) -> None:
    """Show spendable and frozen balance."""

    _run(CONTROLLER.balance, AccountCommand(db_path=db_path, account_id=account_id))


@account.command("history")
@DB_PATH_OPTION
@click.argument("account_id")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max number of entries to print.",
)
def account_history(db_path: Path | None, account_id: str, limit: int) -> None:
    """Show ledger entries, newest first."""

    _run(
        CONTROLLER.history,
        AccountHistoryCommand(db_path=db_path, account_id=account_id, limit=limit),
    )


@account.command("reconcile")
@DB_PATH_OPTION
@click.argument("account_id")
def account_reconcile(db_path: Path | None, account_id: str) -> None:
    """Replay the ledger and compare it with stored balances."""

    _run(CONTROLLER.reconcile, AccountCommand(db_path=db_path, account_id=account_id))


@account.command("supply")
@DB_PATH_OPTION
def account_supply(db_path: Path | None) -> None:
    """Check that internal transfers neither created nor destroyed GRAM."""

    _run(CONTROLLER.supply, SupplyCommand(db_path=db_path))


@taskmarket.group()
def task() -> None:
    """Task and execution commands."""


@task.command("create")
@DB_PATH_OPTION
@click.option("--author", "author_id", required=True, help="Author account id.")
@click.option("--type", "task_type", required=True, help="Task type, e.g. subscribe_channel.")
@click.option("--title", required=True, help="Task title.")
@click.option("--url", "target_url", required=True, help="Target https://t.me/... link.")
@click.option("--reward", type=click.IntRange(min=1), required=True, help="Reward per execution.")
@click.option(
    "--executions",
    type=click.IntRange(min=1),
    required=True,
    help="Total number of paid executions.",
)
@click.option("--description", default=None, help="Task description.")
@click.option("--promoted", is_flag=True, default=False, help="Pay the promotion fee.")
@click.option(
    "--auto-check/--manual-review",
    default=None,
    help="Override the task type's default verification.",
)
@click.option(
    "--min-tier",
    type=click.Choice(list(TIER_ORDER)),
    default="bronze",
    show_default=True,
    help="Minimum executor tier.",
)
@click.option(
    "--min-account-age-days",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Minimum executor account age.",
)
@click.option(
    "--lifetime-hours",
    type=click.IntRange(min=1),
    default=None,
    help="Task lifetime; defaults to the configured lifetime.",
)
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    author_id: str,
    task_type: str,
    title: str,
    target_url: str,
    reward: int,
    executions: int,
    description: str | None,
    promoted: bool,
    auto_check: bool | None,
    min_tier: str,
    min_account_age_days: int,
    lifetime_hours: int | None,
) -> None:
    """Create a task and escrow its full cost."""

    _run(
        CONTROLLER.create_task,
        TaskCreateCommand(
            db_path=db_path,
            author_id=author_id,
            task_type=task_type,
            title=title,
            target_url=target_url,
            reward=reward,
            executions=executions,
            description=description,
            promoted=promoted,
            auto_check=auto_check,
            min_tier=min_tier,
            min_account_age_days=min_account_age_days,
            lifetime_hours=lifetime_hours,
        ),
    )


@task.command("show")
@DB_PATH_OPTION
@click.argument("task_id")
def task_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with its escrow state."""

    _run(CONTROLLER.show_task, TaskShowCommand(db_path=db_path, task_id=task_id))


@task.command("list")
@DB_PATH_OPTION
@click.option("--user", "user_id", default=None, help="List tasks available to this user.")
@click.option("--author", "author_id", default=None, help="List tasks created by this author.")
@click.option(
    "--review",
    is_flag=True,
    default=False,
    help="With --author: list executions waiting for review.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max number of rows to print.",
)
def task_list(
    db_path: Path | None,
    user_id: str | None,
    author_id: str | None,
    review: bool,
    limit: int,
) -> None:
    """List available tasks, own tasks or the review queue."""

    _run(
        CONTROLLER.list_tasks,
        TaskListCommand(
            db_path=db_path,
            user_id=user_id,
            author_id=author_id,
            review=review,
            limit=limit,
        ),
    )


@task.command("start")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option("--user", "user_id", required=True, help="Executor account id.")
def task_start(db_path: Path | None, task_id: str, user_id: str) -> None:
    """Start executing a task."""

    _run(
        CONTROLLER.start_execution,
        TaskStartCommand(db_path=db_path, task_id=task_id, user_id=user_id),
    )


@task.command("submit")
@DB_PATH_OPTION
@click.argument("execution_id")
@click.option("--user", "user_id", default=None, help="Executor account id.")
@click.option("--evidence-url", default=None, help="Link proving the execution.")
@click.option("--comment", default=None, help="Free-form evidence comment.")
def task_submit(
    db_path: Path | None,
    execution_id: str,
    user_id: str | None,
    evidence_url: str | None,
    comment: str | None,
) -> None:
    """Submit an execution for verification or review."""

    _run(
        CONTROLLER.submit_execution,
        TaskSubmitCommand(
            db_path=db_path,
            execution_id=execution_id,
            user_id=user_id,
            evidence_url=evidence_url,
            comment=comment,
        ),
    )


@task.command("approve")
@DB_PATH_OPTION
@click.argument("execution_id")
@click.option("--author", "author_id", default=None, help="Moderating task author.")
def task_approve(db_path: Path | None, execution_id: str, author_id: str | None) -> None:
    """Approve an execution and pay its reward."""

    _run(
        CONTROLLER.approve_execution,
        TaskResolveCommand(db_path=db_path, execution_id=execution_id, author_id=author_id),
    )


@task.command("reject")
@DB_PATH_OPTION
@click.argument("execution_id")
@click.option("--author", "author_id", default=None, help="Moderating task author.")
@click.option("--reason", required=True, help="Reason shown to the executor.")
def task_reject(
    db_path: Path | None,
    execution_id: str,
    author_id: str | None,
    reason: str,
) -> None:
    """Reject an execution without paying."""

    _run(
        CONTROLLER.reject_execution,
        TaskResolveCommand(
            db_path=db_path,
            execution_id=execution_id,
            author_id=author_id,
            reason=reason,
        ),
    )


@taskmarket.group()
def check() -> None:
    """Gift check commands."""


@check.command("create")
@DB_PATH_OPTION
@click.option("--creator", "creator_id", required=True, help="Creator account id.")
@click.option(
    "--type",
    "check_type",
    type=click.Choice(["personal", "multi"]),
    default="personal",
    show_default=True,
    help="Check type.",
)
@click.option(
    "--amount",
    "total_amount",
    type=click.IntRange(min=1),
    required=True,
    help="Total GRAM.",
)
@click.option(
    "--activations",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Max activations for multi checks.",
)
@click.option("--password", default=None, help="Optional activation password.")
@click.option("--for-user", "target_user_id", default=None, help="Only this user may activate.")
@click.option(
    "--require-subscription",
    "required_subscription",
    default=None,
    help="Channel link the activator must be subscribed to.",
)
@click.option("--comment", default=None, help="Comment shown on activation.")
@click.option(
    "--lifetime-hours",
    type=click.IntRange(min=1),
    default=None,
    help="Check lifetime; defaults to the configured lifetime.",
)
def check_create(  # noqa: PLR0913
    db_path: Path | None,
    creator_id: str,
    check_type: str,
    total_amount: int,
    activations: int,
    password: str | None,
    target_user_id: str | None,
    required_subscription: str | None,
    comment: str | None,
    lifetime_hours: int | None,
) -> None:
    """Issue a gift check, debiting its full amount."""

    _run(
        CONTROLLER.create_check,
        CheckCreateCommand(
            db_path=db_path,
            creator_id=creator_id,
            check_type=check_type,
            total_amount=total_amount,
            activations=activations,
            password=password,
            target_user_id=target_user_id,
            required_subscription=required_subscription,
            comment=comment,
            lifetime_hours=lifetime_hours,
        ),
    )


@check.command("activate")
@DB_PATH_OPTION
@click.argument("code")
@click.option("--user", "user_id", required=True, help="Activating account id.")
@click.option("--password", default=None, help="Check password, if any.")
def check_activate(db_path: Path | None, code: str, user_id: str, password: str | None) -> None:
    """Redeem a check code."""

    _run(
        CONTROLLER.activate_check,
        CheckActivateCommand(db_path=db_path, user_id=user_id, code=code, password=password),
    )


@check.command("show")
@DB_PATH_OPTION
@click.argument("code")
def check_show(db_path: Path | None, code: str) -> None:
    """Show a check by its code."""

    _run(CONTROLLER.show_check, CheckShowCommand(db_path=db_path, code=code))


@check.command("deactivate")
@DB_PATH_OPTION
@click.argument("check_id")
@click.option("--creator", "creator_id", required=True, help="Creator account id.")
def check_deactivate(db_path: Path | None, check_id: str, creator_id: str) -> None:
    """Cancel an active check and refund what is left."""

    _run(
        CONTROLLER.deactivate_check,
        CheckDeactivateCommand(db_path=db_path, check_id=check_id, creator_id=creator_id),
    )


@taskmarket.group()
def verify() -> None:
    """Auto-check queue commands."""


@verify.command("worker")
@DB_PATH_OPTION
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-verify cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Run a pool of worker threads until interrupted.",
)
def verify_worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    concurrency: int,
) -> None:
    """Run the verification worker."""

    _run(
        CONTROLLER.run_worker,
        VerifyWorkerCommand(
            db_path=db_path,
            once=once,
            max_jobs=max_jobs,
            max_idle_polls=max_idle_polls,
            concurrency=concurrency,
        ),
    )


@verify.command("jobs")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--execution", "execution_id", default=None, help="Only jobs of this execution.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max number of jobs to print.",
)
def verify_jobs(
    db_path: Path | None,
    status: str | None,
    execution_id: str | None,
    limit: int,
) -> None:
    """List verification jobs."""

    _run(
        CONTROLLER.list_jobs,
        VerifyJobsCommand(
            db_path=db_path,
            status=status.lower() if status else None,
            execution_id=execution_id,
            limit=limit,
        ),
    )


@verify.command("inspect")
@DB_PATH_OPTION
@click.argument("job_id")
def verify_inspect(db_path: Path | None, job_id: str) -> None:
    """Show one job with its event stream."""

    _run(CONTROLLER.inspect_job, VerifyInspectCommand(db_path=db_path, job_id=job_id))


@taskmarket.group()
def maintenance() -> None:
    """Scheduled maintenance commands."""


@maintenance.command("sweep")
@DB_PATH_OPTION
def maintenance_sweep(db_path: Path | None) -> None:
    """Expire checks and tasks, settle stale executions, recover stalled jobs."""

    _run(CONTROLLER.sweep, MaintenanceSweepCommand(db_path=db_path))


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except Conflict as exc:
        lines = [f"Already done: {exc}"]
    except MarketError as exc:
        raise click.ClickException(f"{exc.code}: {exc}") from exc
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskmarket()
