"""Balance ledger: the only code that writes account balances."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func
from sqlmodel import Session, col, select

from taskmarket.config import TIER_ORDER
from taskmarket.errors import AccountNotFound, InsufficientFunds, ValidationError
from taskmarket.ledger.models import (
    EARNING_REASONS,
    SPENDING_REASONS,
    AccountView,
    BalanceView,
    EntryKind,
    LedgerEntryView,
    LedgerReason,
    ReconciliationReport,
    SupplySnapshot,
    entry_kind,
)
from taskmarket.storage.common import to_db_datetime, to_utc_aware, utc_now
from taskmarket.storage.database import Database, UnitOfWork
from taskmarket.storage.sqlmodel_models import Account, GiftCheck, LedgerEntry

logger = logging.getLogger(__name__)


class LedgerStore:
    """Account balances plus their append-only transaction log."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def open_account(
        self,
        account_id: str,
        *,
        display_name: str | None = None,
        tier: str = "bronze",
        registered_at: datetime | None = None,
        uow: UnitOfWork | None = None,
    ) -> AccountView:
        """Create an account with zero balances, or return the existing one."""

        _validate_tier(tier)
        now = to_db_datetime(utc_now())
        with self.database.unit_of_work(uow) as unit:
            row = unit.session.get(Account, account_id)
            if row is None:
                row = Account(
                    account_id=account_id,
                    display_name=display_name,
                    tier=tier,
                    registered_at=to_db_datetime(registered_at) if registered_at else now,
                    created_at=now,
                    updated_at=now,
                )
                unit.session.add(row)
                unit.session.flush()
                logger.info("Account opened: %s tier=%s", account_id, tier)
            return _to_account_view(row)

    def adjust(  # noqa: PLR0913
        self,
        account_id: str,
        amount: int,
        frozen_delta: int = 0,
        *,
        reason: LedgerReason | str,
        related_task_id: str | None = None,
        related_check_id: str | None = None,
        description: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> AccountView:
        """Apply ``balance += amount`` and ``frozen += frozen_delta`` with one ledger entry.

        Joins ``uow`` when the caller composes several steps into one atomic
        operation. Raises ``InsufficientFunds`` when either balance would go
        negative; nothing is written in that case.
        """

        reason = LedgerReason(reason)
        if amount == 0 and frozen_delta == 0:
            raise ValidationError("Ledger adjustment must change at least one balance.")
        kind = entry_kind(amount, frozen_delta)
        if kind is None:
            raise ValidationError(
                f"Adjustment amount={amount} frozen_delta={frozen_delta} would create or "
                "destroy currency.",
            )

        with self.database.unit_of_work(uow) as unit:
            session = unit.session
            row = _account_for_update(session, account_id)
            balance_after = row.balance + amount
            frozen_after = row.frozen_balance + frozen_delta
            if balance_after < 0:
                raise InsufficientFunds(
                    f"Insufficient balance on {account_id}: have {row.balance}, need {-amount}.",
                )
            if frozen_after < 0:
                raise InsufficientFunds(
                    f"Insufficient frozen balance on {account_id}: "
                    f"have {row.frozen_balance}, release {-frozen_delta}.",
                )

            now = to_db_datetime(utc_now())
            session.add(
                LedgerEntry(
                    account_id=account_id,
                    kind=kind.value,
                    reason=reason.value,
                    amount=amount,
                    frozen_delta=frozen_delta,
                    balance_before=row.balance,
                    balance_after=balance_after,
                    frozen_before=row.frozen_balance,
                    frozen_after=frozen_after,
                    related_task_id=related_task_id,
                    related_check_id=related_check_id,
                    description=description,
                    created_at=now,
                ),
            )
            row.balance = balance_after
            row.frozen_balance = frozen_after
            if reason in EARNING_REASONS and kind == EntryKind.CREDIT:
                row.total_earned += amount
            if reason in SPENDING_REASONS and amount < 0:
                row.total_spent += -amount
            row.updated_at = now
            session.add(row)
            session.flush()
            logger.debug(
                "Ledger %s on %s: amount=%d frozen_delta=%d reason=%s",
                kind.value,
                account_id,
                amount,
                frozen_delta,
                reason.value,
            )
            return _to_account_view(row)

    def deposit(
        self,
        account_id: str,
        amount: int,
        *,
        description: str | None = None,
    ) -> AccountView:
        """Credit currency entering the system from outside."""

        if amount <= 0:
            raise ValidationError("Deposit amount must be positive.")
        account = self.adjust(
            account_id,
            amount,
            reason=LedgerReason.DEPOSIT,
            description=description,
        )
        logger.info("Deposit: %s +%d", account_id, amount)
        return account

    def withdraw(
        self,
        account_id: str,
        amount: int,
        *,
        description: str | None = None,
    ) -> AccountView:
        """Debit currency leaving the system."""

        if amount <= 0:
            raise ValidationError("Withdrawal amount must be positive.")
        account = self.adjust(
            account_id,
            -amount,
            reason=LedgerReason.WITHDRAWAL,
            description=description,
        )
        logger.info("Withdrawal: %s -%d", account_id, amount)
        return account

    def set_tier(self, account_id: str, tier: str) -> AccountView:
        _validate_tier(tier)
        with self.database.unit_of_work() as unit:
            row = _account_for_update(unit.session, account_id)
            row.tier = tier
            row.updated_at = to_db_datetime(utc_now())
            unit.session.add(row)
            unit.session.flush()
            return _to_account_view(row)

    def load_account(self, account_id: str, *, uow: UnitOfWork) -> AccountView:
        """Read an account inside the caller's unit, locking its row."""

        return _to_account_view(_account_for_update(uow.session, account_id))

    def get_account(self, account_id: str) -> AccountView:
        with self.database.read_session() as session:
            row = session.get(Account, account_id)
            if row is None:
                raise AccountNotFound(f"Account not found: {account_id}")
            return _to_account_view(row)

    def get_balance(self, account_id: str) -> BalanceView:
        account = self.get_account(account_id)
        return BalanceView(
            account_id=account.account_id,
            balance=account.balance,
            frozen_balance=account.frozen_balance,
        )

    def list_entries(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LedgerEntryView]:
        """Newest-first ledger history for one account."""

        with self.database.read_session() as session:
            rows = session.exec(
                select(LedgerEntry)
                .where(LedgerEntry.account_id == account_id)
                .order_by(col(LedgerEntry.entry_id).desc())
                .offset(offset)
                .limit(limit),
            ).all()
        return [_to_entry_view(row) for row in rows]

    def reconcile(self, account_id: str) -> ReconciliationReport:
        """Replay all entries of an account and compare with its stored balances."""

        with self.database.read_session() as session:
            account = session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(f"Account not found: {account_id}")
            rows = session.exec(
                select(LedgerEntry)
                .where(LedgerEntry.account_id == account_id)
                .order_by(col(LedgerEntry.entry_id).asc()),
            ).all()

        balance = rows[0].balance_before if rows else 0
        frozen = rows[0].frozen_before if rows else 0
        broken: int | None = None
        for row in rows:
            if broken is None and (row.balance_before != balance or row.frozen_before != frozen):
                broken = row.entry_id
            balance += row.amount
            frozen += row.frozen_delta
            if broken is None and (row.balance_after != balance or row.frozen_after != frozen):
                broken = row.entry_id

        report = ReconciliationReport(
            account_id=account_id,
            entries=len(rows),
            replayed_balance=balance,
            replayed_frozen=frozen,
            stored_balance=account.balance,
            stored_frozen=account.frozen_balance,
            first_broken_entry_id=broken,
        )
        if not report.ok:
            logger.warning(
                "Ledger mismatch on %s: replayed=%d/%d stored=%d/%d",
                account_id,
                balance,
                frozen,
                account.balance,
                account.frozen_balance,
            )
        return report

    def supply_snapshot(self) -> SupplySnapshot:
        """Sum every place currency can sit, plus what crossed the system boundary."""

        with self.database.read_session() as session:
            total_balance, total_frozen = session.exec(
                select(
                    func.coalesce(func.sum(Account.balance), 0),
                    func.coalesce(func.sum(Account.frozen_balance), 0),
                ),
            ).one()
            outstanding = session.exec(
                select(
                    func.coalesce(
                        func.sum(
                            GiftCheck.total_amount
                            - GiftCheck.current_activations * GiftCheck.amount_per_activation
                            - GiftCheck.refunded_amount,
                        ),
                        0,
                    ),
                ),
            ).one()
            deposits = _sum_amount(session, LedgerReason.DEPOSIT)
            withdrawals = -_sum_amount(session, LedgerReason.WITHDRAWAL)
        return SupplySnapshot(
            total_balance=int(total_balance),
            total_frozen=int(total_frozen),
            outstanding_check_escrow=int(outstanding),
            deposits=deposits,
            withdrawals=withdrawals,
        )


def _validate_tier(tier: str) -> None:
    if tier not in TIER_ORDER:
        raise ValidationError(f"Unknown tier {tier!r}; expected one of {', '.join(TIER_ORDER)}.")


def _account_for_update(session: Session, account_id: str) -> Account:
    row = session.exec(
        select(Account).where(Account.account_id == account_id).with_for_update(),
    ).one_or_none()
    if row is None:
        raise AccountNotFound(f"Account not found: {account_id}")
    return row


def _sum_amount(session: Session, reason: LedgerReason) -> int:
    value = session.exec(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
            LedgerEntry.reason == reason.value,
        ),
    ).one()
    return int(value)


def _to_account_view(row: Account) -> AccountView:
    return AccountView(
        account_id=row.account_id,
        display_name=row.display_name,
        tier=row.tier,
        balance=row.balance,
        frozen_balance=row.frozen_balance,
        total_earned=row.total_earned,
        total_spent=row.total_spent,
        registered_at=to_utc_aware(row.registered_at),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_entry_view(row: LedgerEntry) -> LedgerEntryView:
    return LedgerEntryView(
        entry_id=row.entry_id or 0,
        account_id=row.account_id,
        kind=EntryKind(row.kind),
        reason=LedgerReason(row.reason),
        amount=row.amount,
        frozen_delta=row.frozen_delta,
        balance_before=row.balance_before,
        balance_after=row.balance_after,
        frozen_before=row.frozen_before,
        frozen_after=row.frozen_after,
        related_task_id=row.related_task_id,
        related_check_id=row.related_check_id,
        description=row.description,
        created_at=to_utc_aware(row.created_at),
    )
