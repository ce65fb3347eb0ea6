"""Domain models for balances and the append-only ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class EntryKind(str, Enum):
    """Shape of one balance movement."""

    CREDIT = "credit"
    DEBIT = "debit"
    FREEZE = "freeze"
    UNFREEZE = "unfreeze"
    SETTLE = "settle"


class LedgerReason(str, Enum):
    """Business reason recorded on every ledger entry."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TASK_ESCROW = "task_escrow"
    TASK_REWARD = "task_reward"
    TASK_PAYOUT = "task_payout"
    TASK_REFUND = "task_refund"
    CHECK_ISSUE = "check_issue"
    CHECK_REDEEM = "check_redeem"
    CHECK_REFUND = "check_refund"


EARNING_REASONS = frozenset({LedgerReason.TASK_REWARD, LedgerReason.CHECK_REDEEM})
SPENDING_REASONS = frozenset({LedgerReason.TASK_ESCROW, LedgerReason.CHECK_ISSUE})


def entry_kind(amount: int, frozen_delta: int) -> EntryKind | None:
    """Classify a delta pair, ``None`` when the pair would mint or burn currency."""

    if frozen_delta == 0:
        return EntryKind.CREDIT if amount > 0 else EntryKind.DEBIT
    if frozen_delta > 0:
        return EntryKind.FREEZE if amount < 0 else None
    if amount > 0:
        return EntryKind.UNFREEZE
    if amount == 0:
        return EntryKind.SETTLE
    return None


@dataclass(slots=True)
class AccountView:
    """Readable account snapshot."""

    account_id: str
    display_name: str | None
    tier: str
    balance: int
    frozen_balance: int
    total_earned: int
    total_spent: int
    registered_at: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class BalanceView:
    account_id: str
    balance: int
    frozen_balance: int


@dataclass(slots=True)
class LedgerEntryView:
    """One immutable ledger row."""

    entry_id: int
    account_id: str
    kind: EntryKind
    reason: LedgerReason
    amount: int
    frozen_delta: int
    balance_before: int
    balance_after: int
    frozen_before: int
    frozen_after: int
    related_task_id: str | None
    related_check_id: str | None
    description: str | None
    created_at: datetime


@dataclass(slots=True)
class ReconciliationReport:
    """Result of replaying an account's ledger against its stored balances."""

    account_id: str
    entries: int
    replayed_balance: int
    replayed_frozen: int
    stored_balance: int
    stored_frozen: int
    first_broken_entry_id: int | None = None

    @property
    def ok(self) -> bool:
        return (
            self.first_broken_entry_id is None
            and self.replayed_balance == self.stored_balance
            and self.replayed_frozen == self.stored_frozen
        )


@dataclass(slots=True)
class SupplySnapshot:
    """System-wide money supply used to check conservation."""

    total_balance: int
    total_frozen: int
    outstanding_check_escrow: int
    deposits: int
    withdrawals: int

    @property
    def circulating(self) -> int:
        return self.total_balance + self.total_frozen + self.outstanding_check_escrow

    @property
    def net_boundary_flow(self) -> int:
        return self.deposits - self.withdrawals

    @property
    def conserved(self) -> bool:
        return self.circulating == self.net_boundary_flow
