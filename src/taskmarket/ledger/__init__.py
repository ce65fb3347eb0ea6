"""Account balances and the append-only ledger."""

from taskmarket.ledger.models import AccountView, LedgerReason
from taskmarket.ledger.store import LedgerStore

__all__ = ["AccountView", "LedgerReason", "LedgerStore"]
