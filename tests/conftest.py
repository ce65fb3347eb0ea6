"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import pytest

from taskmarket.config import Settings, VerificationSettings
from taskmarket.ledger.models import AccountView
from taskmarket.notifications import RecordingNotificationSink
from taskmarket.service import Marketplace
from taskmarket.verification.models import VerifierOutcome, VerifierResult


@dataclass
class FakeVerifier:
    """Scripted verifier: pops outcomes in order, then keeps returning ``default``.

    A scripted exception instance is raised instead of returned.
    """

    default: VerifierOutcome = VerifierOutcome.PASSED
    script: list[VerifierOutcome | Exception] = field(default_factory=list)
    calls: list[tuple[str, str, str]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def check_membership(self, user_id: str, target_ref: str) -> VerifierResult:
        return self._next("membership", user_id, target_ref)

    def check_reaction(self, user_id: str, target_ref: str) -> VerifierResult:
        return self._next("reaction", user_id, target_ref)

    def _next(self, kind: str, user_id: str, target_ref: str) -> VerifierResult:
        with self._lock:
            self.calls.append((kind, user_id, target_ref))
            step = self.script.pop(0) if self.script else self.default
        if isinstance(step, Exception):
            raise step
        return VerifierResult(step, {"fake": True})


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "market.db",
        verification=VerificationSettings(retry_delay_seconds=0, poll_interval_seconds=0.05),
    )


@pytest.fixture()
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture()
def notifier() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture()
def market(
    settings: Settings,
    verifier: FakeVerifier,
    notifier: RecordingNotificationSink,
) -> Iterator[Marketplace]:
    instance = Marketplace.build(settings, verifier=verifier, notifier=notifier)
    instance.init_schema()
    try:
        yield instance
    finally:
        instance.close()


@pytest.fixture()
def funded(market: Marketplace) -> Callable[..., AccountView]:
    """Open an account and deposit ``amount`` into it."""

    def _funded(
        account_id: str,
        amount: int = 0,
        *,
        tier: str = "bronze",
        registered_at: datetime | None = None,
    ) -> AccountView:
        account = market.ledger.open_account(
            account_id,
            tier=tier,
            registered_at=registered_at,
        )
        if amount:
            account = market.ledger.deposit(account_id, amount)
        return account

    return _funded
