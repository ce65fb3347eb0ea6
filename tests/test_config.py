from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskmarket.config import CheckTypePolicy, Settings, TierSettings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_from_env_uses_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("TASKMARKET_DB_PATH", "TASKMARKET_VERIFY_POLICY", "TASKMARKET_VERIFY_MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".taskmarket.db")
    assert settings.verification.max_attempts == 3
    assert settings.verification.retry_delay_seconds == 1800
    assert settings.tiers["bronze"].commission_rate == 0.07
    assert settings.verification.policies["view"] == CheckTypePolicy("optimistic", "review")
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKMARKET_VERIFY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("TASKMARKET_VERIFY_RETRY_DELAY_SECONDS", "60")
    monkeypatch.setenv("TASKMARKET_CHECK_MAX_ACTIVE", "3")
    monkeypatch.setenv("TASKMARKET_VERIFY_POLICY", "reaction=manual, subscription=verify:review")

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.db_path == tmp_path / "x.db"
    assert settings.verification.max_attempts == 5
    assert settings.verification.retry_delay_seconds == 60
    assert settings.checks.max_active_per_creator == 3
    assert settings.verification.policies["reaction"] == CheckTypePolicy("manual", "review")
    assert settings.verification.policies["subscription"] == CheckTypePolicy("verify", "review")
    assert settings.verification.policies["membership"] == CheckTypePolicy("verify", "reject")


def test_from_env_rejects_malformed_policy(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKMARKET_VERIFY_POLICY", "reaction")

    with pytest.raises(ValueError, match="Invalid TASKMARKET_VERIFY_POLICY entry"):
        Settings.from_env()


def test_from_env_rejects_unknown_policy_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKMARKET_VERIFY_POLICY", "reaction=guess")
    with pytest.raises(ValueError, match="Invalid verification mode"):
        Settings.from_env()

    monkeypatch.setenv("TASKMARKET_VERIFY_POLICY", "poll=verify")
    with pytest.raises(ValueError, match="Unknown check type"):
        Settings.from_env()

    monkeypatch.setenv("TASKMARKET_VERIFY_POLICY", "view=verify:ignore")
    with pytest.raises(ValueError, match="Invalid exhaustion action"):
        Settings.from_env()


def test_validate_rejects_non_positive_attempts() -> None:
    settings = Settings()
    settings.verification.max_attempts = 0

    with pytest.raises(ValueError, match="TASKMARKET_VERIFY_MAX_ATTEMPTS must be > 0"):
        settings.validate()


def test_validate_rejects_inverted_execution_bounds() -> None:
    settings = Settings()
    settings.tasks.min_executions = 10
    settings.tasks.max_executions = 5

    with pytest.raises(ValueError, match="TASKMARKET_TASK_MAX_EXECUTIONS"):
        settings.validate()


def test_validate_rejects_commission_of_one_hundred_percent() -> None:
    settings = Settings()
    settings.tiers["gold"] = TierSettings(commission_rate=1.0, daily_task_quota=1, rank=3)

    with pytest.raises(ValueError, match="Commission rate for tier 'gold'"):
        settings.validate()
