"""Runtime configuration for the ledger, engines and verification pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

TIER_ORDER: tuple[str, ...] = ("bronze", "silver", "gold", "premium")
CHECK_TYPES: tuple[str, ...] = ("subscription", "membership", "reaction", "view")
VERIFY_MODES: frozenset[str] = frozenset({"verify", "optimistic", "manual"})
EXHAUSTION_ACTIONS: frozenset[str] = frozenset({"reject", "review"})


@dataclass(slots=True, frozen=True)
class TierSettings:
    """Economic knobs attached to one account tier."""

    commission_rate: float
    daily_task_quota: int
    rank: int


def _default_tiers() -> dict[str, TierSettings]:
    return {
        "bronze": TierSettings(commission_rate=0.07, daily_task_quota=5, rank=1),
        "silver": TierSettings(commission_rate=0.06, daily_task_quota=15, rank=2),
        "gold": TierSettings(commission_rate=0.05, daily_task_quota=30, rank=3),
        "premium": TierSettings(commission_rate=0.03, daily_task_quota=-1, rank=4),
    }


@dataclass(slots=True, frozen=True)
class TaskTypeSettings:
    """Reward bounds and verification defaults for one task type."""

    min_reward: int
    max_reward: int
    auto_check: bool
    check_type: str | None


def _default_task_types() -> dict[str, TaskTypeSettings]:
    return {
        "subscribe_channel": TaskTypeSettings(50, 500, auto_check=True, check_type="subscription"),
        "join_group": TaskTypeSettings(75, 750, auto_check=True, check_type="membership"),
        "view_post": TaskTypeSettings(25, 200, auto_check=True, check_type="view"),
        "react_post": TaskTypeSettings(30, 150, auto_check=True, check_type="reaction"),
        "bot_interaction": TaskTypeSettings(100, 1500, auto_check=False, check_type=None),
    }


@dataclass(slots=True)
class TaskSettings:
    """Task creation and execution settings."""

    types: dict[str, TaskTypeSettings] = field(default_factory=_default_task_types)
    min_executions: int = 1
    max_executions: int = 1_000
    promotion_fee: int = 50
    default_lifetime_seconds: int = 7 * 24 * 3600
    execution_lifetime_seconds: int = 24 * 3600
    review_timeout_seconds: int = 24 * 3600


@dataclass(slots=True)
class CheckSettings:
    """Gift-check issuance settings."""

    min_amount: int = 10
    max_amount: int = 100_000
    max_activations: int = 1_000
    default_lifetime_seconds: int = 7 * 24 * 3600
    max_lifetime_seconds: int = 30 * 24 * 3600
    max_active_per_creator: int = 50


@dataclass(slots=True, frozen=True)
class CheckTypePolicy:
    """How one check type is verified and what happens once attempts run out."""

    mode: str = "verify"
    on_exhausted: str = "reject"


def _default_policies() -> dict[str, CheckTypePolicy]:
    return {
        "subscription": CheckTypePolicy("verify", "reject"),
        "membership": CheckTypePolicy("verify", "reject"),
        "reaction": CheckTypePolicy("verify", "review"),
        "view": CheckTypePolicy("optimistic", "review"),
    }


@dataclass(slots=True)
class VerificationSettings:
    """Verification queue and worker pool settings."""

    max_attempts: int = 3
    retry_delay_seconds: int = 1_800
    stale_job_seconds: int = 1_800
    poll_interval_seconds: float = 2.0
    concurrency: int = 5
    worker_id: str = "verifier-worker"
    max_deliveries: int = 10
    policies: dict[str, CheckTypePolicy] = field(default_factory=_default_policies)


@dataclass(slots=True)
class TelegramSettings:
    """Bot API client settings used by the membership verifier."""

    bot_token: str = ""
    api_base_url: str = "https://api.telegram.org"
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskmarket.db")
    sqlite_busy_timeout_ms: int = 5_000
    tiers: dict[str, TierSettings] = field(default_factory=_default_tiers)
    tasks: TaskSettings = field(default_factory=TaskSettings)
    checks: CheckSettings = field(default_factory=CheckSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        policies = _default_policies()
        policies.update(_parse_policy_overrides(os.getenv("TASKMARKET_VERIFY_POLICY", "")))
        return cls(
            db_path=db_path or Path(os.getenv("TASKMARKET_DB_PATH", ".taskmarket.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASKMARKET_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            tasks=TaskSettings(
                min_executions=int(os.getenv("TASKMARKET_TASK_MIN_EXECUTIONS", "1")),
                max_executions=int(os.getenv("TASKMARKET_TASK_MAX_EXECUTIONS", "1000")),
                promotion_fee=int(os.getenv("TASKMARKET_TASK_PROMOTION_FEE", "50")),
                default_lifetime_seconds=int(
                    os.getenv("TASKMARKET_TASK_LIFETIME_SECONDS", str(7 * 24 * 3600)),
                ),
                execution_lifetime_seconds=int(
                    os.getenv("TASKMARKET_EXECUTION_LIFETIME_SECONDS", str(24 * 3600)),
                ),
                review_timeout_seconds=int(
                    os.getenv("TASKMARKET_REVIEW_TIMEOUT_SECONDS", str(24 * 3600)),
                ),
            ),
            checks=CheckSettings(
                min_amount=int(os.getenv("TASKMARKET_CHECK_MIN_AMOUNT", "10")),
                max_amount=int(os.getenv("TASKMARKET_CHECK_MAX_AMOUNT", "100000")),
                max_activations=int(os.getenv("TASKMARKET_CHECK_MAX_ACTIVATIONS", "1000")),
                default_lifetime_seconds=int(
                    os.getenv("TASKMARKET_CHECK_LIFETIME_SECONDS", str(7 * 24 * 3600)),
                ),
                max_lifetime_seconds=int(
                    os.getenv("TASKMARKET_CHECK_MAX_LIFETIME_SECONDS", str(30 * 24 * 3600)),
                ),
                max_active_per_creator=int(os.getenv("TASKMARKET_CHECK_MAX_ACTIVE", "50")),
            ),
            verification=VerificationSettings(
                max_attempts=int(os.getenv("TASKMARKET_VERIFY_MAX_ATTEMPTS", "3")),
                retry_delay_seconds=int(os.getenv("TASKMARKET_VERIFY_RETRY_DELAY_SECONDS", "1800")),
                stale_job_seconds=int(os.getenv("TASKMARKET_VERIFY_STALE_JOB_SECONDS", "1800")),
                poll_interval_seconds=float(
                    os.getenv("TASKMARKET_VERIFY_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                concurrency=int(os.getenv("TASKMARKET_VERIFY_CONCURRENCY", "5")),
                worker_id=os.getenv("TASKMARKET_VERIFY_WORKER_ID", "verifier-worker"),
                max_deliveries=int(os.getenv("TASKMARKET_VERIFY_MAX_DELIVERIES", "10")),
                policies=policies,
            ),
            telegram=TelegramSettings(
                bot_token=os.getenv("TASKMARKET_TELEGRAM_BOT_TOKEN", ""),
                api_base_url=os.getenv(
                    "TASKMARKET_TELEGRAM_API_BASE_URL",
                    "https://api.telegram.org",
                ),
                request_timeout_seconds=float(
                    os.getenv("TASKMARKET_TELEGRAM_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engines cannot work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKMARKET_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.tasks.min_executions <= 0:
            raise ValueError("TASKMARKET_TASK_MIN_EXECUTIONS must be > 0.")
        if self.tasks.max_executions < self.tasks.min_executions:
            raise ValueError(
                "TASKMARKET_TASK_MAX_EXECUTIONS must be >= TASKMARKET_TASK_MIN_EXECUTIONS.",
            )
        if self.tasks.promotion_fee < 0:
            raise ValueError("TASKMARKET_TASK_PROMOTION_FEE must be >= 0.")
        if self.tasks.review_timeout_seconds <= 0:
            raise ValueError("TASKMARKET_REVIEW_TIMEOUT_SECONDS must be > 0.")
        if self.checks.min_amount <= 0 or self.checks.max_amount < self.checks.min_amount:
            raise ValueError(
                "TASKMARKET_CHECK_MIN_AMOUNT must be > 0 and <= TASKMARKET_CHECK_MAX_AMOUNT.",
            )
        if self.checks.max_activations <= 0:
            raise ValueError("TASKMARKET_CHECK_MAX_ACTIVATIONS must be > 0.")
        if self.verification.max_attempts <= 0:
            raise ValueError("TASKMARKET_VERIFY_MAX_ATTEMPTS must be > 0.")
        if self.verification.retry_delay_seconds < 0:
            raise ValueError("TASKMARKET_VERIFY_RETRY_DELAY_SECONDS must be >= 0.")
        if self.verification.stale_job_seconds <= 0:
            raise ValueError("TASKMARKET_VERIFY_STALE_JOB_SECONDS must be > 0.")
        if self.verification.concurrency <= 0:
            raise ValueError("TASKMARKET_VERIFY_CONCURRENCY must be > 0.")
        for tier, tier_settings in self.tiers.items():
            if not 0 <= tier_settings.commission_rate < 1:
                raise ValueError(f"Commission rate for tier {tier!r} must be in [0, 1).")
        for check_type, policy in self.verification.policies.items():
            _validate_policy(check_type, policy)


def _parse_policy_overrides(raw: str) -> dict[str, CheckTypePolicy]:
    """Parse ``type=mode[:on_exhausted]`` comma separated overrides."""

    overrides: dict[str, CheckTypePolicy] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid TASKMARKET_VERIFY_POLICY entry: "
                f"{token!r}. Expected format '<check_type>=<mode>[:<on_exhausted>]'.",
            )
        check_type, spec = (value.strip() for value in token.split("=", 1))
        mode, _, on_exhausted = spec.partition(":")
        policy = CheckTypePolicy(
            mode=mode.strip(),
            on_exhausted=on_exhausted.strip() or "review",
        )
        _validate_policy(check_type, policy)
        overrides[check_type] = policy
    return overrides


def _validate_policy(check_type: str, policy: CheckTypePolicy) -> None:
    if check_type not in CHECK_TYPES:
        raise ValueError(f"Unknown check type in TASKMARKET_VERIFY_POLICY: {check_type!r}")
    if policy.mode not in VERIFY_MODES:
        raise ValueError(
            f"Invalid verification mode for {check_type!r}: {policy.mode!r} "
            f"(expected one of {', '.join(sorted(VERIFY_MODES))})",
        )
    if policy.on_exhausted not in EXHAUSTION_ACTIONS:
        raise ValueError(
            f"Invalid exhaustion action for {check_type!r}: {policy.on_exhausted!r} "
            f"(expected one of {', '.join(sorted(EXHAUSTION_ACTIONS))})",
        )
