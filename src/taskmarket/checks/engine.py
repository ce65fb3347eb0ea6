"""Gift check issuance, redemption and expiry."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskmarket.checks.codes import generate_code, hash_password, normalize_code, verify_password
from taskmarket.checks.models import (
    ActivationView,
    CheckCreate,
    CheckType,
    CheckView,
    ExpirySummary,
)
from taskmarket.config import Settings
from taskmarket.errors import (
    AlreadyActivated,
    CheckExpired,
    CheckInactive,
    CheckNotFound,
    ExternalVerifierError,
    InvalidPassword,
    NoActivationsRemaining,
    NotEligible,
    NotForYou,
    QuotaExceeded,
    SubscriptionRequired,
    ValidationError,
)
from taskmarket.ledger.models import LedgerReason
from taskmarket.ledger.store import LedgerStore
from taskmarket.notifications import NotificationKind, NotificationSink, notify_after_commit
from taskmarket.storage.common import to_db_datetime, to_utc_aware, to_utc_aware_or_none, utc_now
from taskmarket.storage.database import Database, UnitOfWork
from taskmarket.storage.sqlmodel_models import CheckActivation, GiftCheck
from taskmarket.verification.models import VerifierOutcome
from taskmarket.verification.verifier import Verifier, chat_ref_from_url

logger = logging.getLogger(__name__)

_CODE_ATTEMPTS = 5


class CheckEngine:
    """Checks hold their escrow themselves: issuing debits the creator outright."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        database: Database,
        ledger: LedgerStore,
        settings: Settings,
        notifier: NotificationSink,
        verifier: Verifier | None = None,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.settings = settings
        self.notifier = notifier
        self.verifier = verifier

    def create_check(
        self,
        creator_id: str,
        payload: CheckCreate,
        *,
        now: datetime | None = None,
    ) -> CheckView:
        """Validate and issue a check, debiting ``total_amount`` from the creator."""

        current = now or utc_now()
        check_type, max_activations, expires_at = self._validate_check(payload, now=current)

        with self.database.unit_of_work() as unit:
            session = unit.session
            self.ledger.load_account(creator_id, uow=unit)
            active = int(
                session.exec(
                    select(func.count())
                    .select_from(GiftCheck)
                    .where(GiftCheck.creator_id == creator_id, col(GiftCheck.is_active).is_(True)),
                ).one(),
            )
            if active >= self.settings.checks.max_active_per_creator:
                raise QuotaExceeded(
                    f"Too many active checks ({self.settings.checks.max_active_per_creator}).",
                )

            check_id = str(uuid4())
            self.ledger.adjust(
                creator_id,
                -payload.total_amount,
                reason=LedgerReason.CHECK_ISSUE,
                related_check_id=check_id,
                description=f"{check_type.value.capitalize()} check issued",
                uow=unit,
            )
            db_now = to_db_datetime(current)
            row = GiftCheck(
                check_id=check_id,
                creator_id=creator_id,
                code=_unused_code(session),
                check_type=check_type.value,
                total_amount=payload.total_amount,
                amount_per_activation=payload.total_amount // max_activations,
                max_activations=max_activations,
                current_activations=0,
                password_hash=hash_password(payload.password) if payload.password else None,
                target_user_id=payload.target_user_id,
                required_subscription=payload.required_subscription,
                comment=payload.comment,
                is_active=True,
                refunded_amount=0,
                expires_at=to_db_datetime(expires_at),
                created_at=db_now,
                updated_at=db_now,
            )
            session.add(row)
            session.flush()
            view = _to_check_view(row)

        logger.info(
            "Check created: %s by %s total=%d activations=%d",
            view.check_id,
            creator_id,
            view.total_amount,
            view.max_activations,
        )
        return view

    def activate_check(
        self,
        user_id: str,
        code: str,
        password: str | None = None,
        *,
        now: datetime | None = None,
    ) -> ActivationView:
        """Redeem a check once per user.

        The prior-activation lookup, the activation insert, the credit and the
        counter update share one unit; the ``(check_id, user_id)`` unique
        constraint turns a lost race into ``AlreadyActivated``. A required
        subscription is verified before the unit opens.
        """

        normalized = normalize_code(code)
        current = now or utc_now()
        required = self._required_subscription(normalized)
        if required:
            self._ensure_subscribed(user_id, required)

        with self.database.unit_of_work() as unit:
            session = unit.session
            check = _check_by_code_for_update(session, normalized)
            if _has_activated(session, check_id=check.check_id, user_id=user_id):
                raise AlreadyActivated("You have already activated this check.")
            if check.current_activations >= check.max_activations:
                raise NoActivationsRemaining("This check has no activations left.")
            if not check.is_active:
                raise CheckInactive("This check is no longer active.")
            if to_utc_aware(check.expires_at) <= current:
                raise CheckExpired("This check has expired.")
            if check.target_user_id and check.target_user_id != user_id:
                raise NotForYou("This check is addressed to another user.")

            activation = CheckActivation(
                check_id=check.check_id,
                user_id=user_id,
                amount=check.amount_per_activation,
                activated_at=to_db_datetime(current),
            )
            session.add(activation)
            try:
                session.flush()
            except IntegrityError as exc:
                raise AlreadyActivated("You have already activated this check.") from exc

            if check.password_hash and not verify_password(password, check.password_hash):
                raise InvalidPassword("Wrong check password.")

            self.ledger.adjust(
                user_id,
                check.amount_per_activation,
                reason=LedgerReason.CHECK_REDEEM,
                related_check_id=check.check_id,
                description="Check activated",
                uow=unit,
            )
            count = check.current_activations + 1
            exhausted = count >= check.max_activations
            db_now = to_db_datetime(current)
            result = session.exec(
                sa_update(GiftCheck)
                .where(
                    col(GiftCheck.check_id) == check.check_id,
                    col(GiftCheck.current_activations) == check.current_activations,
                    col(GiftCheck.is_active).is_(True),
                )
                .values(
                    current_activations=count,
                    is_active=not exhausted,
                    closed_at=db_now if exhausted else None,
                    updated_at=db_now,
                ),
            )
            if result.rowcount != 1:
                raise NoActivationsRemaining("This check has no activations left.")
            session.refresh(check)

            refunded = self._refund_outstanding(unit, check, reason="Check rounding remainder")
            notify_after_commit(
                unit,
                self.notifier,
                user_id=check.creator_id,
                kind=NotificationKind.CHECK_ACTIVATED,
                payload={
                    "check_id": check.check_id,
                    "user_id": user_id,
                    "amount": check.amount_per_activation,
                    "remaining": check.max_activations - check.current_activations,
                },
            )
            if exhausted:
                notify_after_commit(
                    unit,
                    self.notifier,
                    user_id=check.creator_id,
                    kind=NotificationKind.CHECK_CLOSED,
                    payload={"check_id": check.check_id, "reason": "exhausted", "refunded": refunded},
                )
            view = _to_activation_view(activation)

        logger.info(
            "Check activated: %s by %s amount=%d",
            view.check_id,
            user_id,
            view.amount,
        )
        return view

    def expire_checks(self, *, now: datetime | None = None) -> ExpirySummary:
        """Close active checks past their expiry and refund what was not redeemed."""

        current = now or utc_now()
        with self.database.read_session() as session:
            check_ids = session.exec(
                select(GiftCheck.check_id).where(
                    col(GiftCheck.is_active).is_(True),
                    col(GiftCheck.expires_at) <= to_db_datetime(current),
                ),
            ).all()

        summary = ExpirySummary()
        for check_id in check_ids:
            with self.database.unit_of_work() as unit:
                check = _check_for_update(unit.session, check_id)
                if not _close(unit.session, check, now=current):
                    summary.skipped += 1
                    continue
                refunded = self._refund_outstanding(unit, check, reason="Check expiration refund")
                notify_after_commit(
                    unit,
                    self.notifier,
                    user_id=check.creator_id,
                    kind=NotificationKind.CHECK_CLOSED,
                    payload={"check_id": check_id, "reason": "expired", "refunded": refunded},
                )
            summary.processed += 1
            summary.refunded_amount += refunded
            summary.check_ids.append(check_id)

        if summary.processed:
            logger.info(
                "Expired %d checks, refunded %d GRAM",
                summary.processed,
                summary.refunded_amount,
            )
        return summary

    def deactivate_check(
        self,
        check_id: str,
        *,
        creator_id: str,
        now: datetime | None = None,
    ) -> CheckView:
        """Creator cancels an active check; the unredeemed amount is refunded."""

        current = now or utc_now()
        with self.database.unit_of_work() as unit:
            check = _check_for_update(unit.session, check_id)
            if check.creator_id != creator_id:
                raise NotEligible("Only the creator can deactivate this check.")
            if not _close(unit.session, check, now=current):
                raise CheckInactive("Check is already inactive.")
            refunded = self._refund_outstanding(unit, check, reason="Check deactivated")
            view = _to_check_view(check)
        logger.info("Check deactivated: %s by %s refunded=%d", check_id, creator_id, refunded)
        return view

    def get_check(self, check_id: str) -> CheckView:
        with self.database.read_session() as session:
            row = session.get(GiftCheck, check_id)
            if row is None:
                raise CheckNotFound(f"Check not found: {check_id}")
            return _to_check_view(row)

    def get_check_by_code(self, code: str) -> CheckView:
        with self.database.read_session() as session:
            row = session.exec(
                select(GiftCheck).where(GiftCheck.code == normalize_code(code)),
            ).one_or_none()
            if row is None:
                raise CheckNotFound("Check not found.")
            return _to_check_view(row)

    def list_creator_checks(
        self,
        creator_id: str,
        *,
        active_only: bool = False,
        limit: int = 50,
    ) -> list[CheckView]:
        statement = select(GiftCheck).where(GiftCheck.creator_id == creator_id)
        if active_only:
            statement = statement.where(col(GiftCheck.is_active).is_(True))
        with self.database.read_session() as session:
            rows = session.exec(
                statement.order_by(col(GiftCheck.created_at).desc()).limit(limit),
            ).all()
        return [_to_check_view(row) for row in rows]

    def list_user_activations(self, user_id: str, *, limit: int = 50) -> list[ActivationView]:
        with self.database.read_session() as session:
            rows = session.exec(
                select(CheckActivation)
                .where(CheckActivation.user_id == user_id)
                .order_by(col(CheckActivation.activated_at).desc())
                .limit(limit),
            ).all()
        return [_to_activation_view(row) for row in rows]

    def _validate_check(
        self,
        payload: CheckCreate,
        *,
        now: datetime,
    ) -> tuple[CheckType, int, datetime]:
        try:
            check_type = CheckType(payload.check_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown check type: {payload.check_type!r}") from exc
        limits = self.settings.checks

        if check_type == CheckType.PERSONAL:
            max_activations = 1
        else:
            max_activations = payload.max_activations
            if not 1 <= max_activations <= limits.max_activations:
                raise ValidationError(
                    f"Activations must be between 1 and {limits.max_activations}.",
                )
        if not limits.min_amount <= payload.total_amount <= limits.max_amount:
            raise ValidationError(
                f"Check amount must be between {limits.min_amount} and {limits.max_amount} GRAM.",
            )
        if payload.total_amount < max_activations:
            raise ValidationError("Check amount must cover at least 1 GRAM per activation.")
        if payload.password is not None and not payload.password.strip():
            raise ValidationError("Check password must not be blank.")
        if payload.required_subscription and chat_ref_from_url(payload.required_subscription) is None:
            raise ValidationError(
                f"Required subscription must be a public chat link: {payload.required_subscription}",
            )

        expires_at = payload.expires_at or now + timedelta(seconds=limits.default_lifetime_seconds)
        if expires_at <= now:
            raise ValidationError("Check expiry must be in the future.")
        if expires_at > now + timedelta(seconds=limits.max_lifetime_seconds):
            raise ValidationError(
                f"Check lifetime must not exceed {limits.max_lifetime_seconds // 86400} days.",
            )
        return check_type, max_activations, expires_at

    def _required_subscription(self, code: str) -> str | None:
        with self.database.read_session() as session:
            row = session.exec(select(GiftCheck).where(GiftCheck.code == code)).one_or_none()
            if row is None:
                raise CheckNotFound("Check not found.")
            return row.required_subscription

    def _ensure_subscribed(self, user_id: str, target_ref: str) -> None:
        if self.verifier is None:
            raise ExternalVerifierError("No verifier is configured for subscription checks.")
        result = self.verifier.check_membership(user_id, target_ref)
        if result.outcome == VerifierOutcome.PASSED:
            return
        if result.outcome == VerifierOutcome.NOT_SATISFIED:
            raise SubscriptionRequired(f"Subscribe to {target_ref} to activate this check.")
        raise ExternalVerifierError(f"Could not verify subscription to {target_ref}.")

    def _refund_outstanding(self, unit: UnitOfWork, check: GiftCheck, *, reason: str) -> int:
        """Refund whatever a closed check still holds; returns the refund."""

        if check.is_active:
            return 0
        outstanding = (
            check.total_amount
            - check.current_activations * check.amount_per_activation
            - check.refunded_amount
        )
        if outstanding <= 0:
            return 0
        self.ledger.adjust(
            check.creator_id,
            outstanding,
            reason=LedgerReason.CHECK_REFUND,
            related_check_id=check.check_id,
            description=reason,
            uow=unit,
        )
        check.refunded_amount += outstanding
        unit.session.add(check)
        unit.session.flush()
        return outstanding


def _close(session: Session, check: GiftCheck, *, now: datetime) -> bool:
    """Compare-and-set ``is_active`` from true to false."""

    db_now = to_db_datetime(now)
    result = session.exec(
        sa_update(GiftCheck)
        .where(col(GiftCheck.check_id) == check.check_id, col(GiftCheck.is_active).is_(True))
        .values(is_active=False, closed_at=db_now, updated_at=db_now),
    )
    if result.rowcount != 1:
        return False
    session.refresh(check)
    return True


def _unused_code(session: Session) -> str:
    for _ in range(_CODE_ATTEMPTS):
        code = generate_code()
        taken = session.exec(select(GiftCheck.check_id).where(GiftCheck.code == code)).first()
        if taken is None:
            return code
    raise RuntimeError("Could not generate a unique check code.")


def _has_activated(session: Session, *, check_id: str, user_id: str) -> bool:
    prior = session.exec(
        select(CheckActivation.activation_id).where(
            CheckActivation.check_id == check_id,
            CheckActivation.user_id == user_id,
        ),
    ).first()
    return prior is not None


def _check_for_update(session: Session, check_id: str) -> GiftCheck:
    row = session.exec(
        select(GiftCheck).where(GiftCheck.check_id == check_id).with_for_update(),
    ).one_or_none()
    if row is None:
        raise CheckNotFound(f"Check not found: {check_id}")
    return row


def _check_by_code_for_update(session: Session, code: str) -> GiftCheck:
    row = session.exec(
        select(GiftCheck).where(GiftCheck.code == code).with_for_update(),
    ).one_or_none()
    if row is None:
        raise CheckNotFound("Check not found.")
    return row


def _to_check_view(row: GiftCheck) -> CheckView:
    return CheckView(
        check_id=row.check_id,
        creator_id=row.creator_id,
        code=row.code,
        check_type=CheckType(row.check_type),
        total_amount=row.total_amount,
        amount_per_activation=row.amount_per_activation,
        max_activations=row.max_activations,
        current_activations=row.current_activations,
        has_password=row.password_hash is not None,
        target_user_id=row.target_user_id,
        required_subscription=row.required_subscription,
        comment=row.comment,
        is_active=row.is_active,
        refunded_amount=row.refunded_amount,
        expires_at=to_utc_aware(row.expires_at),
        created_at=to_utc_aware(row.created_at),
        closed_at=to_utc_aware_or_none(row.closed_at),
    )


def _to_activation_view(row: CheckActivation) -> ActivationView:
    return ActivationView(
        activation_id=row.activation_id or 0,
        check_id=row.check_id,
        user_id=row.user_id,
        amount=row.amount,
        activated_at=to_utc_aware(row.activated_at),
    )
