"""Error taxonomy shared by the ledger, the engines and the verification pipeline."""

from __future__ import annotations


class MarketError(Exception):
    """Base class for all business failures surfaced to callers."""

    code = "market_error"


class ValidationError(MarketError):
    """Bad input; never retried."""

    code = "validation_error"


class InsufficientFunds(MarketError):
    """A balance or frozen balance would go negative."""

    code = "insufficient_funds"


InsufficientBalance = InsufficientFunds


class NotFound(MarketError):
    code = "not_found"


class AccountNotFound(NotFound):
    code = "account_not_found"


class TaskNotFound(NotFound):
    code = "task_not_found"


class ExecutionNotFound(NotFound):
    code = "execution_not_found"


class CheckNotFound(NotFound):
    code = "check_not_found"


class Conflict(MarketError):
    """Idempotence guard: the requested effect has already happened."""

    code = "conflict"
    already_done = True


class AlreadyActivated(Conflict):
    code = "already_activated"


class AlreadyProcessed(Conflict):
    code = "already_processed"


class AlreadyExecuted(Conflict):
    code = "already_executed"


class NoActivationsRemaining(Conflict):
    code = "no_activations_remaining"


class Rejected(MarketError):
    """Business rule refused the operation in the entity's current state."""

    code = "rejected"


class TaskNotAvailable(Rejected):
    code = "task_not_available"


class NotEligible(Rejected):
    code = "not_eligible"


class QuotaExceeded(Rejected):
    code = "quota_exceeded"


class CheckInactive(Rejected):
    code = "check_inactive"


class CheckExpired(Rejected):
    code = "check_expired"


class NotForYou(Rejected):
    code = "not_for_you"


class InvalidPassword(Rejected):
    code = "invalid_password"


class SubscriptionRequired(Rejected):
    code = "subscription_required"


class ExternalVerifierError(MarketError):
    """The verifier could not determine the outcome (timeout, transport, API error)."""

    code = "external_verifier_error"
