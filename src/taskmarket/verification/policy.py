"""Per check-type verification policy."""

from __future__ import annotations

from dataclasses import dataclass, field

from taskmarket.config import CheckTypePolicy, VerificationSettings
from taskmarket.verification.models import Decision, VerifierOutcome

MANUAL_POLICY = CheckTypePolicy(mode="manual", on_exhausted="review")


@dataclass(slots=True)
class VerificationPolicy:
    """Decides how submissions are checked and what a failed check leads to.

    ``verify`` asks the external verifier, ``optimistic`` treats the condition
    as met without asking, ``manual`` sends the submission straight to the
    task author. Once ``max_attempts`` definite failures are seen the
    ``on_exhausted`` action applies; errors and undetermined lookups always
    end in review so the executor is never punished for an outage.
    """

    max_attempts: int = 3
    policies: dict[str, CheckTypePolicy] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: VerificationSettings) -> VerificationPolicy:
        return cls(max_attempts=settings.max_attempts, policies=dict(settings.policies))

    def for_check_type(self, check_type: str | None) -> CheckTypePolicy:
        if check_type is None:
            return MANUAL_POLICY
        return self.policies.get(check_type, MANUAL_POLICY)

    def requires_manual_review(self, check_type: str | None) -> bool:
        return self.for_check_type(check_type).mode == "manual"

    def is_optimistic(self, check_type: str | None) -> bool:
        return self.for_check_type(check_type).mode == "optimistic"

    def decide(self, *, check_type: str, outcome: VerifierOutcome, attempts: int) -> Decision:
        if outcome == VerifierOutcome.PASSED:
            return Decision.APPROVE
        if attempts < self.max_attempts:
            return Decision.RETRY
        if (
            outcome == VerifierOutcome.NOT_SATISFIED
            and self.for_check_type(check_type).on_exhausted == "reject"
        ):
            return Decision.REJECT
        return Decision.ESCALATE
