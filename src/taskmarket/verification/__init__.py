"""Durable auto-check queue, verifiers and the worker pool."""

from taskmarket.verification.models import JobStatus, VerifierOutcome, VerifierResult
from taskmarket.verification.policy import VerificationPolicy
from taskmarket.verification.repository import VerificationQueue
from taskmarket.verification.verifier import TelegramBotVerifier, Verifier

__all__ = [
    "JobStatus",
    "TelegramBotVerifier",
    "VerificationPolicy",
    "VerificationQueue",
    "Verifier",
    "VerifierOutcome",
    "VerifierResult",
]
