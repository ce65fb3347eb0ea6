"""Gift checks redeemable at most once per user."""

from taskmarket.checks.engine import CheckEngine
from taskmarket.checks.models import ActivationView, CheckCreate, CheckType, CheckView

__all__ = ["ActivationView", "CheckCreate", "CheckEngine", "CheckType", "CheckView"]
