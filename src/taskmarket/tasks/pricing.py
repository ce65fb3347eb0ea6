"""Task cost, priority and per-user reward rules."""

from __future__ import annotations

from decimal import ROUND_CEILING, Decimal

from taskmarket.config import TierSettings
from taskmarket.tasks.models import CostBreakdown

PROMOTION_PRIORITY_BOOST = 10


def compute_cost(
    *,
    reward: int,
    total_executions: int,
    commission_rate: float,
    promotion_fee: int,
    promoted: bool,
) -> CostBreakdown:
    """Rewards plus commission rounded up to a whole unit, plus the optional promotion fee."""

    rewards_cost = reward * total_executions
    commission = int(
        (Decimal(rewards_cost) * Decimal(str(commission_rate))).to_integral_value(
            rounding=ROUND_CEILING,
        ),
    )
    fee = promotion_fee if promoted else 0
    return CostBreakdown(
        rewards_cost=rewards_cost,
        commission=commission,
        promotion_fee=fee,
        total_cost=rewards_cost + commission + fee,
    )


def task_priority(tier: TierSettings, *, promoted: bool) -> int:
    return tier.rank + PROMOTION_PRIORITY_BOOST if promoted else tier.rank


def reward_for(base_reward: int, *, executor_tier: str) -> int:  # noqa: ARG001
    """Reward paid to one executor.

    Every tier currently earns the base reward; ``executor_tier`` is where a
    per-tier multiplier would plug in.
    """

    return base_reward
