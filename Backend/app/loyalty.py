"""
Loyalty points.

Clients earn floor(amount x earn_rate) points per paid visit. Points can be
spent as a discount (100 points = 10 currency units by default) or on
catalogue rewards with a fixed points price.
"""

import logging
import math
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from .booking_lifecycle import BookingError
from .core.config import get_settings
from .models import LoyaltyReward, Profile
from .tenancy.queries import scoped_select

logger = logging.getLogger(__name__)


class LoyaltyError(BookingError):
    status_code = 400
    code = "LOYALTY_ERROR"


@dataclass(frozen=True)
class RewardOption:
    id: int
    name: str
    description: Optional[str]
    points_required: int
    can_redeem: bool
    points_needed: int


@dataclass(frozen=True)
class LoyaltyStatus:
    points: int
    discount_value: Decimal
    rewards: list[RewardOption]
    next_reward: Optional[RewardOption]
    progress_to_next_reward: int


# ────────────────────────────────────────────────────────────────
# Arithmetic
# ────────────────────────────────────────────────────────────────

def _to_decimal(amount) -> Decimal:
    return amount if isinstance(amount, Decimal) else Decimal(str(amount))


def points_for_amount(amount, rate: Optional[float] = None) -> int:
    """Points earned for a payment: floor(amount x rate), never negative."""
    if rate is None:
        rate = get_settings().loyalty_earn_rate
    value = _to_decimal(amount) * _to_decimal(rate)
    return max(0, int(value.to_integral_value(rounding=ROUND_FLOOR)))


def points_discount(points: int, points_per_unit: Optional[int] = None) -> Decimal:
    """Currency value of a points balance (100 pts -> 10.00 by default)."""
    if points_per_unit is None:
        points_per_unit = get_settings().points_per_currency_unit
    return (Decimal(points) / Decimal(points_per_unit)).quantize(Decimal("0.01"))


def max_redeemable_points(balance: int, total, points_per_unit: Optional[int] = None) -> int:
    """Largest redemption allowed: the whole balance, capped at the bill's value."""
    if points_per_unit is None:
        points_per_unit = get_settings().points_per_currency_unit
    cap = int((_to_decimal(total) * points_per_unit).to_integral_value(rounding=ROUND_FLOOR))
    return max(0, min(balance, cap))


def validate_redemption(balance: int, points: int, total) -> None:
    if points < 0:
        raise LoyaltyError("Points to redeem cannot be negative.")
    if points > balance:
        raise LoyaltyError(
            "Not enough points.",
            details={"balance": balance, "requested": points},
        )
    limit = max_redeemable_points(balance, total)
    if points > limit:
        raise LoyaltyError(
            "Redemption exceeds the bill amount.",
            details={"max_redeemable": limit, "requested": points},
        )


def available_rewards(rewards: Iterable[LoyaltyReward], balance: int) -> list[RewardOption]:
    options = [
        RewardOption(
            id=r.id,
            name=r.name,
            description=r.description,
            points_required=r.points_required,
            can_redeem=balance >= r.points_required,
            points_needed=max(0, r.points_required - balance),
        )
        for r in rewards
        if r.is_active
    ]
    return sorted(options, key=lambda o: o.points_required)


def next_reward(options: Sequence[RewardOption]) -> Optional[RewardOption]:
    """Cheapest reward the client cannot afford yet."""
    for option in options:
        if not option.can_redeem:
            return option
    return None


def progress_to_next_reward(balance: int, target: Optional[RewardOption]) -> int:
    if target is None:
        return 100
    if target.points_required <= 0:
        return 100
    return max(0, min(100, math.floor(balance * 100 / target.points_required)))


# ────────────────────────────────────────────────────────────────
# Database
# ────────────────────────────────────────────────────────────────

async def get_loyalty_status(session: AsyncSession, tenant_id: int, customer: Profile) -> LoyaltyStatus:
    result = await session.execute(
        scoped_select(LoyaltyReward, tenant_id).where(LoyaltyReward.is_active.is_(True))
    )
    options = available_rewards(result.scalars().all(), customer.loyalty_points)
    upcoming = next_reward(options)
    return LoyaltyStatus(
        points=customer.loyalty_points,
        discount_value=points_discount(customer.loyalty_points),
        rewards=options,
        next_reward=upcoming,
        progress_to_next_reward=progress_to_next_reward(customer.loyalty_points, upcoming),
    )


def credit_points(profile: Profile, points: int) -> None:
    if points <= 0:
        return
    profile.loyalty_points = (profile.loyalty_points or 0) + points
    logger.info(f"Credited {points} points to profile {profile.id} (balance={profile.loyalty_points})")


def debit_points(profile: Profile, points: int) -> None:
    if points <= 0:
        return
    if points > (profile.loyalty_points or 0):
        raise LoyaltyError(
            "Not enough points.",
            details={"balance": profile.loyalty_points, "requested": points},
        )
    profile.loyalty_points -= points
