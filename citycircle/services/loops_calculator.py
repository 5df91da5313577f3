"""
Loops earned for a visit.

loops = round((amount_cents // 100 + 10) * plan multiplier * tier multiplier)

The purchase amount for a check-in is not known yet, so it is estimated from
the customer's average purchase at the store, then the store's average, then
DEFAULT_PURCHASE_CENTS.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from .collaborators import BalanceLedger, CustomerProfile, TransactionLog

logger = logging.getLogger(__name__)

BASE_VISIT_LOOPS = 10
DEFAULT_PURCHASE_CENTS = 1000

PLAN_MULTIPLIERS = {
    "BASIC": 1.05,
    "PLUS": 1.1,
    "PREMIUM": 1.2,
}

# (minimum total_loops_earned, multiplier), highest first
TIER_MULTIPLIERS = (
    (1000, 1.2),
    (500, 1.1),
    (200, 1.05),
)


def plan_multiplier(plan: Optional[str]) -> float:
    if not plan:
        return 1.0
    return PLAN_MULTIPLIERS.get(plan.upper(), 1.0)


def tier_multiplier(total_loops_earned: int) -> float:
    for threshold, multiplier in TIER_MULTIPLIERS:
        if (total_loops_earned or 0) >= threshold:
            return multiplier
    return 1.0


def calculate_loops(amount_cents: int, profile: Optional[CustomerProfile] = None) -> int:
    profile = profile or CustomerProfile()
    base = max(0, amount_cents) // 100 + BASE_VISIT_LOOPS
    return int(round(base * plan_multiplier(profile.plan) * tier_multiplier(profile.total_loops_earned)))


def estimate_purchase_cents(db: Session, transactions: TransactionLog, user_id: int, store_id: int) -> int:
    amount = transactions.average_purchase_cents(db, user_id, store_id)
    if amount:
        return amount
    amount = transactions.store_average_purchase_cents(db, store_id)
    if amount:
        return amount
    return DEFAULT_PURCHASE_CENTS


def loops_for_checkin(
    db: Session,
    balance: BalanceLedger,
    transactions: TransactionLog,
    user_id: int,
    store_id: int,
) -> int:
    """Pending Loops to grant when a customer checks in at a store."""
    amount_cents = estimate_purchase_cents(db, transactions, user_id, store_id)
    profile = balance.get_profile(db, user_id)
    loops = calculate_loops(amount_cents, profile)
    logger.debug(
        f"Loops for user {user_id} at store {store_id}: {loops} "
        f"(estimated {amount_cents} cents, plan {profile.plan}, earned {profile.total_loops_earned})"
    )
    return max(1, loops)
