"""
Subscription plans and the "is this user PRO" predicate.

The billing provider integration (checkout, webhooks, subscription refresh)
lives outside this service. Here we only read the subscription fields it
maintains on the users table.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from db.models import User


@dataclass(frozen=True)
class Plan:
    name: str
    max_thresholds: float  # math.inf for unlimited

    @property
    def is_unlimited(self) -> bool:
        return math.isinf(self.max_thresholds)


FREE = Plan(name="FREE", max_thresholds=50)
PRO = Plan(name="PRO", max_thresholds=math.inf)
PLANS = {"FREE": FREE, "PRO": PRO}


class BillingStatus(Protocol):
    def is_pro(self, user: User) -> bool: ...


class SubscriptionBillingStatus:
    """
    PRO when the subscription is active, or cancelled but still inside the
    paid period (``subscription_ends_at`` in the future).
    """

    def __init__(self, clock=datetime.utcnow):
        self._clock = clock

    def is_pro(self, user: User) -> bool:
        if user.subscription_status == "active":
            return True
        if user.subscription_status == "cancelled" and user.subscription_ends_at is not None:
            return user.subscription_ends_at > self._clock()
        return False


def get_plan_for_user(user: User, billing: BillingStatus) -> Plan:
    return PRO if billing.is_pro(user) else FREE
