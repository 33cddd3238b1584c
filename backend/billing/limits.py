"""
Threshold limits per plan.

FREE users may keep more thresholds than their plan allows (e.g. after a
downgrade), but only the first ``max_thresholds`` by creation order are
"active" and evaluated by the alert engine. The rest are "skipped"; the
digest email uses the skipped count for upsell messaging.
"""

import math
import uuid
from dataclasses import dataclass

from billing.plans import BillingStatus, Plan, get_plan_for_user
from db.interfaces import ThresholdRepository, UserRepository
from db.models import User


class UserNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class LimitInfo:
    plan: Plan
    current_count: int
    max_allowed: float
    remaining: float
    is_over_limit: bool


class ThresholdLimitService:
    def __init__(
        self,
        user_repo: UserRepository,
        threshold_repo: ThresholdRepository,
        billing: BillingStatus,
    ):
        self.user_repo = user_repo
        self.threshold_repo = threshold_repo
        self.billing = billing

    async def _plan_for(self, user_id: uuid.UUID) -> Plan:
        user: User | None = await self.user_repo.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError(f"User not found: {user_id}")
        return get_plan_for_user(user, self.billing)

    async def get_user_limit_info(self, user_id: uuid.UUID) -> LimitInfo:
        plan = await self._plan_for(user_id)
        current = await self.threshold_repo.count_by_user(user_id)
        if plan.is_unlimited:
            return LimitInfo(plan, current, math.inf, math.inf, False)

        is_over = current > plan.max_thresholds
        remaining = 0 if current >= plan.max_thresholds else int(plan.max_thresholds) - current
        return LimitInfo(plan, current, int(plan.max_thresholds), remaining, is_over)

    async def get_active_threshold_ids(self, user_id: uuid.UUID) -> set[uuid.UUID]:
        """Ids the alert engine may evaluate for this user."""
        plan = await self._plan_for(user_id)
        limit = None if plan.is_unlimited else int(plan.max_thresholds)
        thresholds = await self.threshold_repo.get_active_for_user(user_id, limit)
        return {t.id for t in thresholds}

    async def get_skipped_count(self, user_id: uuid.UUID) -> int:
        plan = await self._plan_for(user_id)
        if plan.is_unlimited:
            return 0
        skipped = await self.threshold_repo.get_skipped_for_user(user_id, int(plan.max_thresholds))
        return len(skipped)
