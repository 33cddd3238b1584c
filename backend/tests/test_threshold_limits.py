"""
Tests for plans and per-plan threshold limits.
"""

import math
import uuid
from datetime import datetime, timedelta

import pytest

from billing.limits import ThresholdLimitService, UserNotFoundError
from billing.plans import FREE, PLANS, PRO, SubscriptionBillingStatus, get_plan_for_user
from db.models import User

NOW = datetime(2026, 3, 10, 12, 0)


def billing() -> SubscriptionBillingStatus:
    return SubscriptionBillingStatus(clock=lambda: NOW)


# ── Plans ──────────────────────────────────────────────────────────────


class TestPlans:
    def test_plan_table(self):
        assert PLANS["FREE"].max_thresholds == 50
        assert PLANS["PRO"].is_unlimited
        assert not FREE.is_unlimited

    def test_active_subscription_is_pro(self):
        user = User(subscription_status="active")
        assert get_plan_for_user(user, billing()) is PRO

    def test_cancelled_inside_paid_period_is_pro(self):
        user = User(subscription_status="cancelled", subscription_ends_at=NOW + timedelta(days=3))
        assert get_plan_for_user(user, billing()) is PRO

    def test_cancelled_after_paid_period_is_free(self):
        user = User(subscription_status="cancelled", subscription_ends_at=NOW - timedelta(seconds=1))
        assert get_plan_for_user(user, billing()) is FREE

    def test_past_due_is_free(self):
        user = User(subscription_status="past_due")
        assert get_plan_for_user(user, billing()) is FREE


# ── Limits ─────────────────────────────────────────────────────────────


@pytest.fixture
def limiter(user_repo, threshold_repo):
    return ThresholdLimitService(user_repo, threshold_repo, billing())


async def _add_many(add_threshold, user, count):
    base = datetime(2026, 1, 1)
    created = []
    for i in range(count):
        created.append(
            await add_threshold(user, bsale_variant_id=i + 1, min_quantity=1, created_at=base + timedelta(minutes=i))
        )
    return created


class TestThresholdLimitService:
    @pytest.mark.asyncio
    async def test_free_user_over_limit(self, limiter, add_threshold, user):
        created = await _add_many(add_threshold, user, 60)

        info = await limiter.get_user_limit_info(user.id)
        assert info.plan is FREE
        assert info.current_count == 60
        assert info.max_allowed == 50
        assert info.remaining == 0
        assert info.is_over_limit is True

        active = await limiter.get_active_threshold_ids(user.id)
        assert active == {t.id for t in created[:50]}
        assert await limiter.get_skipped_count(user.id) == 10

    @pytest.mark.asyncio
    async def test_free_user_under_limit(self, limiter, add_threshold, user):
        await _add_many(add_threshold, user, 3)

        info = await limiter.get_user_limit_info(user.id)
        assert info.remaining == 47
        assert info.is_over_limit is False
        assert await limiter.get_skipped_count(user.id) == 0

    @pytest.mark.asyncio
    async def test_exactly_at_limit_is_not_over(self, limiter, add_threshold, user):
        await _add_many(add_threshold, user, 50)

        info = await limiter.get_user_limit_info(user.id)
        assert info.remaining == 0
        assert info.is_over_limit is False

    @pytest.mark.asyncio
    async def test_pro_user_is_unlimited(self, limiter, add_user, add_threshold):
        pro = await add_user(subscription_status="active")
        await _add_many(add_threshold, pro, 60)

        info = await limiter.get_user_limit_info(pro.id)
        assert info.plan is PRO
        assert math.isinf(info.max_allowed)
        assert info.is_over_limit is False
        assert len(await limiter.get_active_threshold_ids(pro.id)) == 60
        assert await limiter.get_skipped_count(pro.id) == 0

    @pytest.mark.asyncio
    async def test_unknown_user(self, limiter):
        with pytest.raises(UserNotFoundError):
            await limiter.get_user_limit_info(uuid.uuid4())
