"""
Velocity Calculator — stock depletion rate and days-to-stockout.

Two estimators:
  - Snapshot velocity: earliest vs latest stock snapshot in a window.
    Drives the low_velocity alert check.
  - Consumption velocity: 7-day average of units sold from daily_consumption.
    Drives days-type thresholds (min_days).
"""

import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Sequence

from db.interfaces import DailyConsumptionRepository

FAST_SELLING_UNITS_PER_DAY = 10


@dataclass(frozen=True)
class VelocityResult:
    daily_velocity: float
    days_to_stockout: float | None
    trend: str  # stable | increasing | slow_selling | fast_selling
    data_points: int


@dataclass(frozen=True)
class VelocityAlertCheck:
    should_alert: bool
    reason: str | None
    days_to_stockout: float | None
    daily_velocity: float


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def classify_trend(daily_velocity: float) -> str:
    if daily_velocity <= 0:
        return "stable" if daily_velocity == 0 else "increasing"
    if daily_velocity > FAST_SELLING_UNITS_PER_DAY:
        return "fast_selling"
    return "slow_selling"


def calculate_velocity(snapshots: Sequence[Any]) -> VelocityResult:
    """
    Estimate daily depletion from snapshots of one (tenant, variant, office).

    Input order does not matter. Uses the earliest and latest snapshot as
    endpoints; positive velocity means stock is being sold down.
    """
    if len(snapshots) < 2:
        return VelocityResult(0.0, None, "stable", len(snapshots))

    ordered = sorted(snapshots, key=lambda s: _as_date(s.snapshot_date))
    earliest, latest = ordered[0], ordered[-1]
    days = (_as_date(latest.snapshot_date) - _as_date(earliest.snapshot_date)).days

    if days == 0:
        return VelocityResult(0.0, None, "stable", len(snapshots))

    raw_velocity = (earliest.quantity_available - latest.quantity_available) / days
    daily_velocity = round(raw_velocity, 2)

    days_to_stockout = None
    if raw_velocity > 0 and latest.quantity_available > 0:
        days_to_stockout = round(latest.quantity_available / raw_velocity, 1)

    return VelocityResult(
        daily_velocity=daily_velocity,
        days_to_stockout=days_to_stockout,
        trend=classify_trend(raw_velocity),
        data_points=len(snapshots),
    )


def check_velocity_alert(
    snapshots: Sequence[Any],
    days_warning: int | None,
    current_quantity: float,
) -> VelocityAlertCheck:
    """Decide whether a low_velocity alert should fire."""
    if not days_warning:
        return VelocityAlertCheck(False, "days_warning not configured", None, 0.0)

    # out_of_stock alerts cover this case
    if current_quantity <= 0:
        return VelocityAlertCheck(False, "Product already out of stock", 0.0, 0.0)

    velocity = calculate_velocity(snapshots)

    if velocity.data_points < 2:
        return VelocityAlertCheck(False, "Insufficient historical data (need at least 2 days)", None, 0.0)

    if velocity.daily_velocity <= 0:
        return VelocityAlertCheck(False, "Stock is stable or increasing", None, velocity.daily_velocity)

    if velocity.days_to_stockout is None:
        return VelocityAlertCheck(False, "Unable to calculate days to stockout", None, velocity.daily_velocity)

    if velocity.days_to_stockout < days_warning:
        return VelocityAlertCheck(
            True,
            f"Days to stockout ({velocity.days_to_stockout}) is below warning threshold ({days_warning})",
            velocity.days_to_stockout,
            velocity.daily_velocity,
        )

    return VelocityAlertCheck(False, None, velocity.days_to_stockout, velocity.daily_velocity)


# ── Consumption-based estimate ────────────────────────────────────────────


@dataclass(frozen=True)
class DaysLeftResult:
    days_left: float  # math.inf when nothing is selling
    avg_daily_consumption: float
    current_stock: float


class ConsumptionVelocity:
    """Days of stock left from the 7-day average of daily_consumption."""

    def __init__(self, consumption_repo: DailyConsumptionRepository):
        self.consumption_repo = consumption_repo

    async def calculate_days_left(
        self,
        tenant_id: uuid.UUID,
        variant_id: int,
        office_id: int | None,
        current_stock: float,
    ) -> DaysLeftResult:
        avg = await self.consumption_repo.get_7day_average(tenant_id, variant_id, office_id)
        days_left = math.floor(current_stock / avg) if avg > 0 else math.inf
        return DaysLeftResult(days_left=days_left, avg_daily_consumption=avg, current_stock=current_stock)

    async def is_below_days_threshold(
        self,
        tenant_id: uuid.UUID,
        variant_id: int,
        office_id: int | None,
        current_stock: float,
        min_days: int,
    ) -> bool:
        result = await self.calculate_days_left(tenant_id, variant_id, office_id, current_stock)
        return result.days_left < min_days

    async def get_velocity_info(
        self,
        tenant_id: uuid.UUID,
        variant_id: int,
        office_id: int | None,
        current_stock: float,
    ) -> dict[str, float]:
        result = await self.calculate_days_left(tenant_id, variant_id, office_id, current_stock)
        return {
            "days_left": result.days_left,
            "avg_daily_consumption": result.avg_daily_consumption,
            "weekly_consumption": result.avg_daily_consumption * 7,
        }
