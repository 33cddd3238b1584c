"""
Alert Engine — threshold evaluation, deduplication, and alert creation.

Threshold types:
  - quantity: min_quantity units, plus an optional days_warning checked
              against the stock-snapshot velocity
  - days:     min_days of stock left, estimated from the 7-day average of
              daily_consumption

Alert Types:
  - out_of_stock: available quantity is zero (any threshold type)
  - low_stock:    available quantity below a quantity threshold's min_quantity
  - low_velocity: projected days to stockout below days_warning (quantity
                  thresholds) or min_days (days thresholds)

Per threshold exactly one candidate is considered, in that priority order.
A candidate is dropped when a pending alert with the same
(user, variant, office, alert_type) already exists, so repeated runs over an
unchanged stock state never stack duplicates.
"""

import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from alerts.velocity import ConsumptionVelocity, check_velocity_alert
from billing.limits import ThresholdLimitService
from db.interfaces import AlertInput, AlertRepository, StockSnapshotRepository, ThresholdRepository
from db.models import StockSnapshot, Threshold, User

logger = structlog.get_logger()

VELOCITY_HISTORY_DAYS = 7


@dataclass
class AlertEngineDeps:
    thresholds: ThresholdRepository
    snapshots: StockSnapshotRepository
    alerts: AlertRepository
    limiter: ThresholdLimitService
    consumption: ConsumptionVelocity | None = None
    history_days: int = VELOCITY_HISTORY_DAYS


@dataclass
class AlertGenerationResult:
    user_id: uuid.UUID
    thresholds_checked: int = 0
    alerts_created: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class TenantAlertSummary:
    tenant_id: uuid.UUID
    total_alerts_created: int = 0
    results: list[AlertGenerationResult] = field(default_factory=list)

    @property
    def errors(self) -> list[str]:
        return [f"user {r.user_id}: {e}" for r in self.results for e in r.errors]


# ──────────────────────────────────────────────────────────────────────────
# Detection Rules
# ──────────────────────────────────────────────────────────────────────────


def _alert_input(
    threshold: Threshold,
    snapshot: StockSnapshot,
    alert_type: str,
    *,
    threshold_quantity: float | None = None,
    days_to_stockout: float | None = None,
) -> AlertInput:
    return AlertInput(
        tenant_id=threshold.tenant_id,
        user_id=threshold.user_id,
        bsale_variant_id=snapshot.bsale_variant_id,
        bsale_office_id=snapshot.bsale_office_id,
        alert_type=alert_type,
        current_quantity=snapshot.quantity_available,
        threshold_quantity=threshold_quantity,
        days_to_stockout=days_to_stockout,
        sku=snapshot.sku,
        product_name=snapshot.product_name,
    )


def evaluate_threshold(
    threshold: Threshold,
    snapshot: StockSnapshot,
    history: Sequence[Any] = (),
) -> AlertInput | None:
    """
    Return the alert this snapshot warrants under ``threshold``, if any.

    Days thresholds only get the out_of_stock check here; their days-left
    check needs consumption data (see ``evaluate_days_threshold``).
    """
    current = snapshot.quantity_available

    if current <= 0:
        return _alert_input(threshold, snapshot, "out_of_stock", threshold_quantity=threshold.min_quantity)

    if threshold.threshold_type == "days":
        return None

    if current < threshold.min_quantity:
        return _alert_input(threshold, snapshot, "low_stock", threshold_quantity=threshold.min_quantity)

    if threshold.days_warning:
        check = check_velocity_alert(history, threshold.days_warning, current)
        if check.should_alert:
            return _alert_input(threshold, snapshot, "low_velocity", days_to_stockout=check.days_to_stockout)

    return None


async def evaluate_days_threshold(
    threshold: Threshold,
    snapshot: StockSnapshot,
    consumption: ConsumptionVelocity | None,
) -> AlertInput | None:
    """low_velocity when consumption-based days left fall below ``min_days``."""
    if consumption is None or not threshold.min_days or snapshot.quantity_available <= 0:
        return None
    days = await consumption.calculate_days_left(
        snapshot.tenant_id,
        snapshot.bsale_variant_id,
        snapshot.bsale_office_id,
        snapshot.quantity_available,
    )
    if days.days_left < threshold.min_days:
        return _alert_input(threshold, snapshot, "low_velocity", days_to_stockout=float(days.days_left))
    return None


# ──────────────────────────────────────────────────────────────────────────
# Threshold → snapshot resolution
# ──────────────────────────────────────────────────────────────────────────


async def _resolve_snapshots(
    deps: AlertEngineDeps,
    tenant_id: uuid.UUID,
    threshold: Threshold,
    variants_with_own_threshold: set[int],
    latest_for_tenant: Callable[[], Awaitable[list[StockSnapshot]]],
) -> list[StockSnapshot]:
    if threshold.bsale_variant_id is not None:
        snapshot = await deps.snapshots.get_by_variant(tenant_id, threshold.bsale_variant_id, threshold.bsale_office_id)
        return [snapshot] if snapshot is not None else []

    # Default threshold: every variant without a specific threshold of its own
    return [
        s
        for s in await latest_for_tenant()
        if s.bsale_variant_id not in variants_with_own_threshold
        and (threshold.bsale_office_id is None or s.bsale_office_id == threshold.bsale_office_id)
    ]


# ──────────────────────────────────────────────────────────────────────────
# Master Alert Pipeline
# ──────────────────────────────────────────────────────────────────────────


async def generate_alerts_for_user(
    user_id: uuid.UUID,
    tenant_id: uuid.UUID,
    deps: AlertEngineDeps,
) -> AlertGenerationResult:
    """
    Full alert pipeline for one user in one tenant:
    1. Load thresholds, keep the plan's active set
    2. Evaluate each against its snapshot(s)
    3. Deduplicate against pending alerts
    4. Persist
    """
    result = AlertGenerationResult(user_id=user_id)
    log = logger.bind(user_id=str(user_id), tenant_id=str(tenant_id))

    try:
        all_thresholds = await deps.thresholds.get_by_user(user_id, tenant_id)
        active_ids = await deps.limiter.get_active_threshold_ids(user_id)
    except Exception as exc:  # noqa: BLE001
        result.errors.append(f"Failed to get thresholds: {exc}")
        log.error("alerts.thresholds_failed", error=str(exc))
        return result

    thresholds = [t for t in all_thresholds if t.id in active_ids]
    variants_with_own_threshold = {t.bsale_variant_id for t in all_thresholds if t.bsale_variant_id is not None}

    latest_cache: list[StockSnapshot] | None = None

    async def latest_for_tenant() -> list[StockSnapshot]:
        nonlocal latest_cache
        if latest_cache is None:
            latest_cache = await deps.snapshots.get_latest_by_tenant(tenant_id)
        return latest_cache

    to_create: list[AlertInput] = []
    seen: set[tuple] = set()

    for threshold in thresholds:
        result.thresholds_checked += 1
        try:
            snapshots = await _resolve_snapshots(
                deps, tenant_id, threshold, variants_with_own_threshold, latest_for_tenant
            )
            is_days = threshold.threshold_type == "days"
            for snapshot in snapshots:
                history: list[StockSnapshot] = []
                if not is_days and threshold.days_warning and snapshot.quantity_available > 0:
                    history = await deps.snapshots.get_historical_snapshots(
                        tenant_id, snapshot.bsale_variant_id, snapshot.bsale_office_id, deps.history_days
                    )

                candidate = evaluate_threshold(threshold, snapshot, history)
                if candidate is None and is_days:
                    candidate = await evaluate_days_threshold(threshold, snapshot, deps.consumption)
                if candidate is None or candidate.dedup_key in seen:
                    continue

                seen.add(candidate.dedup_key)
                if await deps.alerts.has_pending_alert(
                    candidate.user_id,
                    candidate.bsale_variant_id,
                    candidate.bsale_office_id,
                    candidate.alert_type,
                ):
                    continue
                to_create.append(candidate)
        except Exception as exc:  # noqa: BLE001
            result.errors.append(f"Failed to check threshold {threshold.id}: {exc}")
            log.warning("alerts.threshold_failed", threshold_id=str(threshold.id), error=str(exc))

    if to_create:
        try:
            result.alerts_created = await deps.alerts.create_batch(to_create)
        except Exception as exc:  # noqa: BLE001
            result.errors.append(f"Failed to create alerts: {exc}")
            log.error("alerts.create_failed", count=len(to_create), error=str(exc))

    log.info(
        "alerts.user_complete",
        thresholds_checked=result.thresholds_checked,
        alerts_created=result.alerts_created,
        errors=len(result.errors),
    )
    return result


async def generate_alerts_for_tenant(
    tenant_id: uuid.UUID,
    users: Sequence[User],
    deps: AlertEngineDeps,
) -> TenantAlertSummary:
    """Run the pipeline for every user; one user's failure never stops the rest."""
    summary = TenantAlertSummary(tenant_id=tenant_id)
    for user in users:
        try:
            user_result = await generate_alerts_for_user(user.id, tenant_id, deps)
        except Exception as exc:  # noqa: BLE001
            user_result = AlertGenerationResult(user_id=user.id, errors=[str(exc)])
            logger.error("alerts.user_failed", user_id=str(user.id), tenant_id=str(tenant_id), error=str(exc))
        summary.results.append(user_result)
        summary.total_alerts_created += user_result.alerts_created
    return summary
