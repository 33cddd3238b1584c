"""
Sync-and-alerts job.

One run:
  1. Sync stock for every eligible tenant
  2. For each tenant that synced successfully:
       a. generate alerts for its notification-enabled users
       b. fold completed days of sales not yet counted into daily_consumption
  3. Prune stock snapshots past the retention window

Each step logs and records its own failures; the job always returns a summary.
Invoked from cron / a container schedule via ``python -m workers.jobs``.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.engine import AlertEngineDeps, generate_alerts_for_tenant
from alerts.velocity import ConsumptionVelocity
from billing.limits import ThresholdLimitService
from billing.plans import SubscriptionBillingStatus
from core.config import Settings, get_settings
from core.logging import configure_logging
from core.security import TokenCipher
from db.interfaces import StockSnapshotRepository, UserRepository
from db.repositories import (
    SqlAlertRepository,
    SqlDailyConsumptionRepository,
    SqlStockSnapshotRepository,
    SqlTenantRepository,
    SqlThresholdRepository,
    SqlUserRepository,
)
from db.session import build_engine, build_sessionmaker
from integrations.base import InventoryClientFactory
from integrations.bsale import build_client_factory
from workers.consumption import ConsumptionSyncService
from workers.sync import SyncOptions, SyncProgress, SyncService, TenantSyncDependencies

logger = structlog.get_logger()


@dataclass
class JobComponents:
    sync_service: SyncService
    consumption_service: ConsumptionSyncService
    alert_deps: AlertEngineDeps
    user_repo: UserRepository
    snapshot_repo: StockSnapshotRepository
    consumption_days: int = 7
    retention_days: int = 90


@dataclass
class SyncJobResult:
    started_at: datetime
    completed_at: datetime | None = None
    sync: SyncProgress | None = None
    alerts_created: int = 0
    consumption_rows: int = 0
    snapshots_pruned: int = 0
    errors: list[str] = field(default_factory=list)


def build_components(
    settings: Settings,
    sessions: async_sessionmaker[AsyncSession],
    client_factory: InventoryClientFactory | None = None,
) -> JobComponents:
    """Wire SQL repositories, the Bsale client factory and the services."""
    cipher = TokenCipher.from_settings(settings)
    tenant_repo = SqlTenantRepository(sessions, cipher)
    user_repo = SqlUserRepository(sessions)
    snapshot_repo = SqlStockSnapshotRepository(sessions)
    consumption_repo = SqlDailyConsumptionRepository(sessions)
    threshold_repo = SqlThresholdRepository(sessions)
    client_factory = client_factory or build_client_factory(settings)

    return JobComponents(
        sync_service=SyncService(
            TenantSyncDependencies(tenant_repo, snapshot_repo, client_factory),
            SyncOptions.from_settings(settings),
        ),
        consumption_service=ConsumptionSyncService(consumption_repo, tenant_repo, client_factory),
        alert_deps=AlertEngineDeps(
            thresholds=threshold_repo,
            snapshots=snapshot_repo,
            alerts=SqlAlertRepository(sessions),
            limiter=ThresholdLimitService(user_repo, threshold_repo, SubscriptionBillingStatus()),
            consumption=ConsumptionVelocity(consumption_repo),
            history_days=settings.velocity_history_days,
        ),
        user_repo=user_repo,
        snapshot_repo=snapshot_repo,
        consumption_days=settings.consumption_sync_days,
        retention_days=settings.snapshot_retention_days,
    )


async def _post_sync_for_tenant(components: JobComponents, tenant_id: uuid.UUID, result: SyncJobResult) -> None:
    log = logger.bind(tenant_id=str(tenant_id))

    try:
        users = await components.user_repo.get_with_notifications_enabled(tenant_id)
        summary = await generate_alerts_for_tenant(tenant_id, users, components.alert_deps)
        result.alerts_created += summary.total_alerts_created
        result.errors.extend(f"alerts {tenant_id}: {e}" for e in summary.errors)
    except Exception as exc:  # noqa: BLE001
        result.errors.append(f"alerts {tenant_id}: {exc}")
        log.error("job.alerts_failed", error=str(exc))

    try:
        consumption = await components.consumption_service.sync_consumption(
            tenant_id, days=components.consumption_days
        )
        result.consumption_rows += consumption.variants_updated
    except Exception as exc:  # noqa: BLE001
        result.errors.append(f"consumption {tenant_id}: {exc}")
        log.error("job.consumption_failed", error=str(exc))


async def run_sync_and_alerts(components: JobComponents) -> SyncJobResult:
    result = SyncJobResult(started_at=datetime.utcnow())
    logger.info("job.started")

    try:
        result.sync = await components.sync_service.sync_all_tenants()
    except Exception as exc:  # noqa: BLE001
        result.errors.append(f"sync: {exc}")
        logger.error("job.sync_failed", error=str(exc))
    else:
        for tenant_result in result.sync.results:
            if tenant_result.success:
                await _post_sync_for_tenant(components, tenant_result.tenant_id, result)

    try:
        result.snapshots_pruned = await components.snapshot_repo.delete_older_than(components.retention_days)
    except Exception as exc:  # noqa: BLE001
        result.errors.append(f"retention: {exc}")
        logger.error("job.retention_failed", error=str(exc))

    result.completed_at = datetime.utcnow()
    logger.info(
        "job.completed",
        tenants_synced=result.sync.success_count if result.sync else 0,
        tenants_failed=result.sync.failure_count if result.sync else 0,
        alerts_created=result.alerts_created,
        consumption_rows=result.consumption_rows,
        snapshots_pruned=result.snapshots_pruned,
        errors=len(result.errors),
    )
    return result


async def _main(settings: Settings) -> SyncJobResult:
    engine = build_engine(settings)
    try:
        components = build_components(settings, build_sessionmaker(engine))
        return await run_sync_and_alerts(components)
    finally:
        await engine.dispose()


def main() -> int:
    settings = get_settings()
    configure_logging(settings)
    result = asyncio.run(_main(settings))
    return 1 if result.errors and result.sync is None else 0


if __name__ == "__main__":
    raise SystemExit(main())
