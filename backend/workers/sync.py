"""
Data Sync Workers — Bsale stock synchronization.

Per tenant:
  1. Mark the tenant ``syncing`` before any API call
  2. Stream every stock item, in batches
  3. Enrich each batch with variant details (sku, barcode, name, price)
  4. Upsert today's snapshots; batches already written survive a later failure
  5. Mark ``success`` with last_sync_at, or ``pending`` / ``failed`` by error kind

Tenants are synced one after another with a fixed pause in between.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from core.config import Settings, get_settings
from core.errors import ErrorKind, classify_error, is_retryable_later
from db.interfaces import StockSnapshotInput, StockSnapshotRepository, TenantRepository
from db.models import Tenant
from integrations.base import InventoryClient, InventoryClientFactory
from integrations.schemas import StockItem, Variant

logger = structlog.get_logger()


@dataclass
class SyncOptions:
    batch_size: int = 100
    delay_between_tenants: float = 5.0  # seconds
    price_list_id: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SyncOptions":
        settings = settings or get_settings()
        return cls(
            batch_size=settings.sync_batch_size,
            delay_between_tenants=settings.sync_tenant_delay_ms / 1000,
            price_list_id=settings.bsale_price_list_id,
        )


@dataclass
class TenantSyncDependencies:
    tenant_repo: TenantRepository
    snapshot_repo: StockSnapshotRepository
    client_factory: InventoryClientFactory


@dataclass
class TenantSyncResult:
    tenant_id: uuid.UUID
    success: bool
    items_synced: int
    started_at: datetime
    completed_at: datetime
    error: str | None = None
    error_kind: ErrorKind | None = None


@dataclass
class SyncProgress:
    total_tenants: int = 0
    completed_tenants: int = 0
    success_count: int = 0
    failure_count: int = 0
    results: list[TenantSyncResult] = field(default_factory=list)


def status_for_error(kind: ErrorKind) -> str:
    """Rate limits and transient faults are retried on the next run."""
    return "pending" if is_retryable_later(kind) else "failed"


# ──────────────────────────────────────────────────────────────────────────
# Enrichment
# ──────────────────────────────────────────────────────────────────────────


class VariantCache:
    """Variant details fetched during one tenant sync, by variant id."""

    def __init__(self, client: InventoryClient):
        self._client = client
        self._variants: dict[int, Variant] = {}
        self._attempted: set[int] = set()

    async def fetch_missing(self, variant_ids: list[int]) -> None:
        missing = [vid for vid in dict.fromkeys(variant_ids) if vid not in self._attempted]
        if not missing:
            return
        self._attempted.update(missing)
        self._variants.update(await self._client.get_variants_batch(missing))

    def get(self, variant_id: int) -> Variant | None:
        return self._variants.get(variant_id)


def build_snapshot(
    tenant_id: uuid.UUID,
    item: StockItem,
    variant: Variant | None,
    price_map: dict[int, float],
    snapshot_date,
) -> StockSnapshotInput:
    variant_id = item.variant.id
    unit_price = price_map.get(variant_id)
    if unit_price is None and variant is not None:
        unit_price = variant.final_price

    return StockSnapshotInput(
        tenant_id=tenant_id,
        bsale_variant_id=variant_id,
        bsale_office_id=item.office.id if item.office is not None else None,
        quantity=item.quantity,
        quantity_reserved=item.quantity_reserved,
        quantity_available=item.quantity_available,
        snapshot_date=snapshot_date,
        sku=variant.code if variant else None,
        barcode=variant.bar_code if variant else None,
        product_name=variant.display_name if variant else None,
        unit_price=unit_price,
    )


# ──────────────────────────────────────────────────────────────────────────
# Tenant sync
# ──────────────────────────────────────────────────────────────────────────


async def _flush(
    tenant: Tenant,
    batch: list[StockItem],
    cache: VariantCache,
    price_map: dict[int, float],
    deps: TenantSyncDependencies,
    snapshot_date,
) -> int:
    await cache.fetch_missing([item.variant.id for item in batch])
    snapshots = [build_snapshot(tenant.id, item, cache.get(item.variant.id), price_map, snapshot_date) for item in batch]
    return await deps.snapshot_repo.upsert_batch(snapshots)


async def sync_tenant(
    tenant: Tenant,
    deps: TenantSyncDependencies,
    options: SyncOptions | None = None,
) -> TenantSyncResult:
    """
    Sync one tenant's stock into today's snapshots.

    Never raises for API or storage failures: they are classified and
    recorded on the tenant's sync_status and in the returned result.
    """
    options = options or SyncOptions()
    started_at = datetime.utcnow()
    snapshot_date = datetime.now(timezone.utc).date()
    log = logger.bind(tenant_id=str(tenant.id), client_code=tenant.bsale_client_code)
    items_synced = 0
    client: InventoryClient | None = None

    try:
        await deps.tenant_repo.update_sync_status(tenant.id, "syncing")
        log.info("sync.tenant.started")

        client = deps.client_factory(tenant.bsale_access_token)
        price_map: dict[int, float] = {}
        if options.price_list_id is not None:
            price_map = await client.get_price_map(options.price_list_id)

        cache = VariantCache(client)
        batch: list[StockItem] = []
        async for item in client.get_all_stocks():
            batch.append(item)
            if len(batch) >= options.batch_size:
                items_synced += await _flush(tenant, batch, cache, price_map, deps, snapshot_date)
                log.debug("sync.tenant.batch_written", items_synced=items_synced)
                batch = []

        if batch:
            items_synced += await _flush(tenant, batch, cache, price_map, deps, snapshot_date)

        completed_at = datetime.utcnow()
        await deps.tenant_repo.update_sync_status(tenant.id, "success", completed_at)
        log.info(
            "sync.tenant.completed",
            items_synced=items_synced,
            duration_s=round((completed_at - started_at).total_seconds(), 2),
        )
        return TenantSyncResult(
            tenant_id=tenant.id,
            success=True,
            items_synced=items_synced,
            started_at=started_at,
            completed_at=completed_at,
        )

    except Exception as exc:  # noqa: BLE001
        kind = classify_error(exc)
        status = status_for_error(kind)
        log.error(
            "sync.tenant.failed",
            kind=kind.value,
            status=status,
            items_synced=items_synced,
            error=str(exc),
        )
        try:
            await deps.tenant_repo.update_sync_status(tenant.id, status)
        except Exception as status_exc:  # noqa: BLE001
            log.error("sync.tenant.status_update_failed", status=status, error=str(status_exc))

        return TenantSyncResult(
            tenant_id=tenant.id,
            success=False,
            items_synced=items_synced,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            error=str(exc) or exc.__class__.__name__,
            error_kind=kind,
        )

    finally:
        if client is not None:
            await client.aclose()


# ──────────────────────────────────────────────────────────────────────────
# All tenants
# ──────────────────────────────────────────────────────────────────────────


class SyncService:
    """Sequential sync over every tenant eligible for syncing."""

    def __init__(self, deps: TenantSyncDependencies, options: SyncOptions | None = None):
        self.deps = deps
        self.options = options or SyncOptions()

    async def sync_all_tenants(self) -> SyncProgress:
        tenants = await self.deps.tenant_repo.get_active_tenants()
        progress = SyncProgress(total_tenants=len(tenants))
        logger.info("sync.all.started", total_tenants=len(tenants))

        for index, tenant in enumerate(tenants):
            result = await sync_tenant(tenant, self.deps, self.options)
            progress.results.append(result)
            progress.completed_tenants += 1
            if result.success:
                progress.success_count += 1
            else:
                progress.failure_count += 1

            if index < len(tenants) - 1 and self.options.delay_between_tenants > 0:
                await asyncio.sleep(self.options.delay_between_tenants)

        logger.info(
            "sync.all.completed",
            total_tenants=progress.total_tenants,
            success_count=progress.success_count,
            failure_count=progress.failure_count,
        )
        return progress

    async def sync_tenant_by_id(self, tenant_id: uuid.UUID) -> TenantSyncResult | None:
        """Manual single-tenant sync; None when the tenant does not exist or has no Bsale token."""
        tenant = await self.deps.tenant_repo.get_by_id(tenant_id)
        if tenant is None:
            logger.warning("sync.tenant.not_found", tenant_id=str(tenant_id))
            return None
        if not tenant.bsale_access_token:
            logger.warning("sync.tenant.not_connected", tenant_id=str(tenant_id))
            return None
        return await sync_tenant(tenant, self.deps, self.options)
