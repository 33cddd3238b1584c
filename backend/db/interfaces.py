"""
Repository contracts used by the sync-and-alert core.

The workers and the alert engine only ever talk to these protocols; the
SQLAlchemy implementations live in ``db.repositories`` and tests substitute
in-memory fakes or AsyncMocks.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol, Sequence

from db.models import Alert, StockSnapshot, Tenant, Threshold, User

# ── Write inputs ───────────────────────────────────────────────────────────


@dataclass
class StockSnapshotInput:
    tenant_id: uuid.UUID
    bsale_variant_id: int
    bsale_office_id: int | None
    quantity: float
    quantity_reserved: float
    quantity_available: float
    snapshot_date: date
    sku: str | None = None
    barcode: str | None = None
    product_name: str | None = None
    unit_price: float | None = None


@dataclass
class ConsumptionInput:
    tenant_id: uuid.UUID
    bsale_variant_id: int
    bsale_office_id: int | None
    consumption_date: date
    quantity_sold: float
    document_count: int


@dataclass
class AlertInput:
    tenant_id: uuid.UUID
    user_id: uuid.UUID
    bsale_variant_id: int
    bsale_office_id: int | None
    alert_type: str
    current_quantity: float
    threshold_quantity: float | None = None
    days_to_stockout: float | None = None
    sku: str | None = None
    product_name: str | None = None

    @property
    def dedup_key(self) -> tuple[uuid.UUID, int, int | None, str]:
        return (self.user_id, self.bsale_variant_id, self.bsale_office_id, self.alert_type)


# ── Protocols ──────────────────────────────────────────────────────────────


class TenantRepository(Protocol):
    async def get_active_tenants(self) -> list[Tenant]: ...

    async def get_by_id(self, tenant_id: uuid.UUID) -> Tenant | None: ...

    async def update_sync_status(
        self, tenant_id: uuid.UUID, status: str, last_sync_at: datetime | None = None
    ) -> None: ...

    async def update_consumption_synced_through(self, tenant_id: uuid.UUID, day: date) -> None: ...


class UserRepository(Protocol):
    async def get_by_id(self, user_id: uuid.UUID) -> User | None: ...

    async def get_with_notifications_enabled(self, tenant_id: uuid.UUID) -> list[User]: ...


class StockSnapshotRepository(Protocol):
    async def upsert_batch(self, snapshots: Sequence[StockSnapshotInput]) -> int: ...

    async def get_by_variant(
        self, tenant_id: uuid.UUID, variant_id: int, office_id: int | None
    ) -> StockSnapshot | None: ...

    async def get_latest_by_tenant(self, tenant_id: uuid.UUID) -> list[StockSnapshot]: ...

    async def get_historical_snapshots(
        self, tenant_id: uuid.UUID, variant_id: int, office_id: int | None, days: int
    ) -> list[StockSnapshot]: ...

    async def delete_older_than(self, days: int) -> int: ...


class DailyConsumptionRepository(Protocol):
    async def upsert_batch(self, rows: Sequence[ConsumptionInput]) -> int: ...

    async def get_7day_average(self, tenant_id: uuid.UUID, variant_id: int, office_id: int | None) -> float: ...


class ThresholdRepository(Protocol):
    async def get_by_user(self, user_id: uuid.UUID, tenant_id: uuid.UUID | None = None) -> list[Threshold]: ...

    async def count_by_user(self, user_id: uuid.UUID) -> int: ...

    async def get_active_for_user(self, user_id: uuid.UUID, limit: int | None = None) -> list[Threshold]: ...

    async def get_skipped_for_user(self, user_id: uuid.UUID, limit: int) -> list[Threshold]: ...


class AlertRepository(Protocol):
    async def has_pending_alert(
        self, user_id: uuid.UUID, variant_id: int, office_id: int | None, alert_type: str
    ) -> bool: ...

    async def create_batch(self, alerts: Sequence[AlertInput]) -> int: ...

    async def get_pending_by_user(self, user_id: uuid.UUID) -> list[Alert]: ...

    async def mark_as_sent(self, alert_ids: Sequence[uuid.UUID]) -> None: ...

    async def mark_as_dismissed(self, alert_id: uuid.UUID) -> None: ...
