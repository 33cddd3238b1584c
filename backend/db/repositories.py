"""
SQLAlchemy implementations of the repository protocols in ``db.interfaces``.

Each repository opens a short-lived session per call and commits before
returning, so a batch written by the sync worker is durable even if a later
page of the same sync fails.

office_id is compared NULL-safely everywhere: a NULL office is its own
dimension value, never a wildcard.
"""

import uuid
from collections.abc import Sequence
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.security import TokenCipher
from db.interfaces import AlertInput, ConsumptionInput, StockSnapshotInput
from db.models import Alert, DailyConsumption, StockSnapshot, Tenant, Threshold, User

MAX_BATCH_SIZE = 1000
ENRICHMENT_FIELDS = ("sku", "barcode", "product_name", "unit_price")


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _office_matches(column, office_id: int | None):
    return column.is_(None) if office_id is None else column == office_id


def _check_batch_size(size: int) -> None:
    if size > MAX_BATCH_SIZE:
        raise ValueError(f"Batch size {size} exceeds maximum {MAX_BATCH_SIZE}")


class _SessionRepository:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions


# ── Tenants ────────────────────────────────────────────────────────────────


class SqlTenantRepository(_SessionRepository):
    def __init__(self, sessions: async_sessionmaker[AsyncSession], cipher: TokenCipher):
        super().__init__(sessions)
        self._cipher = cipher

    def _detach_with_plain_token(self, db: AsyncSession, tenants: Sequence[Tenant]) -> list[Tenant]:
        db.expunge_all()
        for tenant in tenants:
            if tenant.bsale_access_token:
                tenant.bsale_access_token = self._cipher.decrypt(tenant.bsale_access_token)
        return list(tenants)

    async def create(self, client_code: str, client_name: str, access_token: str) -> Tenant:
        async with self._sessions() as db:
            tenant = Tenant(
                bsale_client_code=client_code,
                bsale_client_name=client_name,
                bsale_access_token=self._cipher.encrypt(access_token),
                sync_status="pending",
            )
            db.add(tenant)
            await db.commit()
            return self._detach_with_plain_token(db, [tenant])[0]

    async def get_active_tenants(self) -> list[Tenant]:
        """Connected tenants not currently syncing, least recently synced first."""
        async with self._sessions() as db:
            result = await db.execute(
                select(Tenant)
                .where(
                    Tenant.sync_status.not_in(("syncing", "not_connected")),
                    Tenant.bsale_access_token.is_not(None),
                )
                .order_by(Tenant.last_sync_at.asc().nulls_first(), Tenant.created_at)
            )
            return self._detach_with_plain_token(db, result.scalars().all())

    async def get_by_id(self, tenant_id: uuid.UUID) -> Tenant | None:
        async with self._sessions() as db:
            tenant = await db.get(Tenant, tenant_id)
            if tenant is None:
                return None
            return self._detach_with_plain_token(db, [tenant])[0]

    async def update_sync_status(
        self, tenant_id: uuid.UUID, status: str, last_sync_at: datetime | None = None
    ) -> None:
        values = {"sync_status": status, "updated_at": datetime.utcnow()}
        if last_sync_at is not None:
            values["last_sync_at"] = last_sync_at
        async with self._sessions() as db:
            await db.execute(update(Tenant).where(Tenant.id == tenant_id).values(**values))
            await db.commit()

    async def update_consumption_synced_through(self, tenant_id: uuid.UUID, day: date) -> None:
        async with self._sessions() as db:
            await db.execute(
                update(Tenant)
                .where(Tenant.id == tenant_id)
                .values(consumption_synced_through=day, updated_at=datetime.utcnow())
            )
            await db.commit()


# ── Users ──────────────────────────────────────────────────────────────────


class SqlUserRepository(_SessionRepository):
    async def get_by_id(self, user_id: uuid.UUID) -> User | None:
        async with self._sessions() as db:
            return await db.get(User, user_id)

    async def get_with_notifications_enabled(self, tenant_id: uuid.UUID) -> list[User]:
        async with self._sessions() as db:
            result = await db.execute(
                select(User)
                .where(User.tenant_id == tenant_id, User.notification_enabled.is_(True))
                .order_by(User.created_at)
            )
            return list(result.scalars().all())


# ── Stock snapshots ────────────────────────────────────────────────────────


class SqlStockSnapshotRepository(_SessionRepository):
    async def upsert_batch(self, snapshots: Sequence[StockSnapshotInput]) -> int:
        """
        Insert or update snapshots keyed by (tenant, variant, office, date).

        Quantities are replaced; enrichment fields are only replaced by
        non-null values so a missing variant lookup never erases known data.
        """
        if not snapshots:
            return 0
        _check_batch_size(len(snapshots))
        for s in snapshots:
            if s.bsale_variant_id <= 0:
                raise ValueError(f"Invalid bsale_variant_id in snapshot: {s.bsale_variant_id}")
            if s.quantity < 0:
                raise ValueError(f"Invalid quantity in snapshot (must be >= 0): {s.quantity}")

        async with self._sessions() as db:
            keys_by_group: dict[tuple[uuid.UUID, date], set[int]] = {}
            for s in snapshots:
                keys_by_group.setdefault((s.tenant_id, s.snapshot_date), set()).add(s.bsale_variant_id)

            existing: dict[tuple, StockSnapshot] = {}
            for (tenant_id, snapshot_date), variant_ids in keys_by_group.items():
                result = await db.execute(
                    select(StockSnapshot).where(
                        StockSnapshot.tenant_id == tenant_id,
                        StockSnapshot.snapshot_date == snapshot_date,
                        StockSnapshot.bsale_variant_id.in_(variant_ids),
                    )
                )
                for row in result.scalars().all():
                    existing[(row.tenant_id, row.bsale_variant_id, row.bsale_office_id, row.snapshot_date)] = row

            for s in snapshots:
                key = (s.tenant_id, s.bsale_variant_id, s.bsale_office_id, s.snapshot_date)
                row = existing.get(key)
                if row is None:
                    row = StockSnapshot(
                        tenant_id=s.tenant_id,
                        bsale_variant_id=s.bsale_variant_id,
                        bsale_office_id=s.bsale_office_id,
                        snapshot_date=s.snapshot_date,
                    )
                    db.add(row)
                    existing[key] = row
                row.quantity = s.quantity
                row.quantity_reserved = s.quantity_reserved
                row.quantity_available = s.quantity_available
                for field_name in ENRICHMENT_FIELDS:
                    value = getattr(s, field_name)
                    if value is not None:
                        setattr(row, field_name, value)

            await db.commit()
        return len(snapshots)

    async def get_by_variant(
        self, tenant_id: uuid.UUID, variant_id: int, office_id: int | None
    ) -> StockSnapshot | None:
        async with self._sessions() as db:
            result = await db.execute(
                select(StockSnapshot)
                .where(
                    StockSnapshot.tenant_id == tenant_id,
                    StockSnapshot.bsale_variant_id == variant_id,
                    _office_matches(StockSnapshot.bsale_office_id, office_id),
                )
                .order_by(StockSnapshot.snapshot_date.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_latest_by_tenant(self, tenant_id: uuid.UUID) -> list[StockSnapshot]:
        """Latest snapshot per (variant, office) for a tenant."""
        latest = (
            select(
                StockSnapshot.bsale_variant_id,
                StockSnapshot.bsale_office_id,
                func.max(StockSnapshot.snapshot_date).label("latest_date"),
            )
            .where(StockSnapshot.tenant_id == tenant_id)
            .group_by(StockSnapshot.bsale_variant_id, StockSnapshot.bsale_office_id)
            .subquery()
        )
        async with self._sessions() as db:
            result = await db.execute(
                select(StockSnapshot)
                .join(
                    latest,
                    and_(
                        StockSnapshot.bsale_variant_id == latest.c.bsale_variant_id,
                        StockSnapshot.bsale_office_id.is_not_distinct_from(latest.c.bsale_office_id),
                        StockSnapshot.snapshot_date == latest.c.latest_date,
                    ),
                )
                .where(StockSnapshot.tenant_id == tenant_id)
                .order_by(StockSnapshot.bsale_variant_id, StockSnapshot.bsale_office_id)
            )
            return list(result.scalars().all())

    async def get_historical_snapshots(
        self, tenant_id: uuid.UUID, variant_id: int, office_id: int | None, days: int
    ) -> list[StockSnapshot]:
        """Snapshots from the last ``days`` days, most recent first."""
        cutoff = _utc_today() - timedelta(days=days)
        async with self._sessions() as db:
            result = await db.execute(
                select(StockSnapshot)
                .where(
                    StockSnapshot.tenant_id == tenant_id,
                    StockSnapshot.bsale_variant_id == variant_id,
                    _office_matches(StockSnapshot.bsale_office_id, office_id),
                    StockSnapshot.snapshot_date >= cutoff,
                )
                .order_by(StockSnapshot.snapshot_date.desc())
            )
            return list(result.scalars().all())

    async def delete_older_than(self, days: int) -> int:
        cutoff = _utc_today() - timedelta(days=days)
        async with self._sessions() as db:
            result = await db.execute(delete(StockSnapshot).where(StockSnapshot.snapshot_date < cutoff))
            await db.commit()
            return result.rowcount or 0


# ── Daily consumption ──────────────────────────────────────────────────────


class SqlDailyConsumptionRepository(_SessionRepository):
    async def upsert_batch(self, rows: Sequence[ConsumptionInput]) -> int:
        """
        Accumulating upsert: an existing row for the same key has the new
        quantity and document count added to it, not replaced.
        """
        if not rows:
            return 0
        _check_batch_size(len(rows))
        async with self._sessions() as db:
            for row in rows:
                result = await db.execute(
                    select(DailyConsumption).where(
                        DailyConsumption.tenant_id == row.tenant_id,
                        DailyConsumption.bsale_variant_id == row.bsale_variant_id,
                        _office_matches(DailyConsumption.bsale_office_id, row.bsale_office_id),
                        DailyConsumption.consumption_date == row.consumption_date,
                    )
                )
                stored = result.scalar_one_or_none()
                if stored is None:
                    db.add(
                        DailyConsumption(
                            tenant_id=row.tenant_id,
                            bsale_variant_id=row.bsale_variant_id,
                            bsale_office_id=row.bsale_office_id,
                            consumption_date=row.consumption_date,
                            quantity_sold=row.quantity_sold,
                            document_count=row.document_count,
                        )
                    )
                else:
                    stored.quantity_sold = stored.quantity_sold + row.quantity_sold
                    stored.document_count = stored.document_count + row.document_count
                    stored.updated_at = datetime.utcnow()
            await db.commit()
        return len(rows)

    async def get_by_variant_and_date(
        self, tenant_id: uuid.UUID, variant_id: int, office_id: int | None, day: date
    ) -> DailyConsumption | None:
        async with self._sessions() as db:
            result = await db.execute(
                select(DailyConsumption).where(
                    DailyConsumption.tenant_id == tenant_id,
                    DailyConsumption.bsale_variant_id == variant_id,
                    _office_matches(DailyConsumption.bsale_office_id, office_id),
                    DailyConsumption.consumption_date == day,
                )
            )
            return result.scalar_one_or_none()

    async def get_7day_average(self, tenant_id: uuid.UUID, variant_id: int, office_id: int | None) -> float:
        cutoff = _utc_today() - timedelta(days=7)
        async with self._sessions() as db:
            result = await db.execute(
                select(func.avg(DailyConsumption.quantity_sold)).where(
                    DailyConsumption.tenant_id == tenant_id,
                    DailyConsumption.bsale_variant_id == variant_id,
                    _office_matches(DailyConsumption.bsale_office_id, office_id),
                    DailyConsumption.consumption_date >= cutoff,
                )
            )
            avg = result.scalar()
            return float(avg) if avg is not None else 0.0


# ── Thresholds ─────────────────────────────────────────────────────────────


class SqlThresholdRepository(_SessionRepository):
    @staticmethod
    def _stable_order(stmt):
        return stmt.order_by(Threshold.created_at, Threshold.id)

    async def get_by_user(self, user_id: uuid.UUID, tenant_id: uuid.UUID | None = None) -> list[Threshold]:
        stmt = select(Threshold).where(Threshold.user_id == user_id)
        if tenant_id is not None:
            stmt = stmt.where(Threshold.tenant_id == tenant_id)
        async with self._sessions() as db:
            result = await db.execute(self._stable_order(stmt))
            return list(result.scalars().all())

    async def count_by_user(self, user_id: uuid.UUID) -> int:
        async with self._sessions() as db:
            result = await db.execute(select(func.count(Threshold.id)).where(Threshold.user_id == user_id))
            return int(result.scalar() or 0)

    async def get_active_for_user(self, user_id: uuid.UUID, limit: int | None = None) -> list[Threshold]:
        stmt = self._stable_order(select(Threshold).where(Threshold.user_id == user_id))
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._sessions() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_skipped_for_user(self, user_id: uuid.UUID, limit: int) -> list[Threshold]:
        stmt = self._stable_order(select(Threshold).where(Threshold.user_id == user_id)).offset(limit)
        async with self._sessions() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())


# ── Alerts ─────────────────────────────────────────────────────────────────


class SqlAlertRepository(_SessionRepository):
    async def has_pending_alert(
        self, user_id: uuid.UUID, variant_id: int, office_id: int | None, alert_type: str
    ) -> bool:
        async with self._sessions() as db:
            result = await db.execute(
                select(Alert.id)
                .where(
                    Alert.user_id == user_id,
                    Alert.bsale_variant_id == variant_id,
                    _office_matches(Alert.bsale_office_id, office_id),
                    Alert.alert_type == alert_type,
                    Alert.status == "pending",
                )
                .limit(1)
            )
            return result.first() is not None

    async def create_batch(self, alerts: Sequence[AlertInput]) -> int:
        if not alerts:
            return 0
        _check_batch_size(len(alerts))
        async with self._sessions() as db:
            for a in alerts:
                db.add(
                    Alert(
                        tenant_id=a.tenant_id,
                        user_id=a.user_id,
                        bsale_variant_id=a.bsale_variant_id,
                        bsale_office_id=a.bsale_office_id,
                        sku=a.sku,
                        product_name=a.product_name,
                        alert_type=a.alert_type,
                        current_quantity=a.current_quantity,
                        threshold_quantity=a.threshold_quantity,
                        days_to_stockout=a.days_to_stockout,
                        status="pending",
                    )
                )
            await db.commit()
        return len(alerts)

    async def get_pending_by_user(self, user_id: uuid.UUID) -> list[Alert]:
        async with self._sessions() as db:
            result = await db.execute(
                select(Alert)
                .where(Alert.user_id == user_id, Alert.status == "pending")
                .order_by(Alert.created_at.desc())
            )
            return list(result.scalars().all())

    async def mark_as_sent(self, alert_ids: Sequence[uuid.UUID]) -> None:
        if not alert_ids:
            return
        async with self._sessions() as db:
            await db.execute(
                update(Alert).where(Alert.id.in_(list(alert_ids))).values(status="sent", sent_at=datetime.utcnow())
            )
            await db.commit()

    async def mark_as_dismissed(self, alert_id: uuid.UUID) -> None:
        async with self._sessions() as db:
            await db.execute(update(Alert).where(Alert.id == alert_id).values(status="dismissed"))
            await db.commit()
