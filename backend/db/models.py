"""
StockPulse Database Models

Multi-tenant via tenant_id on all tables.

Tables:
  1. tenants             - Bsale accounts (credentials + sync status)
  2. users               - People who own thresholds and receive alerts
  3. stock_snapshots     - Point-in-time stock per variant/office/day
  4. daily_consumption   - Units sold per variant/office/day (accumulated)
  5. thresholds          - Quantity (min units) or days (min days of stock) thresholds
  6. alerts              - low_stock / out_of_stock / low_velocity alerts

Bsale variant and office ids are provider integers. office_id is a nullable
dimension: a NULL office means tenant-wide stock, and it is distinct from any
concrete office.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from db.session import Base

SYNC_STATUSES = ("not_connected", "pending", "syncing", "success", "failed")
ALERT_TYPES = ("low_stock", "out_of_stock", "low_velocity")
ALERT_STATUSES = ("pending", "sent", "dismissed")
THRESHOLD_TYPES = ("quantity", "days")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


# ─── 1. Tenants ─────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    bsale_client_code = Column(String(64), unique=True)
    bsale_client_name = Column(String(255))
    bsale_access_token = Column(Text)  # Fernet-encrypted
    sync_status = Column(String(20), nullable=False, default="not_connected")
    last_sync_at = Column(DateTime)
    consumption_synced_through = Column(Date)  # last UTC day folded into daily_consumption
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (CheckConstraint(_in_list("sync_status", SYNC_STATUSES), name="ck_tenant_sync_status"),)


# ─── 2. Users ───────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.id"), nullable=False)
    email = Column(String(255), nullable=False)
    name = Column(String(255))
    notification_enabled = Column(Boolean, nullable=False, default=True)
    subscription_status = Column(String(20), nullable=False, default="none")
    subscription_ends_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        CheckConstraint(
            "subscription_status IN ('none', 'active', 'cancelled', 'past_due')",
            name="ck_user_subscription_status",
        ),
    )


# ─── 3. Stock Snapshots ────────────────────────────────────────────────────


class StockSnapshot(Base):
    __tablename__ = "stock_snapshots"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.id"), nullable=False)
    bsale_variant_id = Column(BigInteger, nullable=False)
    bsale_office_id = Column(BigInteger)
    sku = Column(String(255))
    barcode = Column(String(255))
    product_name = Column(String(500))
    unit_price = Column(Float)
    quantity = Column(Float, nullable=False, default=0)
    quantity_reserved = Column(Float, nullable=False, default=0)
    quantity_available = Column(Float, nullable=False, default=0)
    snapshot_date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "bsale_variant_id", "bsale_office_id", "snapshot_date", name="uq_snapshot_variant_office_day"
        ),
        Index("ix_snapshots_latest", "tenant_id", "bsale_variant_id", "bsale_office_id", "snapshot_date"),
        Index("ix_snapshots_date", "snapshot_date"),
    )


# ─── 4. Daily Consumption ──────────────────────────────────────────────────


class DailyConsumption(Base):
    __tablename__ = "daily_consumption"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.id"), nullable=False)
    bsale_variant_id = Column(BigInteger, nullable=False)
    bsale_office_id = Column(BigInteger)
    consumption_date = Column(Date, nullable=False)
    quantity_sold = Column(Float, nullable=False, default=0)
    document_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "bsale_variant_id", "bsale_office_id", "consumption_date", name="uq_consumption_variant_day"
        ),
        CheckConstraint("document_count >= 0", name="ck_consumption_doc_count"),
    )


# ─── 5. Thresholds ─────────────────────────────────────────────────────────


class Threshold(Base):
    __tablename__ = "thresholds"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.id"), nullable=False)
    user_id = Column(GUID(), ForeignKey("users.id"), nullable=False)
    bsale_variant_id = Column(BigInteger)  # NULL = user's default threshold
    bsale_office_id = Column(BigInteger)
    threshold_type = Column(String(10), nullable=False, default="quantity")
    min_quantity = Column(Float, default=0)  # quantity thresholds
    min_days = Column(Integer)  # days thresholds: days of stock left from sales consumption
    days_warning = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "bsale_variant_id", "bsale_office_id", name="uq_threshold_user_variant_office"),
        Index("ix_thresholds_user_created", "user_id", "created_at"),
        CheckConstraint(_in_list("threshold_type", THRESHOLD_TYPES), name="ck_threshold_type"),
        CheckConstraint(
            "(threshold_type = 'quantity' AND min_quantity IS NOT NULL)"
            " OR (threshold_type = 'days' AND min_days IS NOT NULL)",
            name="ck_threshold_type_fields",
        ),
        CheckConstraint("min_quantity >= 0", name="ck_threshold_min_quantity"),
        CheckConstraint("min_days > 0", name="ck_threshold_min_days"),
        CheckConstraint("days_warning >= 0", name="ck_threshold_days_warning"),
    )


# ─── 6. Alerts ─────────────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "alerts"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.id"), nullable=False)
    user_id = Column(GUID(), ForeignKey("users.id"), nullable=False)
    bsale_variant_id = Column(BigInteger, nullable=False)
    bsale_office_id = Column(BigInteger)
    sku = Column(String(255))
    product_name = Column(String(500))
    alert_type = Column(String(20), nullable=False)
    current_quantity = Column(Float, nullable=False)
    threshold_quantity = Column(Float)
    days_to_stockout = Column(Float)
    status = Column(String(20), nullable=False, default="pending")
    sent_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_alerts_user_status", "user_id", "status"),
        Index(
            "ix_alerts_pending_key",
            "user_id",
            "bsale_variant_id",
            "bsale_office_id",
            "alert_type",
            postgresql_where="status = 'pending'",
        ),
        CheckConstraint(_in_list("alert_type", ALERT_TYPES), name="ck_alert_type"),
        CheckConstraint(_in_list("status", ALERT_STATUSES), name="ck_alert_status"),
    )
