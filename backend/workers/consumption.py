"""
Consumption Sync — units sold per variant per day from Bsale sales documents.

Documents are grouped by (variant, office, UTC emission date). Each group
sums the line quantities and counts the distinct documents it came from.
Rows are written with accumulating semantics: running the same window twice
adds the totals twice.

To keep repeated scheduled runs from double counting, the sync only folds in
completed UTC days the tenant has not had folded in yet. The last processed
day is stored on the tenant (``consumption_synced_through``) once every row of
the window is written.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

import structlog

from db.interfaces import ConsumptionInput, DailyConsumptionRepository, TenantRepository
from db.repositories import MAX_BATCH_SIZE
from integrations.base import InventoryClientFactory
from integrations.schemas import Document

logger = structlog.get_logger()

ACTIVE_DOCUMENT_STATE = 0

GroupKey = tuple[int, int | None, date]


@dataclass
class ConsumptionAggregation:
    documents_processed: int = 0
    rows: list[ConsumptionInput] = field(default_factory=list)


@dataclass
class ConsumptionSyncResult:
    days_processed: int
    documents_processed: int
    variants_updated: int
    first_day: date | None = None
    last_day: date | None = None


def emission_day(document: Document) -> date:
    return datetime.fromtimestamp(document.emission_date, tz=timezone.utc).date()


def aggregate_documents(tenant_id: uuid.UUID, documents: Iterable[Document]) -> ConsumptionAggregation:
    quantities: dict[GroupKey, float] = {}
    document_ids: dict[GroupKey, set[int]] = {}
    processed = 0

    for document in documents:
        processed += 1
        office_id = document.office.id if document.office is not None else None
        day = emission_day(document)
        for detail in document.details.items:
            key = (detail.variant.id, office_id, day)
            quantities[key] = quantities.get(key, 0.0) + detail.quantity
            document_ids.setdefault(key, set()).add(document.id)

    rows = [
        ConsumptionInput(
            tenant_id=tenant_id,
            bsale_variant_id=variant_id,
            bsale_office_id=office_id,
            consumption_date=day,
            quantity_sold=quantities[(variant_id, office_id, day)],
            document_count=len(document_ids[(variant_id, office_id, day)]),
        )
        for variant_id, office_id, day in quantities
    ]
    return ConsumptionAggregation(documents_processed=processed, rows=rows)


def pending_window(today: date, days: int, synced_through: date | None) -> tuple[date, date] | None:
    """Completed days in the last ``days`` that are not yet folded in, as an inclusive range."""
    first_day = today - timedelta(days=days)
    if synced_through is not None:
        first_day = max(first_day, synced_through + timedelta(days=1))
    last_day = today - timedelta(days=1)
    if first_day > last_day:
        return None
    return first_day, last_day


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class ConsumptionSyncService:
    def __init__(
        self,
        consumption_repo: DailyConsumptionRepository,
        tenant_repo: TenantRepository,
        client_factory: InventoryClientFactory,
        batch_size: int = MAX_BATCH_SIZE,
    ):
        self.consumption_repo = consumption_repo
        self.tenant_repo = tenant_repo
        self.client_factory = client_factory
        self.batch_size = min(batch_size, MAX_BATCH_SIZE)

    async def sync_consumption(
        self,
        tenant_id: uuid.UUID,
        days: int = 7,
        now: datetime | None = None,
    ) -> ConsumptionSyncResult:
        """Fold active sales documents from the last ``days`` completed days into daily_consumption."""
        today = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date()
        log = logger.bind(tenant_id=str(tenant_id), days=days)

        tenant = await self.tenant_repo.get_by_id(tenant_id)
        if tenant is None or not tenant.bsale_access_token:
            raise LookupError(f"Tenant not found or not connected: {tenant_id}")

        window = pending_window(today, days, tenant.consumption_synced_through)
        if window is None:
            log.info("consumption.sync.up_to_date", synced_through=str(tenant.consumption_synced_through))
            return ConsumptionSyncResult(days_processed=0, documents_processed=0, variants_updated=0)

        first_day, last_day = window
        log = log.bind(first_day=str(first_day), last_day=str(last_day))
        log.info("consumption.sync.started")

        client = self.client_factory(tenant.bsale_access_token)
        try:
            documents = await client.get_all_documents(
                _day_start(first_day),
                _day_start(last_day + timedelta(days=1)) - timedelta(seconds=1),
                expand=["details"],
                state=ACTIVE_DOCUMENT_STATE,
            )
        finally:
            await client.aclose()

        in_window = [d for d in documents if first_day <= emission_day(d) <= last_day]
        aggregation = aggregate_documents(tenant_id, in_window)
        for offset in range(0, len(aggregation.rows), self.batch_size):
            await self.consumption_repo.upsert_batch(aggregation.rows[offset : offset + self.batch_size])
        await self.tenant_repo.update_consumption_synced_through(tenant_id, last_day)

        result = ConsumptionSyncResult(
            days_processed=(last_day - first_day).days + 1,
            documents_processed=aggregation.documents_processed,
            variants_updated=len(aggregation.rows),
            first_day=first_day,
            last_day=last_day,
        )
        log.info(
            "consumption.sync.completed",
            documents_processed=result.documents_processed,
            variants_updated=result.variants_updated,
            skipped_outside_window=len(documents) - len(in_window),
        )
        return result
