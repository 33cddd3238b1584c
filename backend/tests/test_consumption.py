"""
Tests for consumption aggregation and the consumption sync.
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from db.interfaces import ConsumptionInput
from integrations.schemas import Document
from workers.consumption import ConsumptionSyncService, aggregate_documents, pending_window


def ts(year, month, day, hour=12) -> int:
    return int(datetime(year, month, day, hour, tzinfo=timezone.utc).timestamp())


def document(doc_id, emitted, lines, office_id=None) -> Document:
    payload = {
        "id": doc_id,
        "emissionDate": emitted,
        "details": {
            "items": [
                {"id": n, "quantity": qty, "variant": {"id": variant_id}} for n, (variant_id, qty) in enumerate(lines)
            ]
        },
    }
    if office_id is not None:
        payload["office"] = {"id": office_id}
    return Document.model_validate(payload)


# ── Aggregation ────────────────────────────────────────────────────────


class TestAggregateDocuments:
    def test_sums_quantities_and_counts_documents(self):
        docs = [
            document(1, ts(2026, 3, 5), [(101, 5)]),
            document(2, ts(2026, 3, 5, 18), [(101, 3)]),
        ]
        result = aggregate_documents("tenant", docs)

        assert result.documents_processed == 2
        assert len(result.rows) == 1
        row = result.rows[0]
        assert row.quantity_sold == 8
        assert row.document_count == 2
        assert row.consumption_date == date(2026, 3, 5)
        assert row.bsale_office_id is None

    def test_document_counted_once_per_group(self):
        docs = [document(1, ts(2026, 3, 5), [(101, 1), (101, 2)])]
        row = aggregate_documents("tenant", docs).rows[0]
        assert row.quantity_sold == 3
        assert row.document_count == 1

    def test_groups_by_office_and_day(self):
        docs = [
            document(1, ts(2026, 3, 5), [(101, 1)], office_id=1),
            document(2, ts(2026, 3, 5), [(101, 1)], office_id=2),
            document(3, ts(2026, 3, 6), [(101, 1)], office_id=1),
        ]
        keys = {(r.bsale_office_id, r.consumption_date) for r in aggregate_documents("tenant", docs).rows}
        assert keys == {(1, date(2026, 3, 5)), (2, date(2026, 3, 5)), (1, date(2026, 3, 6))}

    def test_day_is_utc(self):
        docs = [document(1, ts(2026, 3, 5, 23) + 3599, [(101, 1)])]
        assert aggregate_documents("tenant", docs).rows[0].consumption_date == date(2026, 3, 5)

    def test_documents_without_lines_are_processed(self):
        docs = [document(1, ts(2026, 3, 5), [])]
        result = aggregate_documents("tenant", docs)
        assert result.documents_processed == 1
        assert result.rows == []


# ── Accumulating upsert ────────────────────────────────────────────────


class TestConsumptionUpsert:
    @pytest.mark.asyncio
    async def test_same_key_accumulates(self, consumption_repo, tenant):
        row = ConsumptionInput(
            tenant_id=tenant.id,
            bsale_variant_id=101,
            bsale_office_id=None,
            consumption_date=date(2026, 3, 5),
            quantity_sold=5,
            document_count=2,
        )
        await consumption_repo.upsert_batch([row])
        await consumption_repo.upsert_batch([row])

        stored = await consumption_repo.get_by_variant_and_date(tenant.id, 101, None, date(2026, 3, 5))
        assert stored.quantity_sold == 10
        assert stored.document_count == 4

    @pytest.mark.asyncio
    async def test_null_office_is_its_own_key(self, consumption_repo, tenant):
        base = {
            "tenant_id": tenant.id,
            "bsale_variant_id": 101,
            "consumption_date": date(2026, 3, 5),
            "quantity_sold": 1,
            "document_count": 1,
        }
        await consumption_repo.upsert_batch(
            [ConsumptionInput(bsale_office_id=None, **base), ConsumptionInput(bsale_office_id=1, **base)]
        )

        assert (await consumption_repo.get_by_variant_and_date(tenant.id, 101, None, date(2026, 3, 5))).quantity_sold == 1
        assert (await consumption_repo.get_by_variant_and_date(tenant.id, 101, 1, date(2026, 3, 5))).quantity_sold == 1


# ── Consumption sync ───────────────────────────────────────────────────


class TestConsumptionSync:
    @pytest.mark.asyncio
    async def test_sync_fetches_active_documents_and_stores_rows(self, consumption_repo, tenant_repo, tenant):
        client = AsyncMock()
        client.get_all_documents.return_value = [
            document(1, ts(2026, 3, 5), [(101, 5), (102, 1)]),
            document(2, ts(2026, 3, 5), [(101, 3)]),
        ]
        factory_tokens = []

        def factory(token):
            factory_tokens.append(token)
            return client

        service = ConsumptionSyncService(consumption_repo, tenant_repo, factory)
        now = datetime(2026, 3, 8, 6, tzinfo=timezone.utc)
        result = await service.sync_consumption(tenant.id, days=7, now=now)

        assert result.days_processed == 7
        assert (result.first_day, result.last_day) == (date(2026, 3, 1), date(2026, 3, 7))
        assert result.documents_processed == 2
        assert result.variants_updated == 2
        assert factory_tokens == ["bsale-test-token"]

        args, kwargs = client.get_all_documents.call_args
        assert args == (
            datetime(2026, 3, 1, tzinfo=timezone.utc),
            datetime(2026, 3, 7, 23, 59, 59, tzinfo=timezone.utc),
        )
        assert kwargs == {"expand": ["details"], "state": 0}
        client.aclose.assert_awaited_once()

        stored = await consumption_repo.get_by_variant_and_date(tenant.id, 101, None, date(2026, 3, 5))
        assert stored.quantity_sold == 8
        assert stored.document_count == 2
        assert (await tenant_repo.get_by_id(tenant.id)).consumption_synced_through == date(2026, 3, 7)

    @pytest.mark.asyncio
    async def test_rerun_on_same_day_does_not_double_count(self, consumption_repo, tenant_repo, tenant):
        client = AsyncMock()
        client.get_all_documents.return_value = [document(1, ts(2026, 3, 7), [(101, 3)])]
        service = ConsumptionSyncService(consumption_repo, tenant_repo, lambda token: client)
        now = datetime(2026, 3, 8, 6, tzinfo=timezone.utc)

        await service.sync_consumption(tenant.id, days=7, now=now)
        again = await service.sync_consumption(tenant.id, days=7, now=now + timedelta(hours=6))

        assert again.days_processed == 0
        assert again.variants_updated == 0
        assert client.get_all_documents.await_count == 1
        stored = await consumption_repo.get_by_variant_and_date(tenant.id, 101, None, date(2026, 3, 7))
        assert stored.quantity_sold == 3
        assert stored.document_count == 1

    @pytest.mark.asyncio
    async def test_next_day_only_fetches_the_new_day(self, consumption_repo, tenant_repo, tenant):
        client = AsyncMock()
        client.get_all_documents.return_value = []
        service = ConsumptionSyncService(consumption_repo, tenant_repo, lambda token: client)

        await service.sync_consumption(tenant.id, days=7, now=datetime(2026, 3, 8, tzinfo=timezone.utc))
        result = await service.sync_consumption(tenant.id, days=7, now=datetime(2026, 3, 9, tzinfo=timezone.utc))

        assert result.days_processed == 1
        args, _ = client.get_all_documents.call_args
        assert args == (
            datetime(2026, 3, 8, tzinfo=timezone.utc),
            datetime(2026, 3, 8, 23, 59, 59, tzinfo=timezone.utc),
        )

    @pytest.mark.asyncio
    async def test_documents_outside_window_are_ignored(self, consumption_repo, tenant_repo, tenant):
        client = AsyncMock()
        client.get_all_documents.return_value = [
            document(1, ts(2026, 3, 7), [(101, 2)]),
            document(2, ts(2026, 3, 8), [(101, 9)]),
        ]
        service = ConsumptionSyncService(consumption_repo, tenant_repo, lambda token: client)

        result = await service.sync_consumption(tenant.id, days=7, now=datetime(2026, 3, 8, 6, tzinfo=timezone.utc))

        assert result.documents_processed == 1
        assert await consumption_repo.get_by_variant_and_date(tenant.id, 101, None, date(2026, 3, 8)) is None

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_watermark(self, consumption_repo, tenant_repo, tenant):
        client = AsyncMock()
        client.get_all_documents.side_effect = RuntimeError("documents endpoint unavailable")
        service = ConsumptionSyncService(consumption_repo, tenant_repo, lambda token: client)

        with pytest.raises(RuntimeError):
            await service.sync_consumption(tenant.id, now=datetime(2026, 3, 8, tzinfo=timezone.utc))

        client.aclose.assert_awaited_once()
        assert (await tenant_repo.get_by_id(tenant.id)).consumption_synced_through is None

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, consumption_repo, tenant_repo):
        service = ConsumptionSyncService(consumption_repo, tenant_repo, lambda token: AsyncMock())
        with pytest.raises(LookupError):
            await service.sync_consumption(uuid.uuid4())


class TestPendingWindow:
    def test_first_run_covers_full_window(self):
        assert pending_window(date(2026, 3, 8), 7, None) == (date(2026, 3, 1), date(2026, 3, 7))

    def test_resumes_after_watermark(self):
        assert pending_window(date(2026, 3, 8), 7, date(2026, 3, 5)) == (date(2026, 3, 6), date(2026, 3, 7))

    def test_stale_watermark_is_capped_by_window(self):
        assert pending_window(date(2026, 3, 8), 7, date(2026, 1, 1)) == (date(2026, 3, 1), date(2026, 3, 7))

    def test_up_to_date(self):
        assert pending_window(date(2026, 3, 8), 7, date(2026, 3, 7)) is None
