"""
Tests for the Fact Buffer & Batch Writer

Covers:
- Bulk persistence and automatic flush at the batch size
- Idempotent re-ingestion (store-level dedup on upload + row identity)
- Batch failure isolation
- Session-owned buffers
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.models.billing import BillingUsageFact
from app.modules.ingestion.domain import fact_buffer as fact_buffer_module
from app.modules.ingestion.domain.fact_buffer import FactBuffer, row_fingerprint
from app.modules.ingestion.domain.sanitize import sanitize_row
from tests.conftest import billing_row


async def _fact_count(db, upload_id=None) -> int:
    stmt = select(func.count(BillingUsageFact.id))
    if upload_id is not None:
        stmt = stmt.where(BillingUsageFact.upload_id == upload_id)
    return (await db.execute(stmt)).scalar()


class TestFlush:
    @pytest.mark.asyncio
    async def test_flush_persists_pending_rows(self, db, scenario_rows):
        buffer = FactBuffer(db, "U1")
        for raw in scenario_rows:
            await buffer.append(raw)
        assert buffer.pending == 3
        assert await _fact_count(db) == 0

        inserted = await buffer.flush()

        assert inserted == 3
        assert buffer.pending == 0
        assert await _fact_count(db, "U1") == 3
        assert buffer.stats.batches_flushed == 1

    @pytest.mark.asyncio
    async def test_flush_on_empty_buffer_is_noop(self, db):
        buffer = FactBuffer(db, "U1")
        assert await buffer.flush() == 0
        assert buffer.stats.batches_flushed == 0

    @pytest.mark.asyncio
    async def test_automatic_flush_at_batch_size(self, db):
        buffer = FactBuffer(db, "U1", batch_size=2)
        for i in range(5):
            await buffer.append(billing_row("Compute", i + 1, source_row_id=f"line-{i}"))
            # Never more than one batch in memory
            assert buffer.pending <= 2

        assert buffer.stats.batches_flushed == 2
        assert buffer.pending == 1
        assert await _fact_count(db) == 4

        await buffer.flush()
        assert await _fact_count(db) == 5
        assert buffer.stats.rows_inserted == 5

    @pytest.mark.asyncio
    async def test_buffer_state_stays_within_one_batch(self, db):
        async with FactBuffer(db, "U1", batch_size=10) as buffer:
            for i in range(100):
                await buffer.append(billing_row("Compute", i + 1))
                held = [len(v) for v in vars(buffer).values() if isinstance(v, (list, dict, set))]
                assert max(held) <= 10

        assert buffer.stats.rows_inserted == 100
        assert await _fact_count(db, "U1") == 100

    @pytest.mark.asyncio
    async def test_row_identity_carries_upload_position(self, db):
        line = billing_row("Compute", 10)
        async with FactBuffer(db, "U1") as buffer:
            await buffer.append(line)
            await buffer.append(dict(line))

        ids = (await db.execute(select(BillingUsageFact.source_row_id).order_by(BillingUsageFact.id))).scalars().all()
        fingerprint = row_fingerprint(sanitize_row(line, "U1"))
        assert ids == [f"{fingerprint}#1", f"{fingerprint}#2"]

    @pytest.mark.asyncio
    async def test_context_manager_flushes_final_partial_batch(self, db, scenario_rows):
        async with FactBuffer(db, "U1", batch_size=500) as buffer:
            for raw in scenario_rows:
                await buffer.append(raw)
        assert await _fact_count(db, "U1") == 3

    @pytest.mark.asyncio
    async def test_costs_are_summable(self, db):
        async with FactBuffer(db, "U1") as buffer:
            await buffer.append(billing_row("Compute", "0.1", source_row_id="a"))
            await buffer.append(billing_row("Compute", "0.2", source_row_id="b"))

        total = (await db.execute(select(func.sum(BillingUsageFact.billed_cost)))).scalar()
        assert float(total) == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_dates_and_tags_are_persisted(self, db):
        async with FactBuffer(db, "U1") as buffer:
            await buffer.append(billing_row("Compute", 5, day="2026-02-03", tags='{"team": "core"}'))

        fact = (await db.execute(select(BillingUsageFact))).scalar_one()
        assert fact.charge_period_start.isoformat() == "2026-02-03"
        assert fact.tags == {"team": "core"}
        assert fact.service_id is not None


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_reingesting_same_rows_creates_no_duplicates(self, db, scenario_rows):
        for _ in range(2):
            async with FactBuffer(db, "U1") as buffer:
                for raw in scenario_rows:
                    await buffer.append(raw)

        assert await _fact_count(db, "U1") == 3
        assert buffer.stats.rows_inserted == 0
        assert buffer.stats.rows_skipped_duplicate == 3

    @pytest.mark.asyncio
    async def test_same_rows_for_another_upload_are_kept(self, db, scenario_rows):
        for upload_id in ("U1", "U2"):
            async with FactBuffer(db, upload_id) as buffer:
                for raw in scenario_rows:
                    await buffer.append(raw)

        assert await _fact_count(db) == 6

    @pytest.mark.asyncio
    async def test_identical_lines_within_one_upload_are_distinct_charges(self, db):
        line = billing_row("Compute", 10)
        for _ in range(2):
            async with FactBuffer(db, "U1") as buffer:
                await buffer.append(line)
                await buffer.append(dict(line))

        assert await _fact_count(db, "U1") == 2

    @pytest.mark.asyncio
    async def test_explicit_source_row_id_is_the_identity(self, db):
        async with FactBuffer(db, "U1") as buffer:
            await buffer.append(billing_row("Compute", 10, source_row_id="line-1"))
            # Same id, different content: the export says it is the same line
            await buffer.append(billing_row("Compute", 99, source_row_id="line-1"))

        assert await _fact_count(db, "U1") == 1
        assert buffer.stats.rows_skipped_duplicate == 1

    def test_fingerprint_ignores_upload_identity(self):
        raw = billing_row("Compute", 10)
        assert row_fingerprint(sanitize_row(raw, "U1")) == row_fingerprint(sanitize_row(raw, "U2"))
        assert row_fingerprint(sanitize_row(raw, "U1")) != row_fingerprint(
            sanitize_row(billing_row("Compute", 11), "U1")
        )


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failed_batch_is_dropped_and_ingestion_continues(self, db, monkeypatch):
        real_insert = fact_buffer_module.insert_ignoring_conflicts
        calls = {"n": 0}

        def flaky_insert(session, model, values, index_elements):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("INSERT INTO billing_usage_facts", {}, Exception("disk I/O error"))
            return real_insert(session, model, values, index_elements)

        monkeypatch.setattr(fact_buffer_module, "insert_ignoring_conflicts", flaky_insert)

        async with FactBuffer(db, "U1", batch_size=2) as buffer:
            for i in range(4):
                await buffer.append(billing_row("Compute", i + 1, source_row_id=f"line-{i}"))

        assert buffer.stats.batches_failed == 1
        assert buffer.stats.rows_dropped == 2
        assert buffer.stats.rows_inserted == 2
        assert await _fact_count(db, "U1") == 2


class TestConstruction:
    def test_buffers_are_independent(self):
        db = MagicMock()
        first = FactBuffer(db, "U1")
        second = FactBuffer(db, "U2")
        assert first._pending is not second._pending
        assert first.stats is not second.stats

    @pytest.mark.parametrize("upload_id", [None, "", "   "])
    def test_upload_id_is_required(self, upload_id):
        with pytest.raises(ValueError):
            FactBuffer(MagicMock(), upload_id)

    def test_default_batch_size_from_settings(self):
        assert FactBuffer(MagicMock(), "U1").batch_size == 500
