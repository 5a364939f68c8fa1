import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.models.billing import BillingUpload, BillingUsageFact
from app.modules.ingestion.domain import fact_buffer as fact_buffer_module
from app.modules.ingestion.domain.service import IngestionService, UploadStatus
from app.shared.core.exceptions import IngestionError
from tests.conftest import billing_row


@pytest.mark.asyncio
async def test_ingest_rows_records_upload(db, scenario_rows):
    result = await IngestionService(db).ingest_rows("U1", scenario_rows)

    assert result["upload_id"] == "U1"
    assert result["status"] == UploadStatus.COMPLETED
    assert result["rows_received"] == 3
    assert result["rows_inserted"] == 3

    upload = await db.get(BillingUpload, "U1")
    assert upload.status == UploadStatus.COMPLETED
    assert upload.rows_inserted == 3
    assert upload.completed_at is not None


@pytest.mark.asyncio
async def test_reingest_same_upload_keeps_three_rows(db, scenario_rows):
    service = IngestionService(db)
    await service.ingest_rows("U1", scenario_rows)
    second = await service.ingest_rows("U1", scenario_rows)

    count = (await db.execute(select(func.count(BillingUsageFact.id)))).scalar()
    assert count == 3
    assert second["rows_inserted"] == 0
    assert second["rows_skipped_duplicate"] == 3


@pytest.mark.asyncio
async def test_upload_counters_accumulate_over_runs(db, scenario_rows):
    service = IngestionService(db)
    await service.ingest_rows("U1", scenario_rows)
    await service.ingest_rows("U1", scenario_rows + [billing_row("Network", 5)])

    upload = await db.get(BillingUpload, "U1")
    assert upload.rows_received == 7
    assert upload.rows_inserted == 4
    assert upload.rows_skipped_duplicate == 3
    assert upload.status == UploadStatus.COMPLETED


@pytest.mark.asyncio
async def test_accepts_async_row_source(db, scenario_rows):
    async def stream():
        for row in scenario_rows:
            yield row

    result = await IngestionService(db).ingest_rows("U1", stream(), batch_size=2)
    assert result["rows_inserted"] == 3
    assert result["batches_flushed"] == 2


@pytest.mark.asyncio
async def test_failed_batch_marks_upload(db, monkeypatch):
    def failing_insert(session, model, values, index_elements):
        raise OperationalError("INSERT INTO billing_usage_facts", {}, Exception("disk I/O error"))

    monkeypatch.setattr(fact_buffer_module, "insert_ignoring_conflicts", failing_insert)

    rows = [billing_row("Compute", 1, source_row_id="a"), billing_row("Compute", 2, source_row_id="b")]
    result = await IngestionService(db).ingest_rows("U9", rows)

    assert result["status"] == UploadStatus.COMPLETED_WITH_ERRORS
    assert result["rows_dropped"] == 2
    upload = await db.get(BillingUpload, "U9")
    assert upload.batches_failed == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("upload_id", ["", "   ", None])
async def test_upload_id_is_required(db, upload_id):
    with pytest.raises(IngestionError):
        await IngestionService(db).ingest_rows(upload_id, [])
