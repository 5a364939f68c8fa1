"""
Ingestion Service

Drives one ingestion session: registers the upload, streams rows through a
session-owned FactBuffer and records the outcome on the upload row.
"""

from datetime import datetime, timezone
from typing import Any, AsyncIterable, Iterable, Optional, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import BillingUpload
from app.modules.ingestion.domain.fact_buffer import FactBuffer
from app.modules.ingestion.domain.sanitize import to_text
from app.shared.core.exceptions import IngestionError

logger = structlog.get_logger()

RowSource = Union[Iterable[Any], AsyncIterable[Any]]


class UploadStatus:
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"


class IngestionService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def ingest_rows(
        self, upload_id: str, rows: RowSource, batch_size: Optional[int] = None
    ) -> dict:
        """
        Ingest raw billing rows for one upload. Safe to re-run with the same rows:
        already persisted lines are skipped by the store.
        """
        upload_id = to_text(upload_id, 64)
        if not upload_id:
            raise IngestionError("upload_id is required", code="missing_upload_id")

        structlog.contextvars.bind_contextvars(upload_id=upload_id)
        try:
            await self._start_upload(upload_id)
            async with FactBuffer(self.db, upload_id, batch_size=batch_size) as buffer:
                if hasattr(rows, "__aiter__"):
                    async for raw in rows:
                        await buffer.append(raw)
                else:
                    for raw in rows:
                        await buffer.append(raw)

            stats = buffer.stats
            status = (
                UploadStatus.COMPLETED_WITH_ERRORS if stats.batches_failed else UploadStatus.COMPLETED
            )
            await self._finish_upload(upload_id, status, buffer)
            logger.info("ingestion_session_completed", status=status, **stats.to_dict())
            return {"upload_id": upload_id, "status": status, **stats.to_dict()}
        finally:
            structlog.contextvars.unbind_contextvars("upload_id")

    async def _start_upload(self, upload_id: str) -> None:
        try:
            upload = await self.db.get(BillingUpload, upload_id)
            if upload is None:
                upload = BillingUpload(upload_id=upload_id)
                self.db.add(upload)
            upload.status = UploadStatus.PROCESSING
            upload.completed_at = None
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("ingestion_session_start_failed", error=str(e))
            raise IngestionError("Could not register upload", details={"upload_id": upload_id}) from e

    async def _finish_upload(self, upload_id: str, status: str, buffer: FactBuffer) -> None:
        stats = buffer.stats
        try:
            # Reload: a rolled back batch expires everything held by the session.
            upload = await self.db.get(BillingUpload, upload_id)
            if upload is None:
                upload = BillingUpload(upload_id=upload_id)
                self.db.add(upload)
            # Counters are totals over every run of the upload
            upload.status = status
            upload.rows_received = (upload.rows_received or 0) + stats.rows_received
            upload.rows_inserted = (upload.rows_inserted or 0) + stats.rows_inserted
            upload.rows_skipped_duplicate = (upload.rows_skipped_duplicate or 0) + stats.rows_skipped_duplicate
            upload.batches_failed = (upload.batches_failed or 0) + stats.batches_failed
            upload.completed_at = datetime.now(timezone.utc)
            await self.db.commit()
        except SQLAlchemyError as e:
            # Facts are already committed; only the bookkeeping row is stale.
            await self.db.rollback()
            logger.error("ingestion_session_finalize_failed", error=str(e))
