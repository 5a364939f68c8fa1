from typing import List

import structlog
from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import BillingUpload
from app.modules.ingestion.domain.service import IngestionService
from app.schemas.billing import BillingRowIn, IngestionResult, UploadStatusOut
from app.shared.core.exceptions import ResourceNotFoundError
from app.shared.db.session import get_db

router = APIRouter(tags=["Billing Ingestion"])
logger = structlog.get_logger()


@router.post("/uploads/{upload_id}/rows", response_model=IngestionResult)
async def ingest_rows(
    rows: List[BillingRowIn],
    upload_id: str = Path(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
):
    """
    Ingest already-extracted billing rows for an upload.
    Re-posting the same rows for the same upload does not create duplicates.
    """
    logger.info("ingest_rows_requested", upload_id=upload_id, rows=len(rows))
    return await IngestionService(db).ingest_rows(upload_id, rows)


@router.get("/uploads/{upload_id}", response_model=UploadStatusOut)
async def get_upload(
    upload_id: str = Path(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
):
    upload = await db.get(BillingUpload, upload_id)
    if upload is None:
        raise ResourceNotFoundError(f"Upload {upload_id} not found", details={"upload_id": upload_id})
    return upload
