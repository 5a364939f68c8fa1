"""
Fact Buffer & Batch Writer

Accumulates sanitized, dimension-resolved billing rows for ONE ingestion session
and persists them in bounded batches. Each session owns its own instance; nothing
is held at module level, so concurrent uploads never interleave pending rows.

Duplicates are skipped by the store (ON CONFLICT DO NOTHING on the
(upload_id, source_row_id) constraint), which makes re-ingesting a file a no-op.
"""

import hashlib
import json
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import BillingUsageFact
from app.modules.ingestion.domain.dimensions import DimensionRefs, DimensionResolver
from app.modules.ingestion.domain.sanitize import SanitizedRow, sanitize_row, to_text
from app.shared.core.config import get_settings
from app.shared.core.ops_metrics import INGESTION_BATCHES_TOTAL, INGESTION_ROWS_TOTAL
from app.shared.db.upsert import insert_ignoring_conflicts

logger = structlog.get_logger()

_DEDUP_COLUMNS = ("upload_id", "source_row_id")
_IDENTITY_EXCLUDED = ("upload_id", "source_row_id")
_MONEY_FIELDS = (
    "consumed_quantity", "pricing_quantity",
    "list_unit_price", "contracted_unit_price", "effective_unit_price", "billed_unit_price",
    "list_cost", "contracted_cost", "effective_cost", "billed_cost",
)


@dataclass
class FactBufferStats:
    rows_received: int = 0
    rows_buffered: int = 0
    rows_inserted: int = 0
    rows_skipped_duplicate: int = 0
    batches_flushed: int = 0
    batches_failed: int = 0
    rows_dropped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def row_fingerprint(row: SanitizedRow) -> str:
    """SHA-256 over the canonical sanitized content of a row (identity fields excluded)."""
    payload = {k: v for k, v in asdict(row).items() if k not in _IDENTITY_EXCLUDED}
    canonical = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class FactBuffer:
    """
    Session-scoped accumulator for billing facts.

    Usage:
        async with FactBuffer(db, upload_id) as buffer:
            for raw in rows:
                await buffer.append(raw)
        # final partial batch flushed on exit
    """

    def __init__(
        self,
        db: AsyncSession,
        upload_id: str,
        resolver: Optional[DimensionResolver] = None,
        batch_size: Optional[int] = None,
    ):
        upload_id = to_text(upload_id, 64)
        if not upload_id:
            raise ValueError("upload_id is required for a fact buffer")
        self.db = db
        self.upload_id = upload_id
        self.resolver = resolver or DimensionResolver(db)
        self.batch_size = batch_size or get_settings().INGEST_BATCH_SIZE
        if self.batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.stats = FactBufferStats()
        self._pending: List[Dict[str, Any]] = []
        self._ordinal = 0
        self._batch_seq = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def __aenter__(self) -> "FactBuffer":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # Persist what we have even if the producer failed mid-stream.
        await self.flush()

    async def append(self, raw: Any) -> None:
        """Sanitize, resolve and accumulate one raw row. Flushes first when the batch is full."""
        if len(self._pending) >= self.batch_size:
            await self.flush()

        row = sanitize_row(raw, upload_id=self.upload_id)
        refs = await self.resolver.resolve_row(row)
        self._ordinal += 1
        self._pending.append(self._to_values(row, refs))
        self.stats.rows_received += 1
        self.stats.rows_buffered += 1

    def _source_row_id(self, row: SanitizedRow) -> str:
        if row.source_row_id:
            return row.source_row_id
        # Repeated identical lines in one upload are genuine charges; the row's
        # position tells them apart and is stable when the same file is re-run.
        return f"{row_fingerprint(row)}#{self._ordinal}"

    def _to_values(self, row: SanitizedRow, refs: DimensionRefs) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "upload_id": self.upload_id,
            "source_row_id": self._source_row_id(row),
            **refs.as_dict(),
            "charge_category": row.charge_category,
            "charge_class": row.charge_class,
            "charge_description": row.charge_description,
            "charge_frequency": row.charge_frequency,
            "consumed_unit": row.consumed_unit,
            "pricing_unit": row.pricing_unit,
            "billing_period_start": row.billing_period_start,
            "billing_period_end": row.billing_period_end,
            "charge_period_start": row.charge_period_start,
            "charge_period_end": row.charge_period_end,
            "tags": dict(row.tags),
        }
        for name in _MONEY_FIELDS:
            values[name] = Decimal(str(getattr(row, name)))
        return values

    async def flush(self) -> int:
        """
        Persist the pending batch in one bulk write and clear the accumulator.
        Returns the number of newly inserted rows (duplicates are skipped silently).
        """
        if not self._pending:
            return 0

        batch, self._pending = self._pending, []
        self._batch_seq += 1
        self.stats.rows_buffered = 0

        try:
            stmt = insert_ignoring_conflicts(self.db, BillingUsageFact, batch, _DEDUP_COLUMNS)
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.stats.batches_failed += 1
            self.stats.rows_dropped += len(batch)
            INGESTION_BATCHES_TOTAL.labels(status="failed").inc()
            # Dropped, not retried: downstream analytics tolerate gaps.
            logger.error(
                "fact_batch_persist_failed",
                upload_id=self.upload_id,
                batch_seq=self._batch_seq,
                rows=len(batch),
                error=str(e),
            )
            return 0

        inserted = result.rowcount if result.rowcount and result.rowcount > 0 else 0
        skipped = len(batch) - inserted
        self.stats.rows_inserted += inserted
        self.stats.rows_skipped_duplicate += skipped
        self.stats.batches_flushed += 1
        INGESTION_BATCHES_TOTAL.labels(status="success").inc()
        INGESTION_ROWS_TOTAL.labels(outcome="inserted").inc(inserted)
        INGESTION_ROWS_TOTAL.labels(outcome="duplicate").inc(skipped)

        logger.info(
            "fact_batch_flushed",
            upload_id=self.upload_id,
            batch_seq=self._batch_seq,
            rows=len(batch),
            inserted=inserted,
            skipped_duplicate=skipped,
        )
        return inserted
