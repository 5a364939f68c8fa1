"""
Dimension Resolver

Maps natural-key attributes to stable surrogate keys, creating dimension rows on
first observation. The per-instance cache only saves round trips; the natural-key
unique constraints in the store decide identity, so concurrent sessions resolving
the same key always converge on the same row.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.dimensions import (
    CloudAccount,
    CommitmentDiscount,
    Region,
    Resource,
    Service,
    Sku,
    SubAccount,
)
from app.modules.ingestion.domain.sanitize import SanitizedRow
from app.shared.core.ops_metrics import DIMENSION_RESOLUTION_FAILURES
from app.shared.db.upsert import insert_ignoring_conflicts

logger = structlog.get_logger()


class DimensionFamily(str, Enum):
    CLOUD_ACCOUNT = "cloud_account"
    SERVICE = "service"
    SKU = "sku"
    RESOURCE = "resource"
    REGION = "region"
    SUB_ACCOUNT = "sub_account"
    COMMITMENT_DISCOUNT = "commitment_discount"


@dataclass(frozen=True)
class DimensionSpec:
    model: Any
    key_columns: Tuple[str, ...]


DIMENSION_SPECS: Dict[DimensionFamily, DimensionSpec] = {
    DimensionFamily.CLOUD_ACCOUNT: DimensionSpec(CloudAccount, ("provider", "billing_account_id")),
    DimensionFamily.SERVICE: DimensionSpec(Service, ("provider", "service_name")),
    DimensionFamily.SKU: DimensionSpec(Sku, ("sku_id",)),
    DimensionFamily.RESOURCE: DimensionSpec(Resource, ("resource_id",)),
    DimensionFamily.REGION: DimensionSpec(Region, ("provider", "region_code")),
    DimensionFamily.SUB_ACCOUNT: DimensionSpec(SubAccount, ("sub_account_id",)),
    DimensionFamily.COMMITMENT_DISCOUNT: DimensionSpec(CommitmentDiscount, ("commitment_discount_id",)),
}


@dataclass(frozen=True)
class DimensionRefs:
    """Surrogate keys of the seven dimensions for one fact row (None when absent)."""
    cloud_account_id: Optional[int] = None
    service_id: Optional[int] = None
    sku_id: Optional[int] = None
    resource_id: Optional[int] = None
    region_id: Optional[int] = None
    sub_account_id: Optional[int] = None
    commitment_discount_id: Optional[int] = None

    def as_dict(self) -> Dict[str, Optional[int]]:
        return asdict(self)


class DimensionResolver:
    """Resolves natural keys to surrogate ids for one ingestion session."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._cache: Dict[Tuple[DimensionFamily, Tuple[str, ...]], int] = {}
        self.failures = 0

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def resolve(
        self,
        family: DimensionFamily,
        natural_key: Tuple[Optional[str], ...],
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """
        Returns the surrogate key for ``natural_key``, creating the dimension row if needed.
        Blank key parts resolve to None. Store errors are logged and also resolve to None.
        """
        if not natural_key or any(not part for part in natural_key):
            return None

        cache_key = (family, tuple(natural_key))
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        spec = DIMENSION_SPECS[family]
        key_values = dict(zip(spec.key_columns, natural_key))
        try:
            surrogate = await self._lookup(spec, key_values)
            if surrogate is None:
                surrogate = await self._create(spec, key_values, attributes or {})
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.failures += 1
            DIMENSION_RESOLUTION_FAILURES.labels(family=family.value).inc()
            logger.warning(
                "dimension_resolution_failed",
                family=family.value,
                natural_key=list(natural_key),
                error=str(e),
            )
            return None

        if surrogate is not None:
            self._cache[cache_key] = surrogate
        return surrogate

    async def _lookup(self, spec: DimensionSpec, key_values: Dict[str, str]) -> Optional[int]:
        stmt = select(spec.model.id).where(
            *(getattr(spec.model, column) == value for column, value in key_values.items())
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _create(
        self, spec: DimensionSpec, key_values: Dict[str, str], attributes: Dict[str, Any]
    ) -> Optional[int]:
        # Descriptive attributes are captured once, on first observation.
        values = {**{k: v for k, v in attributes.items() if v is not None}, **key_values}
        stmt = insert_ignoring_conflicts(self.db, spec.model, values, spec.key_columns)
        await self.db.execute(stmt)
        # Commit immediately so the row is visible to concurrent sessions and
        # survives a later dropped fact batch.
        await self.db.commit()
        surrogate = await self._lookup(spec, key_values)
        if surrogate is not None:
            logger.debug("dimension_created", model=spec.model.__tablename__, key=key_values, id=surrogate)
        return surrogate

    async def resolve_row(self, row: SanitizedRow) -> DimensionRefs:
        """Resolve all seven dimension references of a sanitized row."""
        provider = row.provider
        return DimensionRefs(
            cloud_account_id=await self.resolve(
                DimensionFamily.CLOUD_ACCOUNT,
                (provider, row.billing_account_id),
                {
                    "billing_account_name": row.billing_account_name,
                    "billing_currency": row.billing_currency,
                },
            ),
            service_id=await self.resolve(
                DimensionFamily.SERVICE,
                (provider, row.service_name),
                {"service_category": row.service_category},
            ),
            sku_id=await self.resolve(
                DimensionFamily.SKU,
                (row.sku_id,),
                {
                    "sku_price_id": row.sku_price_id,
                    "pricing_category": row.pricing_category,
                    "pricing_unit": row.pricing_unit,
                },
            ),
            resource_id=await self.resolve(
                DimensionFamily.RESOURCE,
                (row.resource_id,),
                {"resource_name": row.resource_name, "resource_type": row.resource_type},
            ),
            region_id=await self.resolve(
                DimensionFamily.REGION,
                (provider, row.region_code),
                {"region_name": row.region_name, "availability_zone": row.availability_zone},
            ),
            sub_account_id=await self.resolve(
                DimensionFamily.SUB_ACCOUNT,
                (row.sub_account_id,),
                {"sub_account_name": row.sub_account_name},
            ),
            commitment_discount_id=await self.resolve(
                DimensionFamily.COMMITMENT_DISCOUNT,
                (row.commitment_discount_id,),
                {
                    "commitment_discount_name": row.commitment_discount_name,
                    "commitment_discount_category": row.commitment_discount_category,
                    "commitment_discount_type": row.commitment_discount_type,
                },
            ),
        )
