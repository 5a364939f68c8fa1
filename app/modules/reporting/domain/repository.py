"""
Fact Store read access for analytics.

Every read is constrained by upload ids and a charge-date window, and equality
filters on dimension attributes and tags are pushed into SQL so the database
reduces the scope before anything reaches Python. Tag-alias dimensions
(team/app/env) need case-insensitive key matching across several tag names and
are evaluated on each fetched chunk, before a row counts against the safety limit.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd
import structlog
from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import BillingUsageFact
from app.models.dimensions import CloudAccount, Region, Service, SubAccount
from app.modules.reporting.domain.windows import DateWindow
from app.shared.core.config import get_settings

logger = structlog.get_logger()

FRAME_COLUMNS = [
    "day", "cost", "provider", "service", "region", "account",
    "sub_account", "cost_category", "team", "app", "env",
]

UNKNOWN_LABELS = {
    "provider": "Unknown",
    "service": "Unknown Service",
    "region": "Unknown Region",
    "account": "Unallocated Account",
    "sub_account": "Unknown Sub Account",
    "cost_category": "Uncategorized",
    "team": "Unmapped Team",
    "app": "Unmapped App",
    "env": "Unmapped Env",
}

TAG_ALIASES = {
    "team": ("team", "owner", "squad", "business_unit"),
    "app": ("app", "application", "service"),
    "env": ("env", "environment", "stage"),
}

COST_COLUMNS = {
    "billed": BillingUsageFact.billed_cost,
    "effective": BillingUsageFact.effective_cost,
    "contracted": BillingUsageFact.contracted_cost,
    "list": BillingUsageFact.list_cost,
}

READ_CHUNK_ROWS = 5000

_provider_expr = func.coalesce(CloudAccount.provider, Service.provider, Region.provider)


@dataclass(frozen=True)
class FactScope:
    """Upload ids plus equality filters; None means 'no filter'."""
    upload_ids: Tuple[str, ...] = ()
    provider: Optional[str] = None
    service: Optional[str] = None
    region: Optional[str] = None
    account: Optional[str] = None
    sub_account: Optional[str] = None
    cost_category: Optional[str] = None
    team: Optional[str] = None
    app: Optional[str] = None
    env: Optional[str] = None
    tag_key: Optional[str] = None
    tag_value: Optional[str] = None

    @classmethod
    def from_query(cls, query: Any) -> "FactScope":
        return cls(
            upload_ids=tuple(query.upload_ids),
            provider=query.provider,
            service=query.service,
            region=query.region,
            account=query.account,
            sub_account=query.sub_account,
            cost_category=query.cost_category,
            team=query.team,
            app=query.app,
            env=query.env,
            tag_key=query.tag_key,
            tag_value=query.tag_value,
        )

    @property
    def alias_filters(self) -> Dict[str, str]:
        return {
            name: getattr(self, name)
            for name in TAG_ALIASES
            if getattr(self, name) is not None
        }


def tag_alias_value(tags: Any, keys: Sequence[str]) -> Optional[str]:
    """First non-blank tag value among ``keys``, matching tag names case-insensitively."""
    if not isinstance(tags, dict) or not tags:
        return None
    lowered = {str(k).lower(): v for k, v in tags.items()}
    for key in keys:
        value = lowered.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _matches(fk_column, value: str, unknown_label: str, *columns):
    """Equality on any of ``columns``; the unknown label selects rows without the dimension."""
    if value == unknown_label:
        return fk_column.is_(None)
    return or_(*(column == value for column in columns))


class FactRepository:
    def __init__(self, db: AsyncSession, max_rows: Optional[int] = None):
        self.db = db
        self.max_rows = max_rows or get_settings().ANALYTICS_MAX_ROWS

    @staticmethod
    def _joined(stmt: Select) -> Select:
        return (
            stmt.select_from(BillingUsageFact)
            .outerjoin(CloudAccount, BillingUsageFact.cloud_account_id == CloudAccount.id)
            .outerjoin(Service, BillingUsageFact.service_id == Service.id)
            .outerjoin(Region, BillingUsageFact.region_id == Region.id)
            .outerjoin(SubAccount, BillingUsageFact.sub_account_id == SubAccount.id)
        )

    @staticmethod
    def _filters(
        scope: FactScope,
        start: Optional[date] = None,
        end: Optional[date] = None,
        filtered: bool = True,
    ) -> list:
        conditions = []
        if scope.upload_ids:
            conditions.append(BillingUsageFact.upload_id.in_(scope.upload_ids))
        if start is not None:
            conditions.append(BillingUsageFact.charge_period_start >= start)
        if end is not None:
            conditions.append(BillingUsageFact.charge_period_start <= end)
        if start is None and end is None:
            conditions.append(BillingUsageFact.charge_period_start.is_not(None))
        if not filtered:
            return conditions

        if scope.provider is not None:
            if scope.provider == UNKNOWN_LABELS["provider"]:
                conditions.append(or_(_provider_expr.is_(None), _provider_expr == "unknown"))
            else:
                conditions.append(func.lower(_provider_expr) == scope.provider.lower())
        if scope.service is not None:
            conditions.append(_matches(
                BillingUsageFact.service_id, scope.service, UNKNOWN_LABELS["service"],
                Service.service_name,
            ))
        if scope.region is not None:
            conditions.append(_matches(
                BillingUsageFact.region_id, scope.region, UNKNOWN_LABELS["region"],
                Region.region_name, Region.region_code,
            ))
        if scope.account is not None:
            conditions.append(_matches(
                BillingUsageFact.cloud_account_id, scope.account, UNKNOWN_LABELS["account"],
                CloudAccount.billing_account_name, CloudAccount.billing_account_id,
            ))
        if scope.sub_account is not None:
            conditions.append(_matches(
                BillingUsageFact.sub_account_id, scope.sub_account, UNKNOWN_LABELS["sub_account"],
                SubAccount.sub_account_name, SubAccount.sub_account_id,
            ))
        if scope.cost_category is not None:
            conditions.append(_matches(
                BillingUsageFact.charge_category, scope.cost_category, UNKNOWN_LABELS["cost_category"],
                BillingUsageFact.charge_category,
            ))
        if scope.tag_key is not None:
            tag = BillingUsageFact.tags[scope.tag_key].as_string()
            if scope.tag_value is not None:
                conditions.append(tag == scope.tag_value)
            else:
                conditions.append(tag.is_not(None))
        return conditions

    async def latest_charge_date(self, scope: FactScope, not_after: Optional[date] = None) -> Optional[date]:
        """Most recent charge date in scope, ignoring dates after ``not_after``."""
        conditions = self._filters(scope, end=not_after)
        stmt = self._joined(select(func.max(BillingUsageFact.charge_period_start))).where(and_(*conditions))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def count_facts(
        self, scope: FactScope, start: date, end: date, filtered: bool = True
    ) -> int:
        """Rows in the window; ``filtered=False`` counts the whole upload scope."""
        conditions = self._filters(scope, start, end, filtered=filtered)
        stmt = self._joined(select(func.count(BillingUsageFact.id))).where(and_(*conditions))
        result = await self.db.execute(stmt)
        return int(result.scalar() or 0)

    def _alias_match(self, tags: Any, alias_filters: Dict[str, str]) -> bool:
        for dimension, value in alias_filters.items():
            label = tag_alias_value(tags, TAG_ALIASES[dimension]) or UNKNOWN_LABELS[dimension]
            if label != value:
                return False
        return True

    async def _read_window(
        self, base: Select, scope: FactScope, window: DateWindow, budget: int
    ) -> Tuple[List[tuple], bool]:
        """
        Reads one window in id-ordered chunks, applying the tag-alias filters
        before a row counts against ``budget``.
        """
        alias_filters = scope.alias_filters
        chunk_size = min(budget + 1, READ_CHUNK_ROWS)
        kept: List[tuple] = []
        last_id = 0
        while True:
            stmt = (
                base.where(
                    BillingUsageFact.charge_period_start.between(window.start, window.end),
                    BillingUsageFact.id > last_id,
                )
                .order_by(BillingUsageFact.id)
                .limit(chunk_size)
            )
            chunk = (await self.db.execute(stmt)).all()
            for row in chunk:
                last_id = row.id
                if alias_filters and not self._alias_match(row.tags, alias_filters):
                    continue
                if len(kept) >= budget:
                    return kept, True
                kept.append(tuple(row)[1:])
            if len(chunk) < chunk_size:
                return kept, False

    async def load_scoped_frame(
        self, scope: FactScope, windows: Sequence[DateWindow], cost_basis: str = "billed"
    ) -> Tuple[pd.DataFrame, bool]:
        """
        Loads the scoped facts of ``windows`` as a frame with one row per fact and
        the display label of every analytics dimension. Windows are read in the
        order given and share the safety limit, so the first one has priority.
        Dates between the windows are never read.

        Returns the frame and whether the safety limit truncated it.
        """
        cost_column = COST_COLUMNS.get(cost_basis, BillingUsageFact.billed_cost)
        base = self._joined(
            select(
                BillingUsageFact.id,
                BillingUsageFact.charge_period_start.label("day"),
                cost_column.label("cost"),
                _provider_expr.label("provider"),
                Service.service_name.label("service"),
                func.coalesce(Region.region_name, Region.region_code).label("region"),
                func.coalesce(CloudAccount.billing_account_name, CloudAccount.billing_account_id).label("account"),
                func.coalesce(SubAccount.sub_account_name, SubAccount.sub_account_id).label("sub_account"),
                BillingUsageFact.charge_category.label("cost_category"),
                BillingUsageFact.tags.label("tags"),
            )
        ).where(and_(*self._filters(scope)))

        rows: List[tuple] = []
        truncated = False
        for window in windows:
            window_rows, truncated = await self._read_window(base, scope, window, self.max_rows - len(rows))
            rows.extend(window_rows)
            if truncated:
                logger.warning(
                    "query_hit_safety_limit",
                    limit=self.max_rows,
                    start=window.start.isoformat(),
                    end=window.end.isoformat(),
                    msg="Analytics scope truncated. Narrow the filters or the time range.",
                )
                break

        columns = ["day", "cost", "provider", "service", "region", "account", "sub_account", "cost_category", "tags"]
        frame = pd.DataFrame(rows, columns=columns)
        if frame.empty:
            return pd.DataFrame(columns=FRAME_COLUMNS), truncated

        frame["cost"] = frame["cost"].fillna(0).map(float)
        frame.loc[frame["provider"] == "unknown", "provider"] = None
        tags = frame.pop("tags")
        for dimension, aliases in TAG_ALIASES.items():
            frame[dimension] = tags.map(lambda t, keys=aliases: tag_alias_value(t, keys))
        for column, label in UNKNOWN_LABELS.items():
            frame[column] = frame[column].fillna(label)

        return frame[FRAME_COLUMNS].reset_index(drop=True), truncated
