from datetime import date
from typing import Annotated, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.reporting.domain.service import CostAnalyticsService
from app.schemas.analytics import (
    AnalyticsQuery,
    CompareMode,
    CostAnalyticsResponse,
    CostBasis,
    Dimension,
    Granularity,
    TimeRange,
)
from app.shared.core.exceptions import InvalidScopeError
from app.shared.db.session import get_db

router = APIRouter(tags=["Cost Analytics"])
logger = structlog.get_logger()

ALLOWED_PARAMS = {to_camel(name) for name in AnalyticsQuery.model_fields}


def analytics_query(
    request: Request,
    upload_ids: Annotated[List[str], Query(alias="uploadIds")] = [],
    time_range: Annotated[TimeRange, Query(alias="timeRange")] = "30d",
    start_date: Annotated[Optional[date], Query(alias="startDate")] = None,
    end_date: Annotated[Optional[date], Query(alias="endDate")] = None,
    granularity: Granularity = "day",
    compare_to: Annotated[CompareMode, Query(alias="compareTo")] = "previous_period",
    cost_basis: Annotated[CostBasis, Query(alias="costBasis")] = "billed",
    group_by: Annotated[Dimension, Query(alias="groupBy")] = "service",
    dimensions: Annotated[Optional[List[Dimension]], Query()] = None,
    provider: Optional[str] = None,
    service: Optional[str] = None,
    region: Optional[str] = None,
    account: Optional[str] = None,
    sub_account: Annotated[Optional[str], Query(alias="subAccount")] = None,
    team: Optional[str] = None,
    app: Optional[str] = None,
    env: Optional[str] = None,
    cost_category: Annotated[Optional[str], Query(alias="costCategory")] = None,
    tag_key: Annotated[Optional[str], Query(alias="tagKey")] = None,
    tag_value: Annotated[Optional[str], Query(alias="tagValue")] = None,
) -> AnalyticsQuery:
    """
    Parses the analytics scope. Unknown parameters are rejected so the client can
    tell a malformed request from a scope that matched nothing.
    """
    unknown = sorted(set(request.query_params.keys()) - ALLOWED_PARAMS)
    if unknown:
        raise InvalidScopeError(
            f"Unknown query parameter(s): {', '.join(unknown)}",
            code="unknown_parameter",
            details={"unknown": unknown},
        )

    params = dict(
        upload_ids=upload_ids,
        time_range=time_range,
        start_date=start_date,
        end_date=end_date,
        granularity=granularity,
        compare_to=compare_to,
        cost_basis=cost_basis,
        group_by=group_by,
        provider=provider,
        service=service,
        region=region,
        account=account,
        sub_account=sub_account,
        team=team,
        app=app,
        env=env,
        cost_category=cost_category,
        tag_key=tag_key,
        tag_value=tag_value,
    )
    if dimensions:
        params["dimensions"] = dimensions
    try:
        return AnalyticsQuery(**params)
    except ValidationError as e:
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise InvalidScopeError("Invalid analytics scope", details={"errors": errors}) from e


@router.get("/cost-analysis", response_model=CostAnalyticsResponse)
async def get_cost_analysis(
    query: Annotated[AnalyticsQuery, Depends(analytics_query)],
    db: AsyncSession = Depends(get_db),
):
    """
    Cost analysis for a scope: KPI cards, trend with comparison, breakdowns,
    concentration, anomalies, top movers, forecast, risk matrix and trust metadata.
    An empty scope returns zero-valued sections.
    """
    return await CostAnalyticsService(db).get_cost_analysis(query)
