"""
Cost Analytics Schemas

Query scope accepted by the cost analysis endpoint and the versioned response
contract it produces. Responses serialize in camelCase for the dashboard client.
"""

from datetime import date, datetime
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = "1.0"

TimeRange = Literal["7d", "30d", "90d", "mtd", "qtd", "ytd", "custom"]
Granularity = Literal["day", "week", "month"]
CompareMode = Literal["previous_period", "year_over_year", "none"]
CostBasis = Literal["billed", "effective", "contracted", "list"]
Dimension = Literal[
    "provider", "service", "region", "account", "subAccount",
    "costCategory", "team", "app", "env",
]
StatusBand = Literal["on_track", "watch", "critical"]

DEFAULT_DIMENSIONS: List[str] = ["service", "provider", "region", "account"]
FILTER_FIELDS = (
    "provider", "service", "region", "account", "sub_account",
    "team", "app", "env", "cost_category", "tag_key", "tag_value",
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnalyticsQuery(CamelModel):
    """
    Scope of one analytics request. Unknown fields are rejected so a typo in a
    filter name is reported instead of silently widening the scope.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    upload_ids: List[str] = Field(default_factory=list)
    time_range: TimeRange = "30d"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    granularity: Granularity = "day"
    compare_to: CompareMode = "previous_period"
    cost_basis: CostBasis = "billed"
    group_by: Dimension = "service"
    dimensions: List[Dimension] = Field(default_factory=lambda: list(DEFAULT_DIMENSIONS))

    provider: Optional[str] = None
    service: Optional[str] = None
    region: Optional[str] = None
    account: Optional[str] = None
    sub_account: Optional[str] = None
    team: Optional[str] = None
    app: Optional[str] = None
    env: Optional[str] = None
    cost_category: Optional[str] = None
    tag_key: Optional[str] = None
    tag_value: Optional[str] = None

    @field_validator(*FILTER_FIELDS, mode="before")
    @classmethod
    def blank_means_all(cls, v):
        """'All' and blank values are the UI's way of saying 'no filter'."""
        if v is None:
            return None
        text = str(v).strip()
        if not text or text.lower() == "all":
            return None
        return text

    @field_validator("upload_ids", mode="before")
    @classmethod
    def clean_upload_ids(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(x).strip() for x in v if x is not None and str(x).strip()]

    @field_validator("dimensions", mode="after")
    @classmethod
    def dedupe_dimensions(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for dim in v:
            if dim not in seen:
                seen.append(dim)
        return seen or list(DEFAULT_DIMENSIONS)

    @model_validator(mode="after")
    def validate_scope(self) -> "AnalyticsQuery":
        if self.time_range == "custom":
            if self.start_date is None or self.end_date is None:
                raise ValueError("custom time range requires both startDate and endDate")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        if self.tag_value is not None and self.tag_key is None:
            raise ValueError("tagValue requires tagKey")
        return self

    def active_filters(self) -> Dict[str, str]:
        """Filters in effect, keyed by their camelCase parameter name."""
        return {
            to_camel(name): getattr(self, name)
            for name in FILTER_FIELDS
            if getattr(self, name) is not None
        }


# --- Response contract ---

class DateWindowOut(CamelModel):
    start: date
    end: date
    days: int


class AnalyticsControls(CamelModel):
    time_range: TimeRange
    granularity: Granularity
    compare_to: CompareMode
    cost_basis: CostBasis
    group_by: Dimension
    dimensions: List[Dimension]
    upload_ids: List[str]
    filters: Dict[str, str]
    current_window: DateWindowOut
    previous_window: Optional[DateWindowOut] = None


class KpiComparison(CamelModel):
    label: str
    delta_value: float = 0.0
    delta_percent: float = 0.0


class KpiCard(CamelModel):
    key: str
    title: str
    value: float
    value_type: Literal["currency", "percent"]
    comparison: KpiComparison
    status: StatusBand
    context: Dict[str, str] = Field(default_factory=dict)


class TrendPoint(CamelModel):
    bucket: date
    current: float
    previous: Optional[float] = None
    delta: Optional[float] = None
    series: Dict[str, float] = Field(default_factory=dict)
    baseline: Optional[float] = None
    is_anomaly: bool = False
    anomaly_impact: float = 0.0


class TrendSection(CamelModel):
    granularity: Granularity
    group_by: Dimension
    series_keys: List[str] = Field(default_factory=list)
    points: List[TrendPoint] = Field(default_factory=list)


class BreakdownRow(CamelModel):
    name: str
    spend: float
    previous_spend: float = 0.0
    share_percent: float = 0.0
    delta_value: float = 0.0
    delta_percent: float = 0.0
    is_aggregate: bool = False
    member_count: Optional[int] = None


class ConcentrationPoint(CamelModel):
    name: str
    spend: float
    share_percent: float
    cumulative_share_percent: float


class ConcentrationSection(CamelModel):
    points: List[ConcentrationPoint] = Field(default_factory=list)
    top_name: str = "N/A"
    top_share_percent: float = 0.0
    top3_share_percent: float = 0.0
    band: StatusBand = "on_track"


class ConcentrationBlock(CamelModel):
    top_service_share_percent: float = 0.0
    top_provider_share_percent: float = 0.0
    top_region_share_percent: float = 0.0
    top3_share_percent: float = 0.0
    band: StatusBand = "on_track"
    dimensions: Dict[str, ConcentrationSection] = Field(default_factory=dict)


class Contributor(CamelModel):
    name: str
    spend: float
    share_percent: float


class LikelyDriver(CamelModel):
    name: str
    dimension: Dimension
    spend: float
    baseline: float
    delta: float


class AnomalyHighlight(CamelModel):
    detected_at: date
    actual: float
    baseline: float
    impact: float
    deviation_percent: float
    direction: Literal["spike", "drop"]
    confidence: Literal["High", "Medium", "Low"]
    top_contributors: List[Contributor] = Field(default_factory=list)
    likely_drivers: List[LikelyDriver] = Field(default_factory=list)


class AnomalySection(CamelModel):
    count: int = 0
    total_impact: float = 0.0
    impact_percent: float = 0.0
    markers: List[date] = Field(default_factory=list)
    highlights: List[AnomalyHighlight] = Field(default_factory=list)


class TopMover(CamelModel):
    name: str
    dimension: Dimension
    current: float
    previous: float
    delta_value: float
    delta_percent: float
    direction: Literal["up", "down"]


class ForecastPoint(CamelModel):
    bucket: date
    projected: float
    lower: float
    upper: float


class ForecastResult(CamelModel):
    projected_spend: float = 0.0
    lower_bound: float = 0.0
    upper_bound: float = 0.0
    confidence: Literal["high", "medium", "low"] = "low"
    predictability_score: float = 0.0
    volatility_score: float = 0.0
    method: str = "none"
    history_points: int = 0
    band_percent: float = 0.0
    points: List[ForecastPoint] = Field(default_factory=list)


class RiskMatrixRow(CamelModel):
    name: str
    spend: float
    spend_share: float
    volatility: float
    risk_level: Literal["High", "Medium", "Low"]


class TrustMetadata(CamelModel):
    as_of: datetime
    last_charge_date: Optional[date] = None
    freshness_hours: Optional[float] = None
    coverage_percent: float = 0.0
    provider_coverage: float = 0.0
    service_coverage: float = 0.0
    region_coverage: float = 0.0
    matched_rows: int = 0
    total_rows: int = 0
    truncated: bool = False
    confidence: Literal["High", "Medium", "Low"] = "Low"


class CostAnalyticsResponse(CamelModel):
    schema_version: str = SCHEMA_VERSION
    as_of: datetime
    controls: AnalyticsControls
    kpis: List[KpiCard]
    trend: TrendSection
    breakdowns: Dict[str, List[BreakdownRow]]
    concentration: ConcentrationBlock
    anomalies: AnomalySection
    top_movers: List[TopMover]
    forecast: ForecastResult
    risk_matrix: List[RiskMatrixRow]
    trust: TrustMetadata
