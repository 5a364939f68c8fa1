"""
Analytics Payload Assembler

Composes engine output into the versioned response contract. Apart from the
explicit ``as_of`` timestamp the payload depends only on the scope and the data.
"""

from datetime import datetime, time, timedelta, timezone
from typing import List, Optional

from app.modules.reporting.domain.analytics import AnalyticsResult, delta_percent
from app.modules.reporting.domain.windows import DateWindow
from app.schemas.analytics import (
    SCHEMA_VERSION,
    AnalyticsControls,
    AnalyticsQuery,
    CostAnalyticsResponse,
    DateWindowOut,
    KpiCard,
    KpiComparison,
    TrendSection,
    TrustMetadata,
)

VOLATILITY_STABILITY_TARGET = 12.0
CONCENTRATION_RISK_TARGET = 25.0

# (watch, critical) thresholds per KPI card
TOTAL_SPEND_DELTA_BANDS = (3.0, 10.0)
RUN_RATE_DELTA_BANDS = (3.0, 8.0)
PEAK_VS_RUN_RATE_BANDS = (20.0, 50.0)
VOLATILITY_BANDS = (12.0, 20.0)
CONCENTRATION_RISK_BANDS = (25.0, 40.0)


def to_status(value: float, watch_threshold: float, critical_threshold: float) -> str:
    if value >= critical_threshold:
        return "critical"
    if value >= watch_threshold:
        return "watch"
    return "on_track"


def classify_health(freshness_hours: Optional[float], coverage_percent: float) -> str:
    """Trust level from data freshness and dimension coverage."""
    hours = 9999.0 if freshness_hours is None else freshness_hours
    if hours <= 48 and coverage_percent >= 95:
        return "High"
    if hours <= 120 and coverage_percent >= 85:
        return "Medium"
    return "Low"


def _window_out(window: Optional[DateWindow]) -> Optional[DateWindowOut]:
    if window is None:
        return None
    return DateWindowOut(start=window.start, end=window.end, days=window.days)


def _r(value: float) -> float:
    return round(float(value), 2)


class AnalyticsPayloadAssembler:
    def assemble(
        self,
        result: AnalyticsResult,
        query: AnalyticsQuery,
        as_of: datetime,
        total_rows: int = 0,
        truncated: bool = False,
    ) -> CostAnalyticsResponse:
        if as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=timezone.utc)

        return CostAnalyticsResponse(
            schema_version=SCHEMA_VERSION,
            as_of=as_of,
            controls=AnalyticsControls(
                time_range=query.time_range,
                granularity=query.granularity,
                compare_to=query.compare_to,
                cost_basis=query.cost_basis,
                group_by=query.group_by,
                dimensions=list(query.dimensions),
                upload_ids=list(query.upload_ids),
                filters=query.active_filters(),
                current_window=_window_out(result.current_window),
                previous_window=_window_out(result.previous_window),
            ),
            kpis=self._kpis(result),
            trend=result.trend or TrendSection(granularity=query.granularity, group_by=query.group_by),
            breakdowns=result.breakdowns,
            concentration=result.concentration,
            anomalies=result.anomalies,
            top_movers=result.top_movers,
            forecast=result.forecast,
            risk_matrix=result.risk_matrix,
            trust=self._trust(result, as_of, total_rows, truncated),
        )

    def _kpis(self, result: AnalyticsResult) -> List[KpiCard]:
        total = result.total_spend
        has_previous = result.previous_total is not None
        previous = result.previous_total or 0.0

        avg_daily = total / result.current_window.days if result.current_window.days else 0.0
        previous_days = result.previous_window.days if result.previous_window else 0
        prev_avg_daily = previous / previous_days if previous_days else 0.0

        bucket_count = len(result.trend.points) if result.trend else 0
        avg_bucket = total / bucket_count if bucket_count else 0.0
        peak_vs_run_rate = (result.peak_value - avg_bucket) / avg_bucket * 100 if avg_bucket > 0 else 0.0

        total_delta_pct = delta_percent(total, previous) if has_previous else 0.0
        run_rate_delta_pct = delta_percent(avg_daily, prev_avg_daily) if has_previous else 0.0

        volatility = result.forecast.volatility_score
        volatility_gap = volatility - VOLATILITY_STABILITY_TARGET

        source_name, concentration = self._concentration_source(result)
        concentration_gap = concentration - CONCENTRATION_RISK_TARGET

        return [
            KpiCard(
                key="totalSpend",
                title="Total spend",
                value=_r(total),
                value_type="currency",
                comparison=KpiComparison(
                    label="vs prior period" if has_previous else "no comparison",
                    delta_value=_r(total - previous) if has_previous else 0.0,
                    delta_percent=_r(total_delta_pct),
                ),
                status=to_status(total_delta_pct, *TOTAL_SPEND_DELTA_BANDS),
            ),
            KpiCard(
                key="runRateDaily",
                title="Run-rate (avg daily)",
                value=_r(avg_daily),
                value_type="currency",
                comparison=KpiComparison(
                    label="vs prior daily average" if has_previous else "no comparison",
                    delta_value=_r(avg_daily - prev_avg_daily) if has_previous else 0.0,
                    delta_percent=_r(run_rate_delta_pct),
                ),
                status=to_status(run_rate_delta_pct, *RUN_RATE_DELTA_BANDS),
            ),
            KpiCard(
                key="peakSpend",
                title=f"Peak {result.granularity} spend",
                value=_r(result.peak_value),
                value_type="currency",
                comparison=KpiComparison(
                    label="vs run-rate",
                    delta_value=_r(result.peak_value - avg_bucket),
                    delta_percent=_r(peak_vs_run_rate),
                ),
                status=to_status(peak_vs_run_rate, *PEAK_VS_RUN_RATE_BANDS),
                context={"peakDate": result.peak_bucket.isoformat() if result.peak_bucket else "N/A"},
            ),
            KpiCard(
                key="volatilityIndex",
                title="Volatility",
                value=_r(volatility),
                value_type="percent",
                comparison=KpiComparison(
                    label=f"vs stability target ({VOLATILITY_STABILITY_TARGET:g}%)",
                    delta_value=_r(volatility_gap),
                    delta_percent=_r(volatility_gap / VOLATILITY_STABILITY_TARGET * 100),
                ),
                status=to_status(volatility, *VOLATILITY_BANDS),
            ),
            KpiCard(
                key="concentrationRisk",
                title="Concentration risk",
                value=_r(concentration),
                value_type="percent",
                comparison=KpiComparison(
                    label=f"vs concentration target ({CONCENTRATION_RISK_TARGET:g}%)",
                    delta_value=_r(concentration_gap),
                    delta_percent=_r(concentration_gap / CONCENTRATION_RISK_TARGET * 100),
                ),
                status=to_status(concentration, *CONCENTRATION_RISK_BANDS),
                context={"source": source_name, "band": result.concentration.band},
            ),
        ]

    @staticmethod
    def _concentration_source(result: AnalyticsResult) -> tuple[str, float]:
        """Largest single-entity share across services and accounts."""
        block = result.concentration
        best_name, best_share = "N/A", 0.0
        for dimension in ("service", "account"):
            section = block.dimensions.get(dimension)
            if section is None or not section.points:
                continue
            if section.top_share_percent > best_share:
                best_name = f"{dimension}: {section.top_name}"
                best_share = section.top_share_percent
        if best_name == "N/A" and block.top_service_share_percent > 0:
            best_name, best_share = "service", block.top_service_share_percent
        return best_name, best_share

    @staticmethod
    def _trust(result: AnalyticsResult, as_of: datetime, total_rows: int, truncated: bool) -> TrustMetadata:
        freshness_hours = None
        if result.last_charge_date is not None:
            # A charge day is complete at the following midnight UTC.
            complete_at = datetime.combine(result.last_charge_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
            freshness_hours = round(max(0.0, (as_of - complete_at).total_seconds() / 3600), 1)

        coverage = result.coverage_percent
        return TrustMetadata(
            as_of=as_of,
            last_charge_date=result.last_charge_date,
            freshness_hours=freshness_hours,
            coverage_percent=coverage,
            provider_coverage=result.provider_coverage,
            service_coverage=result.service_coverage,
            region_coverage=result.region_coverage,
            matched_rows=result.matched_rows,
            total_rows=max(total_rows, result.matched_rows),
            truncated=truncated,
            confidence=classify_health(freshness_hours, coverage) if result.matched_rows else "Low",
        )
