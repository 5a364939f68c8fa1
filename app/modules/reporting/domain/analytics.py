"""
Cost Analytics Engine

Pure computations over a scoped fact frame (one row per fact, columns
``day, cost`` plus the display label of every dimension). Nothing here touches
the database: the service loads the frame, this module derives breakdowns,
concentration, trend-with-compare, anomalies, top movers, risk and forecast.

An empty frame is a valid scope and yields zero-valued structures.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from app.modules.reporting.domain.forecaster import SpendForecaster, volatility_score
from app.modules.reporting.domain.repository import FRAME_COLUMNS, UNKNOWN_LABELS
from app.modules.reporting.domain.windows import AnalysisWindows, DateWindow, bucket_range, bucket_start
from app.schemas.analytics import (
    AnomalyHighlight,
    AnomalySection,
    BreakdownRow,
    ConcentrationBlock,
    ConcentrationPoint,
    ConcentrationSection,
    Contributor,
    ForecastResult,
    LikelyDriver,
    RiskMatrixRow,
    TopMover,
    TrendPoint,
    TrendSection,
)
from app.shared.core.config import get_settings

DIMENSION_COLUMNS = {
    "provider": "provider",
    "service": "service",
    "region": "region",
    "account": "account",
    "subAccount": "sub_account",
    "costCategory": "cost_category",
    "team": "team",
    "app": "app",
    "env": "env",
}

OTHERS_LABEL = "Others"
OTHER_SERIES = "Other"

# Risk matrix: per-service spend share x volatility
RISK_MATRIX_MAX_ROWS = 20
RISK_HIGH_SHARE = 20.0
RISK_HIGH_VOLATILITY = 25.0
RISK_MEDIUM_SHARE = 12.0
RISK_MEDIUM_VOLATILITY = 18.0
_RISK_PRIORITY = {"High": 0, "Medium": 1, "Low": 2}

TOP_CONTRIBUTORS = 3
LIKELY_DRIVERS = 3


def _money(value: float) -> float:
    return round(float(value), 4)


def _pct(value: float) -> float:
    return round(float(value), 2)


def delta_percent(current: float, previous: float) -> float:
    """Growth vs previous; from a zero base any positive spend counts as +100%."""
    if previous:
        return (current - previous) / abs(previous) * 100
    return 100.0 if current > 0 else 0.0


def rank_entities(spend: pd.Series) -> pd.DataFrame:
    """Entities sorted by spend descending, name ascending on ties."""
    ranked = pd.DataFrame({"name": spend.index.astype(str), "spend": spend.to_numpy(dtype=float)})
    return ranked.sort_values(["spend", "name"], ascending=[False, True], kind="mergesort").reset_index(drop=True)


def concentration_band(top3_share: float, watch_threshold: float, critical_threshold: float) -> str:
    if top3_share >= critical_threshold:
        return "critical"
    if top3_share >= watch_threshold:
        return "watch"
    return "on_track"


def detect_bucket_anomaly(total: float, baseline: float, std: float, multiplier: float) -> Tuple[bool, float]:
    """
    A bucket is anomalous when it deviates from its baseline by more than
    ``multiplier`` standard deviations. Impact is the absolute deviation when
    flagged, zero otherwise.
    """
    deviation = abs(total - baseline)
    if deviation > multiplier * std:
        return True, deviation
    return False, 0.0


@dataclass
class AnomalyFlag:
    is_anomaly: bool = False
    impact: float = 0.0
    baseline: Optional[float] = None
    std: Optional[float] = None


def rolling_anomalies(
    totals: Sequence[float],
    window: int,
    min_history: int,
    multiplier: float,
    min_relative_std: float,
) -> List[AnomalyFlag]:
    """
    Flag each bucket against the mean of up to ``window`` trailing buckets.
    Buckets with fewer than ``min_history`` predecessors are never flagged.
    The std is floored at ``min_relative_std * |baseline|`` so a perfectly flat
    history does not turn every cent of movement into an anomaly.
    """
    values = [float(v) for v in totals]
    flags: List[AnomalyFlag] = []
    for i, total in enumerate(values):
        history = values[max(0, i - window):i]
        if len(history) < min_history:
            flags.append(AnomalyFlag())
            continue
        baseline = float(np.mean(history))
        std = max(float(np.std(history)), min_relative_std * abs(baseline))
        is_anomaly, impact = detect_bucket_anomaly(total, baseline, std, multiplier)
        flags.append(AnomalyFlag(is_anomaly=is_anomaly, impact=impact, baseline=baseline, std=std))
    return flags


def build_breakdown(current: pd.Series, previous: pd.Series, top_n: int) -> List[BreakdownRow]:
    """
    Top ``top_n`` entities by current spend plus one ``Others`` rollup. Current
    spend over all rows adds up to the scoped total.
    """
    if current.empty:
        return []
    total = float(current.sum())
    ranked = rank_entities(current)
    previous = previous.astype(float) if not previous.empty else previous

    def row(name: str, spend: float, prev: float, **extra) -> BreakdownRow:
        return BreakdownRow(
            name=name,
            spend=_money(spend),
            previous_spend=_money(prev),
            share_percent=_pct(spend / total * 100) if total > 0 else 0.0,
            delta_value=_money(spend - prev),
            delta_percent=_pct(delta_percent(spend, prev)),
            **extra,
        )

    rows = [
        row(r.name, r.spend, float(previous.get(r.name, 0.0)))
        for r in ranked.head(top_n).itertuples(index=False)
    ]
    rest = ranked.iloc[top_n:]
    if not rest.empty:
        rest_previous = float(sum(float(previous.get(name, 0.0)) for name in rest["name"]))
        rows.append(row(
            OTHERS_LABEL,
            float(rest["spend"].sum()),
            rest_previous,
            is_aggregate=True,
            member_count=len(rest),
        ))
    return rows


def build_concentration(
    spend: pd.Series, watch_threshold: float, critical_threshold: float
) -> ConcentrationSection:
    """
    Pareto view of one dimension. Credits cannot own a share of spend, so
    negative entity totals are clipped to zero before shares are taken.
    """
    if spend.empty:
        return ConcentrationSection()
    ranked = rank_entities(spend.clip(lower=0.0))
    total = float(ranked["spend"].sum())
    if total <= 0:
        points = [
            ConcentrationPoint(name=r.name, spend=0.0, share_percent=0.0, cumulative_share_percent=0.0)
            for r in ranked.itertuples(index=False)
        ]
        return ConcentrationSection(points=points, top_name=points[0].name)

    shares = ranked["spend"] / total * 100
    cumulative = np.maximum.accumulate(np.round(shares.cumsum().to_numpy(), 2))
    cumulative[-1] = 100.0
    points = [
        ConcentrationPoint(
            name=r.name,
            spend=_money(r.spend),
            share_percent=_pct(share),
            cumulative_share_percent=float(cum),
        )
        for r, share, cum in zip(ranked.itertuples(index=False), shares, cumulative)
    ]
    top3 = _pct(shares.head(3).sum())
    return ConcentrationSection(
        points=points,
        top_name=points[0].name,
        top_share_percent=points[0].share_percent,
        top3_share_percent=top3,
        band=concentration_band(top3, watch_threshold, critical_threshold),
    )


@dataclass
class AnalyticsConfig:
    top_n: int = 5
    top_movers: int = 5
    anomaly_highlights: int = 3
    anomaly_window: int = 7
    anomaly_min_history: int = 3
    anomaly_std_multiplier: float = 2.0
    anomaly_min_relative_std: float = 0.05
    concentration_watch: float = 50.0
    concentration_critical: float = 75.0

    @classmethod
    def from_settings(cls) -> "AnalyticsConfig":
        settings = get_settings()
        return cls(
            top_n=settings.ANALYTICS_TOP_N,
            top_movers=settings.ANALYTICS_TOP_MOVERS,
            anomaly_highlights=settings.ANALYTICS_ANOMALY_HIGHLIGHTS,
            anomaly_window=settings.ANOMALY_WINDOW,
            anomaly_min_history=settings.ANOMALY_MIN_HISTORY,
            anomaly_std_multiplier=settings.ANOMALY_STD_MULTIPLIER,
            anomaly_min_relative_std=settings.ANOMALY_MIN_RELATIVE_STD,
            concentration_watch=settings.CONCENTRATION_WATCH_THRESHOLD,
            concentration_critical=settings.CONCENTRATION_CRITICAL_THRESHOLD,
        )


@dataclass
class AnalyticsResult:
    """Everything the payload assembler needs for one scope."""
    current_window: DateWindow
    previous_window: Optional[DateWindow]
    granularity: str
    group_by: str
    total_spend: float = 0.0
    previous_total: Optional[float] = None
    peak_bucket: Optional[date] = None
    peak_value: float = 0.0
    matched_rows: int = 0
    provider_coverage: float = 0.0
    service_coverage: float = 0.0
    region_coverage: float = 0.0
    last_charge_date: Optional[date] = None
    trend: Optional[TrendSection] = None
    breakdowns: Dict[str, List[BreakdownRow]] = field(default_factory=dict)
    concentration: ConcentrationBlock = field(default_factory=ConcentrationBlock)
    anomalies: AnomalySection = field(default_factory=AnomalySection)
    top_movers: List[TopMover] = field(default_factory=list)
    forecast: ForecastResult = field(default_factory=ForecastResult)
    risk_matrix: List[RiskMatrixRow] = field(default_factory=list)

    @property
    def coverage_percent(self) -> float:
        return _pct((self.provider_coverage + self.service_coverage + self.region_coverage) / 3)


class CostAnalyticsEngine:
    """Stateless per call; safe to share between requests."""

    def __init__(self, config: Optional[AnalyticsConfig] = None, forecaster: Optional[SpendForecaster] = None):
        self.config = config or AnalyticsConfig.from_settings()
        self.forecaster = forecaster or SpendForecaster()

    @staticmethod
    def _slice(frame: pd.DataFrame, window: Optional[DateWindow]) -> pd.DataFrame:
        if window is None or frame.empty:
            return frame.iloc[0:0]
        mask = frame["day"].map(window.contains).astype(bool)
        return frame[mask]

    @staticmethod
    def _spend_by(frame: pd.DataFrame, column: str) -> pd.Series:
        if frame.empty:
            return pd.Series(dtype=float)
        return frame.groupby(column, sort=True)["cost"].sum()

    def analyze(
        self,
        frame: pd.DataFrame,
        windows: AnalysisWindows,
        granularity: str = "day",
        group_by: str = "service",
        dimensions: Sequence[str] = ("service", "provider", "region", "account"),
    ) -> AnalyticsResult:
        if frame is None or frame.empty:
            frame = pd.DataFrame(columns=FRAME_COLUMNS)
        frame = frame.copy()
        frame["cost"] = frame["cost"].astype(float)

        current = self._slice(frame, windows.current).copy()
        previous = self._slice(frame, windows.previous).copy()
        buckets = bucket_range(windows.current, granularity)

        current["bucket"] = current["day"].map(lambda d: bucket_start(d, granularity))
        previous["bucket"] = previous["day"].map(
            lambda d: bucket_start(windows.align_to_current(d), granularity)
        )
        totals = self._bucket_totals(current, buckets)

        result = AnalyticsResult(
            current_window=windows.current,
            previous_window=windows.previous,
            granularity=granularity,
            group_by=group_by,
            total_spend=_money(current["cost"].sum()) if not current.empty else 0.0,
            previous_total=(
                (_money(previous["cost"].sum()) if not previous.empty else 0.0)
                if windows.previous is not None else None
            ),
            matched_rows=len(current),
            last_charge_date=max(current["day"]) if not current.empty else None,
        )
        if not current.empty and totals.max() > 0:
            result.peak_bucket = totals.idxmax()
            result.peak_value = _money(totals.max())
        self._coverage(current, result)

        group_column = DIMENSION_COLUMNS[group_by]
        pivot = self._pivot(current, group_column, buckets)
        flags = rolling_anomalies(
            totals.to_numpy(),
            window=self.config.anomaly_window,
            min_history=self.config.anomaly_min_history,
            multiplier=self.config.anomaly_std_multiplier,
            min_relative_std=self.config.anomaly_min_relative_std,
        )
        result.trend = self._trend(previous, windows, buckets, totals, pivot, granularity, group_by, flags)

        for dimension in dimensions:
            column = DIMENSION_COLUMNS[dimension]
            result.breakdowns[dimension] = build_breakdown(
                self._spend_by(current, column), self._spend_by(previous, column), self.config.top_n
            )
        result.concentration = self._concentration(current, dimensions)
        result.anomalies = self._anomalies(buckets, totals, pivot, flags, group_by, result.total_spend)
        if windows.previous is not None:
            result.top_movers = self._top_movers(current, previous, group_by)
        result.forecast = self.forecaster.forecast(
            totals.to_numpy(), buckets[-1] if buckets else None, granularity
        )
        result.risk_matrix = self._risk_matrix(current, buckets)
        return result

    @staticmethod
    def _bucket_totals(frame: pd.DataFrame, buckets: List[date]) -> pd.Series:
        if frame.empty:
            return pd.Series(0.0, index=pd.Index(buckets, dtype=object), dtype=float)
        return frame.groupby("bucket")["cost"].sum().reindex(buckets, fill_value=0.0).astype(float)

    @staticmethod
    def _pivot(frame: pd.DataFrame, column: str, buckets: List[date]) -> pd.DataFrame:
        """Bucket x entity spend for the current window."""
        if frame.empty:
            return pd.DataFrame(index=pd.Index(buckets, dtype=object), dtype=float)
        pivot = frame.groupby(["bucket", column])["cost"].sum().unstack(fill_value=0.0)
        return pivot.reindex(buckets, fill_value=0.0).astype(float)

    def _coverage(self, current: pd.DataFrame, result: AnalyticsResult) -> None:
        if current.empty:
            return
        rows = len(current)
        for column, attr in (("provider", "provider_coverage"), ("service", "service_coverage"),
                             ("region", "region_coverage")):
            known = int((current[column] != UNKNOWN_LABELS[column]).sum())
            setattr(result, attr, _pct(known / rows * 100))

    def _trend(
        self,
        previous: pd.DataFrame,
        windows: AnalysisWindows,
        buckets: List[date],
        totals: pd.Series,
        pivot: pd.DataFrame,
        granularity: str,
        group_by: str,
        flags: List[AnomalyFlag],
    ) -> TrendSection:
        has_previous = windows.previous is not None
        previous_totals = self._bucket_totals(previous, buckets) if has_previous else None

        top_names = list(rank_entities(pivot.sum()).head(self.config.top_n)["name"]) if not pivot.empty else []
        has_other = len(pivot.columns) > len(top_names)
        series_keys = top_names + ([OTHER_SERIES] if has_other else [])

        points = []
        for bucket, flag in zip(buckets, flags):
            total = float(totals[bucket])
            series = {name: _money(pivot.at[bucket, name]) for name in top_names}
            if has_other:
                series[OTHER_SERIES] = _money(total - sum(float(pivot.at[bucket, n]) for n in top_names))
            prev = float(previous_totals[bucket]) if previous_totals is not None else None
            points.append(TrendPoint(
                bucket=bucket,
                current=_money(total),
                previous=_money(prev) if prev is not None else None,
                delta=_money(total - prev) if prev is not None else None,
                series=series,
                baseline=_money(flag.baseline) if flag.baseline is not None else None,
                is_anomaly=flag.is_anomaly,
                anomaly_impact=_money(flag.impact),
            ))
        return TrendSection(
            granularity=granularity,
            group_by=group_by,
            series_keys=series_keys,
            points=points,
        )

    def _concentration(self, current: pd.DataFrame, dimensions: Sequence[str]) -> ConcentrationBlock:
        watch, critical = self.config.concentration_watch, self.config.concentration_critical
        sections = {
            dimension: build_concentration(self._spend_by(current, DIMENSION_COLUMNS[dimension]), watch, critical)
            for dimension in dimensions
        }
        headline = {
            dimension: sections[dimension] if dimension in sections else build_concentration(
                self._spend_by(current, DIMENSION_COLUMNS[dimension]), watch, critical
            )
            for dimension in ("service", "provider", "region")
        }
        return ConcentrationBlock(
            top_service_share_percent=headline["service"].top_share_percent,
            top_provider_share_percent=headline["provider"].top_share_percent,
            top_region_share_percent=headline["region"].top_share_percent,
            top3_share_percent=headline["service"].top3_share_percent,
            band=headline["service"].band,
            dimensions=sections,
        )

    def _anomalies(
        self,
        buckets: List[date],
        totals: pd.Series,
        pivot: pd.DataFrame,
        flags: List[AnomalyFlag],
        group_by: str,
        total_spend: float,
    ) -> AnomalySection:
        flagged = [(i, flag) for i, flag in enumerate(flags) if flag.is_anomaly]
        if not flagged:
            return AnomalySection()

        total_impact = float(sum(flag.impact for _, flag in flagged))
        ranked = sorted(flagged, key=lambda item: (-item[1].impact, buckets[item[0]]))
        highlights = [
            self._highlight(i, flag, buckets, totals, pivot, group_by)
            for i, flag in ranked[: self.config.anomaly_highlights]
        ]
        return AnomalySection(
            count=len(flagged),
            total_impact=_money(total_impact),
            impact_percent=_pct(total_impact / total_spend * 100) if total_spend > 0 else 0.0,
            markers=[buckets[i] for i, _ in flagged],
            highlights=highlights,
        )

    def _highlight(
        self,
        index: int,
        flag: AnomalyFlag,
        buckets: List[date],
        totals: pd.Series,
        pivot: pd.DataFrame,
        group_by: str,
    ) -> AnomalyHighlight:
        bucket = buckets[index]
        actual = float(totals[bucket])
        baseline = float(flag.baseline or 0.0)
        ratio = flag.impact / baseline if baseline > 0 else float("inf")
        confidence = "High" if ratio > 0.5 else "Medium" if ratio > 0.25 else "Low"
        direction = "spike" if actual >= baseline else "drop"

        contributors: List[Contributor] = []
        drivers: List[LikelyDriver] = []
        if not pivot.empty:
            in_bucket = pivot.loc[bucket]
            for r in rank_entities(in_bucket[in_bucket > 0]).head(TOP_CONTRIBUTORS).itertuples(index=False):
                contributors.append(Contributor(
                    name=r.name,
                    spend=_money(r.spend),
                    share_percent=_pct(r.spend / actual * 100) if actual > 0 else 0.0,
                ))

            trailing = pivot.iloc[max(0, index - self.config.anomaly_window):index]
            entity_baseline = trailing.mean() if not trailing.empty else in_bucket * 0
            movement = in_bucket - entity_baseline
            movement = movement[movement > 0] if direction == "spike" else -movement[movement < 0]
            for r in rank_entities(movement).head(LIKELY_DRIVERS).itertuples(index=False):
                drivers.append(LikelyDriver(
                    name=r.name,
                    dimension=group_by,
                    spend=_money(in_bucket[r.name]),
                    baseline=_money(entity_baseline[r.name]),
                    delta=_money(in_bucket[r.name] - entity_baseline[r.name]),
                ))

        return AnomalyHighlight(
            detected_at=bucket,
            actual=_money(actual),
            baseline=_money(baseline),
            impact=_money(flag.impact),
            deviation_percent=_pct(flag.impact / baseline * 100) if baseline > 0 else 100.0,
            direction=direction,
            confidence=confidence,
            top_contributors=contributors,
            likely_drivers=drivers,
        )

    def _top_movers(self, current: pd.DataFrame, previous: pd.DataFrame, group_by: str) -> List[TopMover]:
        """Entities ranked by absolute change, independent of the share ranking."""
        column = DIMENSION_COLUMNS[group_by]
        movers = pd.DataFrame({
            "current": self._spend_by(current, column),
            "previous": self._spend_by(previous, column),
        }).fillna(0.0)
        if movers.empty:
            return []
        movers["delta"] = movers["current"] - movers["previous"]
        movers = movers[movers["delta"].abs() > 1e-9].copy()
        movers["name"] = movers.index.astype(str)
        movers["abs_delta"] = movers["delta"].abs()
        movers = movers.sort_values(["abs_delta", "name"], ascending=[False, True], kind="mergesort")
        return [
            TopMover(
                name=r.name,
                dimension=group_by,
                current=_money(r.current),
                previous=_money(r.previous),
                delta_value=_money(r.delta),
                delta_percent=_pct(delta_percent(r.current, r.previous)),
                direction="up" if r.delta > 0 else "down",
            )
            for r in movers.head(self.config.top_movers).itertuples(index=False)
        ]

    def _risk_matrix(self, current: pd.DataFrame, buckets: List[date]) -> List[RiskMatrixRow]:
        if current.empty:
            return []
        services = rank_entities(self._spend_by(current, "service")).head(RISK_MATRIX_MAX_ROWS)
        total = float(services["spend"].sum()) or 1.0
        by_bucket = current.groupby(["service", "bucket"])["cost"].sum()

        rows = []
        for r in services.itertuples(index=False):
            # Buckets without spend count as zero
            series = by_bucket.loc[r.name].reindex(buckets, fill_value=0.0)
            volatility = volatility_score(series.to_numpy())
            share = r.spend / total * 100
            if share >= RISK_HIGH_SHARE and volatility >= RISK_HIGH_VOLATILITY:
                level = "High"
            elif share >= RISK_MEDIUM_SHARE or volatility >= RISK_MEDIUM_VOLATILITY:
                level = "Medium"
            else:
                level = "Low"
            rows.append(RiskMatrixRow(
                name=r.name,
                spend=_money(r.spend),
                spend_share=_pct(share),
                volatility=_pct(volatility),
                risk_level=level,
            ))
        rows.sort(key=lambda x: (_RISK_PRIORITY[x.risk_level], -x.spend, x.name))
        return rows
