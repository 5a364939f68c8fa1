"""
Spend Forecaster

Deterministic projection of the next period from the bucket totals of the
current window. Holt's linear exponential smoothing (statsmodels) is used once
there is enough history; shorter series fall back to a linearly weighted moving
average. The band around the projection widens with observed volatility.
"""

from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Sequence

import numpy as np
import structlog
from statsmodels.tsa.holtwinters import ExponentialSmoothing

from app.modules.reporting.domain.windows import next_bucket
from app.schemas.analytics import ForecastPoint, ForecastResult
from app.shared.core.config import get_settings

logger = structlog.get_logger()


def volatility_score(values: Sequence[float]) -> float:
    """Coefficient of variation of ``values`` in percent, clipped to 0-100."""
    series = np.asarray(values, dtype=float)
    if series.size == 0:
        return 0.0
    mean = series.mean()
    if mean <= 0:
        return 0.0
    cv = float(series.std() / mean * 100)
    return float(np.clip(cv, 0.0, 100.0))


def weighted_moving_average(values: Sequence[float]) -> float:
    """Linearly weighted mean: the newest value weighs ``n``, the oldest weighs 1."""
    series = np.asarray(values, dtype=float)
    if series.size == 0:
        return 0.0
    weights = np.arange(1, series.size + 1, dtype=float)
    return float(np.dot(series, weights) / weights.sum())


@dataclass
class ForecastConfig:
    min_history: int = 7
    min_band: float = 0.05
    band_multiplier: float = 1.0
    high_confidence_max: float = 12.0
    medium_confidence_max: float = 25.0

    @classmethod
    def from_settings(cls) -> "ForecastConfig":
        settings = get_settings()
        return cls(
            min_history=settings.FORECAST_MIN_HISTORY,
            min_band=settings.FORECAST_MIN_BAND,
            band_multiplier=settings.FORECAST_BAND_MULTIPLIER,
            high_confidence_max=settings.VOLATILITY_HIGH_CONFIDENCE_MAX,
            medium_confidence_max=settings.VOLATILITY_MEDIUM_CONFIDENCE_MAX,
        )


class SpendForecaster:
    def __init__(self, config: Optional[ForecastConfig] = None):
        self.config = config or ForecastConfig.from_settings()

    def confidence_label(self, volatility: float, history_points: int) -> str:
        if history_points < self.config.min_history:
            return "low"
        if volatility <= self.config.high_confidence_max:
            return "high"
        if volatility <= self.config.medium_confidence_max:
            return "medium"
        return "low"

    def band(self, volatility: float) -> float:
        return max(self.config.min_band, volatility / 100 * self.config.band_multiplier)

    def _holt(self, history: np.ndarray, horizon: int) -> np.ndarray:
        model = ExponentialSmoothing(history, trend="add", seasonal=None).fit()
        return np.asarray(model.forecast(horizon), dtype=float)

    def project(self, history: Sequence[float], horizon: int) -> tuple[np.ndarray, str]:
        """Per-bucket projections for the next ``horizon`` buckets and the method used."""
        series = np.asarray(history, dtype=float)
        if horizon <= 0 or series.size == 0 or not np.any(series):
            return np.zeros(max(horizon, 0)), "none"

        if series.size >= self.config.min_history and np.ptp(series) > 0:
            try:
                values = self._holt(series, horizon)
                if np.all(np.isfinite(values)):
                    return np.clip(values, 0.0, None), "holt_linear"
                logger.warning("holt_forecast_non_finite_falling_back", history_points=int(series.size))
            except (ValueError, np.linalg.LinAlgError) as e:
                logger.warning("holt_forecast_failed_falling_back", error=str(e))

        level = max(weighted_moving_average(series), 0.0)
        return np.full(horizon, level), "weighted_moving_average"

    def forecast(
        self,
        history: Sequence[float],
        last_bucket: Optional[date],
        granularity: str,
        horizon: Optional[int] = None,
    ) -> ForecastResult:
        """
        Forecast the next period. ``horizon`` defaults to the number of history
        buckets, i.e. a period as long as the current window.
        """
        values = [float(v) for v in history]
        horizon = len(values) if horizon is None else horizon
        volatility = volatility_score(values)
        # No spend means nothing to be predictable about.
        predictability = 100.0 - volatility if any(values) else 0.0

        projections, method = self.project(values, horizon)
        band = self.band(volatility)

        points: List[ForecastPoint] = []
        bucket = last_bucket
        if bucket is not None:
            for projected in projections:
                bucket = next_bucket(bucket, granularity)
                points.append(ForecastPoint(
                    bucket=bucket,
                    projected=round(float(projected), 4),
                    lower=round(max(0.0, float(projected) * (1 - band)), 4),
                    upper=round(float(projected) * (1 + band), 4),
                ))

        projected_spend = float(projections.sum()) if projections.size else 0.0
        return ForecastResult(
            projected_spend=round(projected_spend, 2),
            lower_bound=round(max(0.0, projected_spend * (1 - band)), 2),
            upper_bound=round(projected_spend * (1 + band), 2),
            confidence=self.confidence_label(volatility, len(values)),
            predictability_score=round(predictability, 2),
            volatility_score=round(volatility, 2),
            method=method,
            history_points=len(values),
            band_percent=round(band * 100, 2),
            points=points,
        )
