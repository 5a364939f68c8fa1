"""
Tests for the spend forecaster

Covers:
- Volatility and predictability scores
- Method selection (Holt vs weighted moving average)
- Confidence labels and volatility-proportional bands
"""

from datetime import date

import numpy as np
import pytest

from app.modules.reporting.domain.forecaster import (
    ForecastConfig,
    SpendForecaster,
    volatility_score,
    weighted_moving_average,
)


@pytest.fixture
def forecaster():
    return SpendForecaster(ForecastConfig())


class TestScores:
    def test_flat_series_has_zero_volatility(self):
        assert volatility_score([100.0] * 10) == 0.0

    def test_volatility_is_coefficient_of_variation(self):
        # mean 100, population std 50
        assert volatility_score([50.0, 150.0]) == pytest.approx(50.0)

    def test_volatility_is_clipped(self):
        assert volatility_score([0.0, 0.0, 0.0, 1000.0]) == 100.0
        assert volatility_score([]) == 0.0
        assert volatility_score([-5.0, -5.0]) == 0.0

    def test_predictability_decreases_with_volatility(self, forecaster):
        steady = forecaster.forecast([100, 101, 99, 100, 100, 102, 98], date(2026, 1, 7), "day")
        noisy = forecaster.forecast([20, 180, 40, 160, 60, 140, 100], date(2026, 1, 7), "day")
        assert 0 <= noisy.predictability_score < steady.predictability_score <= 100

    def test_weighted_moving_average_favours_recent_buckets(self):
        assert weighted_moving_average([0.0, 0.0, 30.0]) == pytest.approx(15.0)
        assert weighted_moving_average([]) == 0.0


class TestProjection:
    def test_empty_or_zero_history(self, forecaster):
        result = forecaster.forecast([0, 0, 0], date(2026, 1, 3), "day")
        assert result.method == "none"
        assert result.projected_spend == 0.0
        assert result.predictability_score == 0.0
        assert result.confidence == "low"

    def test_flat_short_history_uses_moving_average(self, forecaster):
        result = forecaster.forecast([100.0] * 5, date(2026, 1, 5), "day")
        assert result.method == "weighted_moving_average"
        assert result.projected_spend == pytest.approx(500.0)
        assert result.predictability_score == 100.0
        # Below the minimum history the label stays low whatever the volatility
        assert result.confidence == "low"

    def test_trending_history_uses_holt(self, forecaster):
        history = [float(v) for v in range(10, 110, 10)]
        values, method = forecaster.project(history, 3)
        assert method == "holt_linear"
        assert np.all(np.isfinite(values))
        assert values[0] > 90

    def test_holt_failure_falls_back(self, forecaster, monkeypatch):
        def broken(history, horizon):
            raise ValueError("optimizer failed")

        monkeypatch.setattr(forecaster, "_holt", broken)
        values, method = forecaster.project([float(v) for v in range(1, 11)], 2)
        assert method == "weighted_moving_average"
        assert len(values) == 2

    def test_points_follow_last_bucket(self, forecaster):
        result = forecaster.forecast([10.0, 12.0, 11.0], date(2026, 1, 10), "day")
        assert [p.bucket for p in result.points] == [date(2026, 1, 11), date(2026, 1, 12), date(2026, 1, 13)]
        for point in result.points:
            assert point.lower <= point.projected <= point.upper

    def test_monthly_points(self, forecaster):
        result = forecaster.forecast([10.0, 12.0], date(2025, 12, 1), "month", horizon=2)
        assert [p.bucket for p in result.points] == [date(2026, 1, 1), date(2026, 2, 1)]


class TestConfidence:
    def test_band_has_a_floor_and_grows_with_volatility(self, forecaster):
        assert forecaster.band(0.0) == pytest.approx(0.05)
        assert forecaster.band(30.0) == pytest.approx(0.30)

    def test_bounds_wrap_projection(self, forecaster):
        result = forecaster.forecast([100.0] * 10, date(2026, 1, 10), "day")
        assert result.lower_bound < result.projected_spend < result.upper_bound
        assert result.band_percent == 5.0
        assert result.confidence == "high"

    @pytest.mark.parametrize("volatility,expected", [(5.0, "high"), (20.0, "medium"), (40.0, "low")])
    def test_label_downgrades_with_volatility(self, forecaster, volatility, expected):
        assert forecaster.confidence_label(volatility, history_points=30) == expected

    def test_label_downgrades_with_short_history(self, forecaster):
        assert forecaster.confidence_label(1.0, history_points=3) == "low"
