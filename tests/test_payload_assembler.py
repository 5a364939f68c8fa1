from datetime import date, datetime, timedelta, timezone

import pandas as pd
import pytest

from app.modules.reporting.domain.analytics import AnalyticsConfig, CostAnalyticsEngine
from app.modules.reporting.domain.forecaster import ForecastConfig, SpendForecaster
from app.modules.reporting.domain.payload import (
    AnalyticsPayloadAssembler,
    classify_health,
    to_status,
)
from app.modules.reporting.domain.repository import FRAME_COLUMNS
from app.modules.reporting.domain.windows import resolve_windows
from app.schemas.analytics import SCHEMA_VERSION, AnalyticsQuery
from tests.test_analytics_engine import make_frame

AS_OF = datetime(2026, 1, 16, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def query():
    return AnalyticsQuery(
        time_range="custom",
        start_date=date(2026, 1, 8),
        end_date=date(2026, 1, 14),
        compare_to="previous_period",
        provider="aws",
    )


@pytest.fixture
def result(query):
    rows = []
    for i in range(14):
        day = date(2026, 1, 1) + timedelta(days=i)
        rows.append({"day": day, "cost": 100.0 + i, "service": "Compute"})
        rows.append({"day": day, "cost": 20.0, "service": "Storage", "region": "eu-west-1"})
    windows = resolve_windows(
        query.time_range, query.compare_to, as_of=AS_OF.date(),
        start_date=query.start_date, end_date=query.end_date,
    )
    engine = CostAnalyticsEngine(AnalyticsConfig(), SpendForecaster(ForecastConfig()))
    return engine.analyze(make_frame(rows), windows, query.granularity, query.group_by, query.dimensions)


class TestStatusBands:
    @pytest.mark.parametrize("value,expected", [(0.0, "on_track"), (3.0, "watch"), (9.9, "watch"), (10.0, "critical")])
    def test_to_status(self, value, expected):
        assert to_status(value, 3.0, 10.0) == expected

    @pytest.mark.parametrize("hours,coverage,expected", [
        (24.0, 100.0, "High"),
        (24.0, 90.0, "Medium"),
        (100.0, 99.0, "Medium"),
        (200.0, 99.0, "Low"),
        (None, 100.0, "Low"),
    ])
    def test_classify_health(self, hours, coverage, expected):
        assert classify_health(hours, coverage) == expected


class TestAssembler:
    def test_sections_and_kpis(self, result, query):
        payload = AnalyticsPayloadAssembler().assemble(result, query, AS_OF, total_rows=20)

        assert payload.schema_version == SCHEMA_VERSION
        assert [k.key for k in payload.kpis] == [
            "totalSpend", "runRateDaily", "peakSpend", "volatilityIndex", "concentrationRisk",
        ]
        total = payload.kpis[0]
        assert total.value == result.total_spend
        assert total.comparison.delta_value == pytest.approx(result.total_spend - result.previous_total, abs=0.01)
        assert payload.kpis[2].context["peakDate"] == "2026-01-14"
        # Every row sits in one account, which outweighs the top service share
        assert payload.kpis[4].context["source"] == "account: Production"
        assert payload.kpis[4].value == 100.0
        assert payload.controls.filters == {"provider": "aws"}
        assert payload.controls.current_window.days == 7
        assert payload.controls.previous_window.start == date(2026, 1, 1)
        assert set(payload.breakdowns) == {"service", "provider", "region", "account"}

    def test_trust_metadata(self, result, query):
        trust = AnalyticsPayloadAssembler().assemble(result, query, AS_OF, total_rows=20).trust

        assert trust.last_charge_date == date(2026, 1, 14)
        # 2026-01-14 is complete at 2026-01-15T00:00Z, 36 hours before as_of
        assert trust.freshness_hours == 36.0
        assert trust.coverage_percent == 100.0
        assert trust.matched_rows == 14
        assert trust.total_rows == 20
        assert trust.confidence == "High"

    def test_deterministic_for_fixed_scope(self, result, query):
        assembler = AnalyticsPayloadAssembler()
        first = assembler.assemble(result, query, AS_OF).model_dump(mode="json", by_alias=True)
        second = assembler.assemble(result, query, AS_OF).model_dump(mode="json", by_alias=True)
        assert first == second

    def test_serializes_camel_case(self, result, query):
        body = AnalyticsPayloadAssembler().assemble(result, query, AS_OF).model_dump(mode="json", by_alias=True)

        assert body["schemaVersion"] == SCHEMA_VERSION
        assert body["asOf"].startswith("2026-01-16T12:00:00")
        assert "valueType" in body["kpis"][0]
        assert "sharePercent" in body["breakdowns"]["service"][0]
        assert "cumulativeSharePercent" in body["concentration"]["dimensions"]["service"]["points"][0]
        assert "predictabilityScore" in body["forecast"]
        assert "coveragePercent" in body["trust"]

    def test_naive_as_of_is_treated_as_utc(self, result, query):
        payload = AnalyticsPayloadAssembler().assemble(result, query, datetime(2026, 1, 16, 12, 0))
        assert payload.as_of.tzinfo is not None
        assert payload.trust.freshness_hours == 36.0

    def test_empty_scope_payload(self, query):
        windows = resolve_windows(
            "custom", "previous_period", as_of=AS_OF.date(),
            start_date=date(2026, 1, 8), end_date=date(2026, 1, 14),
        )
        engine = CostAnalyticsEngine(AnalyticsConfig(), SpendForecaster(ForecastConfig()))
        empty = engine.analyze(pd.DataFrame(columns=FRAME_COLUMNS), windows)
        payload = AnalyticsPayloadAssembler().assemble(empty, query, AS_OF)

        assert all(card.value == 0.0 for card in payload.kpis)
        assert payload.kpis[2].context["peakDate"] == "N/A"
        assert payload.kpis[4].context["source"] == "N/A"
        assert payload.trust.freshness_hours is None
        assert payload.trust.confidence == "Low"
        assert payload.anomalies.highlights == []
