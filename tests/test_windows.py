from datetime import date

import pytest

from app.modules.reporting.domain.windows import (
    DateWindow,
    bucket_range,
    bucket_start,
    next_bucket,
    resolve_windows,
    shift_years,
)
from app.shared.core.exceptions import InvalidScopeError


class TestResolveWindows:
    def test_preset_is_anchored_on_latest_data(self):
        windows = resolve_windows(
            "30d", "previous_period", as_of=date(2026, 3, 31), latest_data_date=date(2026, 3, 15)
        )
        assert windows.current == DateWindow(date(2026, 2, 14), date(2026, 3, 15))
        assert windows.current.days == 30
        assert windows.previous == DateWindow(date(2026, 1, 15), date(2026, 2, 13))
        assert windows.previous.days == 30

    def test_future_data_never_moves_anchor_past_as_of(self):
        windows = resolve_windows("7d", "none", as_of=date(2026, 3, 10), latest_data_date=date(2026, 4, 1))
        assert windows.current.end == date(2026, 3, 10)
        assert windows.previous is None

    def test_month_quarter_and_year_to_date(self):
        anchor = date(2026, 5, 20)
        assert resolve_windows("mtd", "none", as_of=anchor).current.start == date(2026, 5, 1)
        assert resolve_windows("qtd", "none", as_of=anchor).current.start == date(2026, 4, 1)
        assert resolve_windows("ytd", "none", as_of=anchor).current.start == date(2026, 1, 1)

    def test_custom_range_year_over_year(self):
        windows = resolve_windows(
            "custom", "year_over_year", as_of=date(2026, 1, 1),
            start_date=date(2024, 2, 1), end_date=date(2024, 2, 29),
        )
        assert windows.previous == DateWindow(date(2023, 2, 1), date(2023, 2, 28))
        assert windows.read_windows == [windows.current, windows.previous]

    def test_custom_range_requires_both_dates(self):
        with pytest.raises(InvalidScopeError):
            resolve_windows("custom", "none", as_of=date(2026, 1, 1), start_date=date(2026, 1, 1))

    def test_custom_range_rejects_inverted_dates(self):
        with pytest.raises(InvalidScopeError):
            resolve_windows(
                "custom", "none", as_of=date(2026, 1, 1),
                start_date=date(2026, 2, 1), end_date=date(2026, 1, 1),
            )

    @pytest.mark.parametrize("time_range,compare_to", [("14d", "none"), ("30d", "last_week")])
    def test_unknown_values_are_rejected(self, time_range, compare_to):
        with pytest.raises(InvalidScopeError):
            resolve_windows(time_range, compare_to, as_of=date(2026, 1, 1))


class TestAlignment:
    def test_previous_period_shifts_by_window_length(self):
        windows = resolve_windows(
            "custom", "previous_period", as_of=date(2026, 1, 14),
            start_date=date(2026, 1, 8), end_date=date(2026, 1, 14),
        )
        assert windows.align_to_current(date(2026, 1, 1)) == date(2026, 1, 8)

    def test_year_over_year_shifts_by_one_year(self):
        windows = resolve_windows(
            "custom", "year_over_year", as_of=date(2026, 1, 31),
            start_date=date(2026, 1, 1), end_date=date(2026, 1, 31),
        )
        assert windows.align_to_current(date(2025, 1, 15)) == date(2026, 1, 15)

    def test_shift_years_handles_leap_day(self):
        assert shift_years(date(2024, 2, 29), 1) == date(2025, 2, 28)
        assert shift_years(date(2025, 3, 1), -1) == date(2024, 3, 1)


class TestBuckets:
    def test_week_buckets_start_on_monday(self):
        assert bucket_start(date(2026, 1, 1), "week") == date(2025, 12, 29)
        buckets = bucket_range(DateWindow(date(2026, 1, 1), date(2026, 1, 14)), "week")
        assert buckets == [date(2025, 12, 29), date(2026, 1, 5), date(2026, 1, 12)]

    def test_month_buckets_roll_over_year(self):
        assert next_bucket(date(2025, 12, 1), "month") == date(2026, 1, 1)
        buckets = bucket_range(DateWindow(date(2025, 11, 15), date(2026, 1, 2)), "month")
        assert buckets == [date(2025, 11, 1), date(2025, 12, 1), date(2026, 1, 1)]

    def test_day_buckets_cover_window(self):
        window = DateWindow(date(2026, 1, 1), date(2026, 1, 7))
        assert len(bucket_range(window, "day")) == window.days == 7
