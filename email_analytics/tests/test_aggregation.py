"""
Tests for fixed-window aggregation, period comparison and breakdowns.
"""

from datetime import date, datetime

import pytest

from email_analytics.models import (
    AggregatedMetrics,
    CompareMode,
    DataScope,
    DateWindow,
    Granularity,
    PeriodOverPeriodResult,
    SubscriberRecord,
)
from email_analytics.services.aggregation import (
    calculate_period_over_period_change,
    format_hour_label,
    get_aggregated_metrics_for_period,
    get_campaign_performance_by_day_of_week,
    get_campaign_performance_by_hour_of_day,
    get_granularity_for_date_range,
    get_metric_time_series_with_compare,
    is_compare_window_available,
    previous_window,
    summarize_campaigns,
    summarize_subscribers,
)
from email_analytics.tests.conftest import assert_close, make_campaign, make_flow


# =============================================================================
# FIXED WINDOWS
# =============================================================================


class TestAggregatedMetricsForPeriod:

    def test_window_is_inclusive(self):
        campaigns = [
            make_campaign(datetime(2025, 3, 1, 0, 0), emails_sent=100, opens=20),
            make_campaign(datetime(2025, 3, 31, 23, 59), emails_sent=100, opens=40),
            make_campaign(datetime(2025, 4, 1, 0, 0), emails_sent=100, opens=90),
        ]
        flows = [make_flow(datetime(2025, 3, 15), emails_sent=200, opens=0)]

        metrics = get_aggregated_metrics_for_period(
            campaigns, flows, datetime(2025, 3, 1), datetime(2025, 3, 31, 23, 59, 59, 999999)
        )

        assert metrics.emailsSent == 400
        assert metrics.emailCount == 3
        assert_close(metrics.openRate, 15.0)

    def test_empty_window_is_all_zero(self):
        campaigns = [make_campaign(datetime(2025, 3, 1), emails_sent=100, revenue=10.0)]
        metrics = get_aggregated_metrics_for_period(campaigns, [], datetime(2024, 1, 1), datetime(2024, 1, 31))
        assert metrics == AggregatedMetrics()


# =============================================================================
# COMPARISON WINDOWS
# =============================================================================


class TestPreviousWindow:

    def test_previous_period_is_contiguous_and_equal_length(self):
        current = DateWindow(startDate=datetime(2025, 3, 8), endDate=datetime(2025, 3, 14, 23, 59, 59, 999999))
        previous = previous_window(current, CompareMode.PREV_PERIOD)

        assert previous.startDate == datetime(2025, 3, 1)
        assert previous.endDate == datetime(2025, 3, 7, 23, 59, 59, 999999)
        assert previous.days == current.days

    def test_previous_year_clamps_leap_day(self):
        current = DateWindow(startDate=datetime(2024, 2, 29), endDate=datetime(2024, 2, 29, 23, 59, 59, 999999))
        previous = previous_window(current, 'prev-year')

        assert previous.startDate == datetime(2023, 2, 28)
        assert previous.endDate == datetime(2023, 2, 28, 23, 59, 59, 999999)


# =============================================================================
# PERIOD OVER PERIOD
# =============================================================================


class TestPeriodOverPeriod:

    def test_adverse_metric_decrease_is_positive(self):
        campaigns = [
            make_campaign(datetime(2025, 3, 5, 10), emails_sent=100, unsubscribes=2),
            make_campaign(datetime(2025, 3, 14, 10), emails_sent=100, unsubscribes=1),
        ]
        result = calculate_period_over_period_change(campaigns, [], 'unsubscribeRate', '7d')

        assert_close(result.currentValue, 1.0)
        assert_close(result.previousValue, 2.0)
        assert_close(result.changePercent, -50.0)
        assert result.isPositive is True
        assert result.currentPeriod.startDate == datetime(2025, 3, 8)
        assert result.previousPeriod.startDate == datetime(2025, 3, 1)

    def test_revenue_decrease_is_negative(self):
        campaigns = [
            make_campaign(datetime(2025, 3, 5, 10), revenue=200.0),
            make_campaign(datetime(2025, 3, 14, 10), revenue=100.0),
        ]
        result = calculate_period_over_period_change(campaigns, [], 'totalRevenue', '7d')

        assert_close(result.changePercent, -50.0)
        assert result.isPositive is False

    def test_no_previous_value_is_full_increase(self):
        campaigns = [make_campaign(datetime(2025, 3, 14, 10), revenue=100.0)]
        result = calculate_period_over_period_change(campaigns, [], 'revenue', '7d')

        assert result.previousValue == 0.0
        assert result.changePercent == 100.0
        assert result.isPositive is True

    def test_both_zero_is_no_change(self):
        campaigns = [make_campaign(datetime(2025, 3, 14, 10), revenue=0.0)]
        result = calculate_period_over_period_change(campaigns, [], 'revenue', '7d')
        assert result.changePercent == 0.0

    def test_all_range_is_neutral(self):
        campaigns = [make_campaign(datetime(2025, 3, 14, 10), revenue=100.0)]
        assert calculate_period_over_period_change(campaigns, [], 'revenue', 'all') == PeriodOverPeriodResult()

    def test_no_data_is_neutral(self):
        assert calculate_period_over_period_change([], [], 'revenue', '30d') == PeriodOverPeriodResult()

    def test_previous_period_coverage_flag(self):
        campaigns = [
            make_campaign(datetime(2025, 3, 5, 10), revenue=200.0),
            make_campaign(datetime(2025, 3, 14, 10), revenue=100.0),
        ]
        partial = calculate_period_over_period_change(campaigns, [], 'revenue', '7d')
        assert partial.previousPeriodCovered is False

        campaigns.append(make_campaign(datetime(2025, 2, 20, 10), revenue=5.0))
        full = calculate_period_over_period_change(campaigns, [], 'revenue', '7d')
        assert full.previousPeriodCovered is True
        assert full.previousValue == 200.0

    def test_flow_scope_uses_dataset_anchor(self):
        campaigns = [make_campaign(datetime(2025, 3, 20, 10), revenue=1000.0)]
        flows = [
            make_flow(datetime(2025, 3, 5, 10), revenue=50.0),
            make_flow(datetime(2025, 3, 16, 10), revenue=75.0),
        ]
        result = calculate_period_over_period_change(campaigns, flows, 'revenue', '7d', scope=DataScope.FLOWS)

        # Current window is Mar 14-20 (latest send across the dataset)
        assert result.currentValue == 75.0
        assert result.previousValue == 0.0

    def test_flow_name_filter(self):
        flows = [
            make_flow(datetime(2025, 3, 14, 10), flow_name='Welcome', revenue=10.0),
            make_flow(datetime(2025, 3, 14, 10), flow_name='Cart', revenue=90.0),
        ]
        welcome = calculate_period_over_period_change([], flows, 'revenue', '7d', scope='flows', flow_name='Welcome')
        everything = calculate_period_over_period_change([], flows, 'revenue', '7d', scope='flows', flow_name='all')

        assert welcome.currentValue == 10.0
        assert everything.currentValue == 100.0

    def test_campaign_scope_excludes_flows(self):
        campaigns = [make_campaign(datetime(2025, 3, 14, 10), revenue=10.0)]
        flows = [make_flow(datetime(2025, 3, 14, 10), revenue=90.0)]
        result = calculate_period_over_period_change(campaigns, flows, 'revenue', '7d', scope='campaigns')
        assert result.currentValue == 10.0

    def test_previous_year_custom_range(self):
        campaigns = [
            make_campaign(datetime(2023, 2, 28, 10), revenue=50.0),
            make_campaign(datetime(2024, 2, 29, 10), revenue=100.0),
        ]
        result = calculate_period_over_period_change(
            campaigns, [], 'revenue', 'custom', compare_mode='prev-year',
            custom_from='2024-02-29', custom_to='2024-02-29',
        )

        assert result.currentValue == 100.0
        assert result.previousValue == 50.0
        assert_close(result.changePercent, 100.0)

    def test_invalid_scope_raises(self):
        with pytest.raises(ValueError):
            calculate_period_over_period_change([], [], 'revenue', '7d', scope='everything')


class TestCompareAvailability:

    def test_available_when_data_spans_previous_window(self):
        campaigns = [make_campaign(datetime(2025, 2, 28)), make_campaign(datetime(2025, 3, 14))]
        assert is_compare_window_available(campaigns, [], '7d')

    def test_unavailable_for_partial_history(self):
        campaigns = [make_campaign(datetime(2025, 3, 5)), make_campaign(datetime(2025, 3, 14))]
        assert not is_compare_window_available(campaigns, [], '7d')

    def test_unavailable_for_all(self):
        campaigns = [make_campaign(datetime(2020, 1, 1)), make_campaign(datetime(2025, 3, 14))]
        assert not is_compare_window_available(campaigns, [], 'all')


# =============================================================================
# COMPARISON SERIES
# =============================================================================


class TestSeriesWithCompare:

    def test_daily_series_align(self):
        campaigns = [
            make_campaign(datetime(2025, 3, day, 10), emails_sent=day, record_id=day) for day in range(1, 15)
        ]
        result = get_metric_time_series_with_compare(campaigns, [], 'emailsSent', '7d')

        assert len(result.primary) == len(result.compare) == 7
        assert result.primary[0].bucketStart == date(2025, 3, 8)
        assert result.compare[0].bucketStart == date(2025, 3, 1)
        assert [point.value for point in result.compare] == [1, 2, 3, 4, 5, 6, 7]
        assert result.compareMode == CompareMode.PREV_PERIOD

    def test_shorter_compare_series_is_padded(self):
        campaigns = [
            make_campaign(datetime(2025, 3, 1, 10), revenue=5.0),
            make_campaign(datetime(2025, 3, 10, 10), revenue=9.0),
        ]
        result = get_metric_time_series_with_compare(
            campaigns, [], 'revenue', 'custom', Granularity.WEEKLY,
            custom_from='2025-03-09', custom_to='2025-03-17',
        )

        assert len(result.primary) == 3
        assert len(result.compare) == 3
        assert result.compare[-1].value == 0.0
        assert result.compare[-1].label == result.compare[-2].label

    def test_longer_compare_series_keeps_most_recent(self):
        campaigns = [
            make_campaign(datetime(2025, 1, 30, 10), revenue=5.0),
            make_campaign(datetime(2025, 2, 10, 10), revenue=9.0),
            make_campaign(datetime(2025, 3, 10, 10), revenue=20.0),
        ]
        result = get_metric_time_series_with_compare(
            campaigns, [], 'revenue', 'custom', Granularity.MONTHLY,
            custom_from='2025-03-01', custom_to='2025-03-31',
        )

        assert len(result.primary) == 1
        assert len(result.compare) == 1
        assert result.compare[0].label == 'Feb 25'
        assert result.compare[0].value == 9.0

    def test_no_compare_for_all(self):
        campaigns = [make_campaign(datetime(2025, 3, 1)), make_campaign(datetime(2025, 3, 10))]
        assert get_metric_time_series_with_compare(campaigns, [], 'revenue', 'all').compare is None

    def test_no_compare_without_previous_records(self):
        campaigns = [make_campaign(datetime(2025, 3, 10))]
        result = get_metric_time_series_with_compare(campaigns, [], 'revenue', '7d')
        assert result.compare is None
        assert len(result.primary) == 7


class TestGranularityForDateRange:

    @pytest.mark.parametrize("date_range,expected", [
        ('30d', Granularity.DAILY),
        ('90d', Granularity.WEEKLY),
        ('400d', Granularity.MONTHLY),
        ('bogus', Granularity.DAILY),
    ])
    def test_presets(self, date_range, expected):
        assert get_granularity_for_date_range(date_range) == expected

    def test_all_measures_the_data(self):
        dates = [datetime(2025, 1, 1), datetime(2025, 4, 10)]
        assert get_granularity_for_date_range('all', dates) == Granularity.WEEKLY

    def test_all_without_data_is_daily(self):
        assert get_granularity_for_date_range('all') == Granularity.DAILY

    def test_custom(self):
        result = get_granularity_for_date_range('custom', custom_from='2025-01-01', custom_to='2025-12-31')
        assert result == Granularity.WEEKLY


# =============================================================================
# BREAKDOWNS
# =============================================================================


class TestBreakdowns:

    @pytest.fixture
    def campaigns(self):
        return [
            make_campaign(datetime(2025, 3, 2, 9), emails_sent=100, opens=10),   # Sunday 9 AM
            make_campaign(datetime(2025, 3, 3, 9), emails_sent=100, opens=30),   # Monday 9 AM
            make_campaign(datetime(2025, 3, 3, 15), emails_sent=100, opens=50),  # Monday 3 PM
            make_campaign(datetime(2025, 3, 4, 0), emails_sent=100, opens=20),   # Tuesday midnight
        ]

    def test_day_of_week_has_seven_slots(self, campaigns):
        rows = get_campaign_performance_by_day_of_week(campaigns, 'openRate')

        assert [row.day for row in rows] == ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat']
        assert_close(rows[1].value, 40.0)
        assert rows[1].campaignCount == 2
        assert_close(rows[1].percentageOfTotal, 50.0)
        assert rows[3].value == 0.0
        assert rows[3].campaignCount == 0

    def test_hour_of_day_only_lists_used_hours(self, campaigns):
        rows = get_campaign_performance_by_hour_of_day(campaigns, 'openRate')

        assert [row.hour for row in rows] == [15, 0, 9]
        assert [row.hourLabel for row in rows] == ['3 PM', '12 AM', '9 AM']
        assert_close(rows[2].value, 20.0)
        assert rows[2].campaignCount == 2

    def test_hour_ties_go_to_earlier_hour(self):
        campaigns = [
            make_campaign(datetime(2025, 3, 3, 18), revenue=10.0),
            make_campaign(datetime(2025, 3, 3, 7), revenue=10.0),
        ]
        rows = get_campaign_performance_by_hour_of_day(campaigns, 'revenue')
        assert [row.hour for row in rows] == [7, 18]

    def test_near_equal_hours_are_ties(self):
        campaigns = [
            make_campaign(datetime(2025, 3, 3, 18), revenue=10.004, record_id=1),
            make_campaign(datetime(2025, 3, 3, 7), revenue=10.0, record_id=2),
            make_campaign(datetime(2025, 3, 3, 12), revenue=10.02, record_id=3),
        ]
        rows = get_campaign_performance_by_hour_of_day(campaigns, 'revenue')
        assert [row.hour for row in rows] == [12, 7, 18]

    def test_empty_breakdowns(self):
        assert get_campaign_performance_by_hour_of_day([], 'revenue') == []
        assert all(row.percentageOfTotal == 0.0 for row in get_campaign_performance_by_day_of_week([], 'revenue'))

    @pytest.mark.parametrize("hour,label", [(0, '12 AM'), (9, '9 AM'), (12, '12 PM'), (15, '3 PM'), (23, '11 PM')])
    def test_hour_labels(self, hour, label):
        assert format_hour_label(hour) == label


# =============================================================================
# SUMMARIES
# =============================================================================


class TestSummaries:

    def test_campaign_summary(self):
        campaigns = [
            make_campaign(datetime(2025, 3, 1), emails_sent=100, opens=10, clicks=5, orders=1, revenue=20.0),
            make_campaign(datetime(2025, 3, 9), emails_sent=300, opens=90, clicks=15, orders=3, revenue=80.0),
        ]
        summary = summarize_campaigns(campaigns)

        assert summary.totalCampaigns == 2
        assert summary.dateRange.startDate == datetime(2025, 3, 1)
        assert summary.dateRange.endDate == datetime(2025, 3, 9)
        assert summary.totalRevenue == 100.0
        assert_close(summary.avgOpenRate, 25.0)
        assert_close(summary.avgClickRate, 5.0)
        assert_close(summary.avgConversionRate, 20.0)

    def test_subscriber_summary(self):
        subscribers = [
            SubscriberRecord(id='1', email='a@example.com', profileCreated=datetime(2024, 1, 1),
                             isBuyer=True, totalClv=150.0, emailConsent=True, lifetimeInDays=100),
            SubscriberRecord(id='2', email='b@example.com', profileCreated=datetime(2024, 6, 1),
                             lifetimeInDays=50),
        ]
        summary = summarize_subscribers(subscribers)

        assert summary.totalSubscribers == 2
        assert summary.totalBuyers == 1
        assert summary.buyerPercentage == 50.0
        assert summary.avgLifetimeDays == 75.0
        assert summary.avgRevenuePerSubscriber == 75.0
        assert summary.avgRevenuePerBuyer == 150.0
        assert summary.consentRate == 50.0

    def test_empty_summaries(self):
        assert summarize_campaigns([]) is None
        assert summarize_subscribers([]) is None
