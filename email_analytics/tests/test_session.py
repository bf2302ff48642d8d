"""
Tests for the analytics session: loading, hydration, identity switching and
the safe-default query surface.
"""

from datetime import datetime

import pytest

from email_analytics.models import (
    AggregatedMetrics,
    ComparisonSeries,
    Granularity,
    PeriodOverPeriodResult,
    RecordKind,
)
from email_analytics.services.cache import DurableCache, MemoryStore
from email_analytics.services.session import AnalyticsSession, safe_query
from email_analytics.tests.conftest import assert_close, create_csv_bytes

pytestmark = pytest.mark.asyncio


@pytest.fixture
def session(settings, two_tier_cache) -> AnalyticsSession:
    return AnalyticsSession('brand-1', settings=settings, cache=two_tier_cache)


@pytest.fixture
async def loaded_session(session, campaign_export_df, flow_export_text, subscriber_export_df) -> AnalyticsSession:
    result = await session.load_files(
        campaigns=create_csv_bytes(campaign_export_df),
        flows=flow_export_text.encode(),
        subscribers=create_csv_bytes(subscriber_export_df),
    )
    assert result.success, result.errors
    await session.cache.flush()
    return session


# =============================================================================
# LOADING
# =============================================================================


class TestLoadFiles:

    async def test_load_campaigns(self, session, campaign_export_df, durable_store):
        progress = []

        result = await session.load_files(
            campaigns=create_csv_bytes(campaign_export_df),
            on_progress=lambda kind, value: progress.append((kind, value)),
        )
        await session.cache.flush()

        assert result.success
        assert result.rows_loaded == {'campaigns': 3}
        assert result.dropped_rows == {'campaigns': 0}
        assert len(session.get_campaigns()) == 3
        assert session.load_progress.campaigns.loaded
        assert session.load_progress.campaigns.progress == 100.0
        assert not session.load_progress.flows.loaded

        values = [value for kind, value in progress]
        assert all(kind == RecordKind.CAMPAIGNS for kind, _ in progress)
        assert values[-1] == 100.0
        assert all(value <= 50.0 for value in values[:-1])
        assert durable_store.writes == 1

    async def test_load_all_three_exports(self, loaded_session):
        assert len(loaded_session.get_campaigns()) == 3
        # The SMS row of the flow export is not an email
        assert len(loaded_session.get_flow_emails()) == 4
        assert len(loaded_session.get_subscribers()) == 3

    async def test_reload_replaces_collection(self, session, campaign_export_df):
        await session.load_files(campaigns=create_csv_bytes(campaign_export_df))
        await session.load_files(campaigns=create_csv_bytes(campaign_export_df.head(1)))

        assert [campaign.campaignName for campaign in session.get_campaigns()] == ['Spring Sale']

    async def test_failed_load_keeps_previous_data(self, session, campaign_export_df, durable_store):
        await session.load_files(campaigns=create_csv_bytes(campaign_export_df))
        await session.cache.flush()

        result = await session.load_files(campaigns=create_csv_bytes(campaign_export_df.drop(columns=['Send Time'])))
        await session.cache.flush()

        assert not result.success
        assert result.errors[0].startswith("Campaigns:")
        assert len(session.get_campaigns()) == 3
        assert session.load_progress.campaigns.error == result.errors[0]
        assert durable_store.writes == 1

    async def test_one_failure_does_not_block_other_kinds(self, session, campaign_export_df, flow_export_text):
        result = await session.load_files(
            campaigns=create_csv_bytes(campaign_export_df.drop(columns=['Send Time'])),
            flows=flow_export_text.encode(),
        )

        assert not result.success
        assert result.rows_loaded == {'flows': 4}
        assert len(result.errors) == 1

    async def test_unparseable_send_times_are_counted(self, session, campaign_export_df):
        df = campaign_export_df.copy()
        df.loc[1, 'Send Time'] = 'sometime last week'

        result = await session.load_files(campaigns=create_csv_bytes(df))

        assert result.success
        assert result.rows_loaded == {'campaigns': 2}
        assert result.dropped_rows == {'campaigns': 1}

    async def test_no_valid_dates_is_an_error(self, session, campaign_export_df):
        df = campaign_export_df.copy()
        df['Send Time'] = 'never'

        result = await session.load_files(campaigns=create_csv_bytes(df))

        assert not result.success
        assert result.errors == ["Campaigns: No rows with a valid date were found"]
        assert result.dropped_rows == {'campaigns': 3}
        assert session.get_campaigns() == []

    async def test_no_files(self, session):
        result = await session.load_files()
        assert not result.success
        assert result.errors == []

    async def test_never_subscribed_profiles_load(self, session, subscriber_export_df):
        result = await session.load_files(subscribers=create_csv_bytes(subscriber_export_df))

        assert result.success
        never = session.get_subscribers()[1]
        assert never.emailConsent is False
        assert never.emailConsentTimestamp is None


# =============================================================================
# HYDRATION AND IDENTITY
# =============================================================================


class TestHydration:

    async def test_new_session_hydrates_from_fast_tier(self, loaded_session, settings):
        restored = AnalyticsSession('brand-1', settings=settings, cache=loaded_session.cache.for_identity('brand-1'))

        assert restored.initialize() is True
        assert restored.get_campaigns() == loaded_session.get_campaigns()
        assert restored.load_progress.flows.loaded

    async def test_durable_hydrate_after_restart(self, loaded_session, settings, durable_store):
        cache = DurableCache('brand-1', MemoryStore(settings.fast_tier_max_bytes), durable_store, settings)
        restored = AnalyticsSession('brand-1', settings=settings, cache=cache)

        assert restored.initialize() is False
        await restored.ensure_hydrated()

        assert len(restored.get_flow_emails()) == 4
        assert cache.key in cache.fast_tier

    async def test_upload_survives_pending_hydrate(self, loaded_session, settings, durable_store, campaign_export_df):
        cache = DurableCache('brand-1', MemoryStore(settings.fast_tier_max_bytes), durable_store, settings)
        restored = AnalyticsSession('brand-1', settings=settings, cache=cache)
        restored.initialize()

        await restored.load_files(campaigns=create_csv_bytes(campaign_export_df.head(1)))
        await restored.ensure_hydrated()

        assert len(restored.get_campaigns()) == 1
        await cache.flush()

    async def test_switch_identity(self, loaded_session):
        other = loaded_session.switch_identity('brand-2')
        await other.ensure_hydrated()
        assert other.identity == 'brand-2'
        assert not other.has_data

        back = other.switch_identity('brand-1')
        assert len(back.get_campaigns()) == 3

    async def test_clear_all_data(self, loaded_session, durable_store, settings):
        await loaded_session.clear_all_data()

        assert not loaded_session.has_data
        assert durable_store.entries == {}
        fresh = AnalyticsSession('brand-1', settings=settings, cache=loaded_session.cache.for_identity('brand-1'))
        assert fresh.initialize() is False
        await fresh.ensure_hydrated()
        assert not fresh.has_data

    async def test_anonymous_session(self, settings):
        session = AnalyticsSession(settings=settings)
        assert session.cache.key == 'em:dataset:anonymous:v1'
        assert not session.cache.has_durable_tier
        assert session.describe()['identity'] == 'anonymous'


# =============================================================================
# QUERIES
# =============================================================================


class TestQueries:

    async def test_last_email_date_and_window(self, loaded_session):
        assert loaded_session.get_last_email_date() == datetime(2025, 3, 9, 18, 0)

        window = loaded_session.get_resolved_date_range('7d')
        assert window.startDate == datetime(2025, 3, 3)
        assert window.endDate.date() == datetime(2025, 3, 9).date()

    async def test_weighted_open_rate_series(self, loaded_session):
        points = loaded_session.get_metric_time_series(
            loaded_session.get_campaigns(), [], 'openRate', '7d', Granularity.WEEKLY
        )
        assert len(points) == 1
        assert_close(points[0].value, 18.333)

    async def test_series_with_compare(self, loaded_session):
        result = loaded_session.get_metric_time_series_with_compare(
            loaded_session.get_campaigns(), loaded_session.get_flow_emails(), 'revenue', '7d'
        )
        assert len(result.primary) == 7
        assert len(result.compare) == 7
        # Flow M1 revenue on Mar 1 and Mar 2
        assert [point.value for point in result.compare][-2:] == [80.0, 90.0]

    async def test_flow_step_series(self, loaded_session):
        points = loaded_session.get_flow_step_time_series('Welcome Series', 1, 'emailsSent', 'all')

        assert points[0].bucketStart.isoformat() == '2025-03-01'
        assert [point.value for point in points[:3]] == [100, 120, 0]

    async def test_period_over_period_for_flows(self, loaded_session):
        result = loaded_session.calculate_period_over_period_change('revenue', '7d', scope='flows')

        assert result.currentValue == 285.0
        assert result.previousValue == 170.0
        assert result.isPositive

    async def test_aggregated_metrics(self, loaded_session):
        window = loaded_session.get_resolved_date_range('all')
        metrics = loaded_session.get_aggregated_metrics_for_period(
            loaded_session.get_campaigns(), loaded_session.get_flow_emails(), window.startDate, window.endDate
        )
        assert metrics.emailCount == 7
        assert_close(metrics.totalRevenue, 1550.0 + 80 + 90 + 250 + 35)

    async def test_flow_structure(self, loaded_session):
        assert loaded_session.get_unique_flow_names() == ['Abandoned Cart', 'Welcome Series']
        info = loaded_session.get_flow_sequence_info('Welcome Series')
        assert info.messageIds == ['M1', 'M2']
        assert info.emailNames == ['Welcome', 'Best Sellers']

    async def test_flow_bounce_rate_fallback(self, loaded_session):
        best_sellers = [email for email in loaded_session.get_flow_emails() if email.flowMessageId == 'M2'][0]
        assert best_sellers.bouncesCount == 15

    async def test_summary_and_audience(self, loaded_session):
        stats = loaded_session.get_summary_stats()

        assert stats.campaigns.totalCampaigns == 3
        assert stats.flows.totalFlows == 2
        assert stats.flows.totalEmails == 4
        assert stats.subscribers.totalSubscribers == 3
        assert loaded_session.get_audience_insights().buyerCount == 2

    async def test_breakdowns(self, loaded_session):
        days = loaded_session.get_campaign_performance_by_day_of_week(loaded_session.get_campaigns(), 'revenue')
        hours = loaded_session.get_campaign_performance_by_hour_of_day(loaded_session.get_campaigns(), 'revenue')

        assert len(days) == 7
        assert hours[0].hour == 14
        assert hours[0].hourLabel == '2 PM'

    async def test_granularity_and_compare_availability(self, loaded_session):
        assert loaded_session.get_granularity_for_date_range('all') == Granularity.DAILY
        assert loaded_session.is_compare_window_available('7d') is False


class TestSafeDefaults:

    async def test_bad_metric_returns_defaults(self, loaded_session):
        campaigns = loaded_session.get_campaigns()

        assert loaded_session.get_metric_time_series(campaigns, [], 'happiness', '7d') == []
        assert loaded_session.get_metric_time_series_result(campaigns, [], 'happiness', '7d') is None
        assert loaded_session.calculate_period_over_period_change('happiness', '7d') == PeriodOverPeriodResult()
        assert loaded_session.get_campaign_performance_by_day_of_week(campaigns, 'happiness') == []
        assert loaded_session.get_metric_time_series_with_compare(campaigns, [], 'happiness', '7d') == ComparisonSeries()

    async def test_bad_inputs_to_aggregation(self, loaded_session):
        result = loaded_session.get_aggregated_metrics_for_period(None, [], datetime(2025, 1, 1), datetime(2025, 12, 31))
        assert result == AggregatedMetrics()

    async def test_empty_session_queries(self, session):
        assert session.get_last_email_date() is None
        assert session.get_resolved_date_range('30d') is None
        assert session.get_metric_time_series([], [], 'revenue', '30d') == []
        assert session.get_summary_stats().campaigns is None
        assert session.get_granularity_for_date_range('custom') == Granularity.DAILY

    async def test_safe_query_decorator(self):
        class Broken:
            @safe_query(lambda: 'fallback')
            def query(self):
                raise KeyError('boom')

        assert Broken().query() == 'fallback'
