"""
Fixed-window aggregation, period comparison and categorical breakdowns.

All functions are pure: they take the record collections they work on and
return pydantic results. The session layer supplies its in-memory
collections and wraps every call in a safe-default guard.

Period-over-period:
    current window   resolved like a time series ("Nd" anchored on the latest
                     record of the whole dataset, "custom", "all")
    previous window  prev-period: the contiguous window of identical length
                     ending the day before the current one starts;
                     prev-year: the same calendar window one year earlier
    changePercent    (current - previous) / previous * 100; 100 when the
                     previous value is 0 and the current is positive
    isPositive       increase is good, except for adverse metrics
                     (unsubscribe, spam and bounce rate)
"""

import logging
from functools import cmp_to_key
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Union

from email_analytics.core.config import Settings, get_settings
from email_analytics.models import (
    CampaignRecord,
    CampaignSummary,
    CompareMode,
    ComparisonSeries,
    DataScope,
    DateRangeKind,
    DateWindow,
    DayOfWeekPerformance,
    Err,
    FlowEmailRecord,
    Granularity,
    HourOfDayPerformance,
    MetricKey,
    PeriodOverPeriodResult,
    AggregatedMetrics,
    SendRecord,
    SubscriberRecord,
    SubscriberSummary,
    TimeSeriesPoint,
)
from email_analytics.services.dates import add_years, end_of_day, start_of_day
from email_analytics.services.metrics import CounterSums, derive, is_adverse, to_aggregated_metrics
from email_analytics.services.time_series import (
    DateInput,
    DateRangeSpec,
    build_time_series,
    granularity_for_days,
    plausible_send_dates,
    resolve_window,
)

logger = logging.getLogger(__name__)

DAY_NAMES: List[str] = ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat']


# =============================================================================
# Fixed Windows
# =============================================================================


def get_aggregated_metrics_for_period(
    campaigns: Sequence[SendRecord],
    flows: Sequence[SendRecord],
    start: datetime,
    end: datetime,
) -> AggregatedMetrics:
    """
    Aggregate every metric over [start, end] in a single pass.

    Returns:
        AggregatedMetrics; all zero when no record falls in the window.
    """
    sums = CounterSums()
    for record in (*campaigns, *flows):
        if start <= record.sentDate <= end:
            sums.add(record)
    return to_aggregated_metrics(sums)


def previous_window(window: DateWindow, mode: Union[CompareMode, str] = CompareMode.PREV_PERIOD) -> DateWindow:
    """
    Comparison window for a current window.

    prev-period ends at 23:59:59.999999 the day before the current window
    starts and spans the same number of days; prev-year shifts both ends back
    one year (Feb 29 becomes Feb 28).
    """
    if CompareMode(mode) == CompareMode.PREV_YEAR:
        return DateWindow(startDate=add_years(window.startDate, -1), endDate=add_years(window.endDate, -1))

    prev_end = end_of_day(window.startDate - timedelta(days=1))
    prev_start = start_of_day(prev_end - timedelta(days=window.days - 1))
    return DateWindow(startDate=prev_start, endDate=prev_end)


def is_window_covered(window: DateWindow, records: Sequence[SendRecord]) -> bool:
    """True when the records' date span encloses the whole window."""
    dates = [record.sentDate for record in records]
    if not dates:
        return False
    return min(dates) <= window.startDate and max(dates) >= window.endDate


def _scoped(
    campaigns: Sequence[CampaignRecord],
    flows: Sequence[FlowEmailRecord],
    scope: DataScope,
    flow_name: Optional[str],
):
    if scope == DataScope.CAMPAIGNS:
        flows = ()
    elif scope == DataScope.FLOWS:
        campaigns = ()
    if flow_name and flow_name != 'all':
        flows = [flow for flow in flows if flow.flowName == flow_name]
    return campaigns, flows


def calculate_period_over_period_change(
    campaigns: Sequence[CampaignRecord],
    flows: Sequence[FlowEmailRecord],
    metric: Union[MetricKey, str],
    date_range: Union[str, DateRangeSpec],
    scope: Union[DataScope, str] = DataScope.ALL,
    flow_name: Optional[str] = None,
    compare_mode: Union[CompareMode, str] = CompareMode.PREV_PERIOD,
    custom_from: DateInput = None,
    custom_to: DateInput = None,
    settings: Optional[Settings] = None,
) -> PeriodOverPeriodResult:
    """
    Compare a metric between the current window and its comparison window.

    Args:
        campaigns: All campaign records of the session.
        flows: All flow records of the session.
        metric: Metric to compare.
        date_range: "Nd", "all", "custom" or "custom:FROM:TO".
        scope: Which collections contribute ("all", "campaigns", "flows").
        flow_name: Restrict flow records to one flow ("all" means no filter).
        compare_mode: "prev-period" or "prev-year".
        custom_from: First day for "custom".
        custom_to: Last day for "custom".
        settings: Engine settings.

    Returns:
        PeriodOverPeriodResult. "all" (and any range without data) yields the
        neutral zero-change result.

    Raises:
        ValueError: If metric, scope or compare_mode is not recognized.
    """
    settings = settings or get_settings()
    metric_key = MetricKey(metric)
    scope = DataScope(scope)

    range_spec = DateRangeSpec.parse(date_range, custom_from, custom_to)
    if isinstance(range_spec, Err):
        logger.warning(f"Period comparison skipped: {range_spec.reason}")
        return PeriodOverPeriodResult()
    if range_spec.value.kind == DateRangeKind.ALL:
        return PeriodOverPeriodResult()

    # Presets anchor on the whole dataset so every scope compares the same days
    anchors = plausible_send_dates((*campaigns, *flows), settings)
    current = resolve_window(range_spec.value, anchors)
    if current is None:
        return PeriodOverPeriodResult()
    previous = previous_window(current, compare_mode)

    scoped_campaigns, scoped_flows = _scoped(campaigns, flows, scope, flow_name)
    current_sums = CounterSums.from_records(
        record for record in (*scoped_campaigns, *scoped_flows) if current.contains(record.sentDate)
    )
    previous_sums = CounterSums.from_records(
        record for record in (*scoped_campaigns, *scoped_flows) if previous.contains(record.sentDate)
    )
    current_value = derive(current_sums, metric_key)
    previous_value = derive(previous_sums, metric_key)

    if previous_value != 0:
        change = (current_value - previous_value) / previous_value * 100
    elif current_value > 0:
        change = 100.0
    else:
        change = 0.0

    return PeriodOverPeriodResult(
        currentValue=current_value,
        previousValue=previous_value,
        changePercent=change,
        isPositive=change <= 0 if is_adverse(metric_key) else change >= 0,
        currentPeriod=current,
        previousPeriod=previous,
        previousPeriodCovered=is_window_covered(previous, (*scoped_campaigns, *scoped_flows)),
    )


def is_compare_window_available(
    campaigns: Sequence[SendRecord],
    flows: Sequence[SendRecord],
    date_range: Union[str, DateRangeSpec],
    compare_mode: Union[CompareMode, str] = CompareMode.PREV_PERIOD,
    custom_from: DateInput = None,
    custom_to: DateInput = None,
    settings: Optional[Settings] = None,
) -> bool:
    """Whether the loaded data fully spans the comparison window ("all" never does)."""
    settings = settings or get_settings()
    range_spec = DateRangeSpec.parse(date_range, custom_from, custom_to)
    if isinstance(range_spec, Err) or range_spec.value.kind == DateRangeKind.ALL:
        return False

    current = resolve_window(range_spec.value, plausible_send_dates((*campaigns, *flows), settings))
    if current is None:
        return False
    return is_window_covered(previous_window(current, compare_mode), (*campaigns, *flows))


def get_metric_time_series_with_compare(
    campaigns: Sequence[SendRecord],
    flows: Sequence[SendRecord],
    metric: Union[MetricKey, str],
    date_range: Union[str, DateRangeSpec],
    granularity: Union[Granularity, str] = Granularity.DAILY,
    compare_mode: Union[CompareMode, str] = CompareMode.PREV_PERIOD,
    custom_from: DateInput = None,
    custom_to: DateInput = None,
    settings: Optional[Settings] = None,
) -> ComparisonSeries:
    """
    Primary series plus a comparison series aligned to it by index.

    The comparison series is built over the comparison window at the primary
    series' effective granularity, then trimmed to the primary length (keeping
    its most recent points) or zero-padded with its last label. It is None for
    "all" and when the comparison window holds no records.
    """
    settings = settings or get_settings()
    mode = CompareMode(compare_mode)
    primary = build_time_series(
        campaigns, flows, metric, date_range, granularity,
        custom_from=custom_from, custom_to=custom_to, settings=settings,
    )
    result = ComparisonSeries(primary=primary.points, granularity=primary.granularity, compareMode=mode)

    range_spec = DateRangeSpec.parse(date_range, custom_from, custom_to)
    if isinstance(range_spec, Err) or range_spec.value.kind == DateRangeKind.ALL or primary.window is None:
        return result

    previous = previous_window(primary.window, mode)
    if not any(previous.contains(record.sentDate) for record in (*campaigns, *flows)):
        return result

    compare = build_time_series(
        campaigns, flows, metric, 'custom', primary.granularity,
        custom_from=previous.startDate, custom_to=previous.endDate, settings=settings,
    ).points

    target = len(primary.points)
    if len(compare) > target:
        compare = compare[len(compare) - target:]
    elif len(compare) < target:
        filler_label = compare[-1].label if compare else ''
        filler_start = compare[-1].bucketStart if compare else previous.endDate.date()
        compare = compare + [
            TimeSeriesPoint(value=0.0, label=filler_label, bucketStart=filler_start)
            for _ in range(target - len(compare))
        ]
    result.compare = compare
    return result


def get_granularity_for_date_range(
    date_range: Union[str, DateRangeSpec],
    record_dates: Sequence[datetime] = (),
    custom_from: DateInput = None,
    custom_to: DateInput = None,
    settings: Optional[Settings] = None,
) -> Granularity:
    """
    Default granularity for a range: <= 60 days daily, <= 365 weekly, else
    monthly. "all" measures the span of the loaded data and falls back to
    daily when there is none.
    """
    settings = settings or get_settings()
    range_spec = DateRangeSpec.parse(date_range, custom_from, custom_to)
    if isinstance(range_spec, Err):
        return Granularity.DAILY

    spec = range_spec.value
    if spec.kind == DateRangeKind.PRESET:
        return granularity_for_days(spec.days, settings)

    window = resolve_window(spec, list(record_dates))
    if window is None:
        return Granularity.DAILY
    return granularity_for_days(window.days, settings)


# =============================================================================
# Categorical Breakdowns
# =============================================================================


def format_hour_label(hour: int) -> str:
    """0 -> "12 AM", 9 -> "9 AM", 12 -> "12 PM", 15 -> "3 PM"."""
    suffix = 'AM' if hour < 12 else 'PM'
    display = hour % 12 or 12
    return f"{display} {suffix}"


def get_campaign_performance_by_day_of_week(
    campaigns: Sequence[SendRecord],
    metric: Union[MetricKey, str],
) -> List[DayOfWeekPerformance]:
    """Seven slots, Sunday first, each with the weighted metric and its share of campaigns."""
    metric_key = MetricKey(metric)
    slots = [CounterSums() for _ in DAY_NAMES]
    for campaign in campaigns:
        slots[campaign.dayOfWeek].add(campaign)

    total = len(campaigns)
    return [
        DayOfWeekPerformance(
            day=DAY_NAMES[index],
            dayIndex=index,
            value=derive(sums, metric_key),
            campaignCount=sums.email_count,
            percentageOfTotal=sums.email_count / total * 100 if total else 0.0,
        )
        for index, sums in enumerate(slots)
    ]


# Hour values closer than this are ties, ordered by hour
HOUR_TIE_TOLERANCE = 0.01


def _compare_hours(a: HourOfDayPerformance, b: HourOfDayPerformance) -> int:
    if abs(a.value - b.value) < HOUR_TIE_TOLERANCE:
        return a.hour - b.hour
    return -1 if a.value > b.value else 1


def get_campaign_performance_by_hour_of_day(
    campaigns: Sequence[SendRecord],
    metric: Union[MetricKey, str],
) -> List[HourOfDayPerformance]:
    """
    Hours that have at least one campaign, best first.

    Sorted by metric value descending; values within
    HOUR_TIE_TOLERANCE of each other count as ties and go to the earlier hour.
    """
    metric_key = MetricKey(metric)
    slots: Dict[int, CounterSums] = {}
    for campaign in campaigns:
        slots.setdefault(campaign.hourOfDay, CounterSums()).add(campaign)

    total = len(campaigns)
    rows = [
        HourOfDayPerformance(
            hour=hour,
            hourLabel=format_hour_label(hour),
            value=derive(sums, metric_key),
            campaignCount=sums.email_count,
            percentageOfTotal=sums.email_count / total * 100 if total else 0.0,
        )
        for hour, sums in slots.items()
    ]
    rows.sort(key=cmp_to_key(_compare_hours))
    return rows


# =============================================================================
# Summaries
# =============================================================================


def summarize_campaigns(campaigns: Sequence[CampaignRecord]) -> Optional[CampaignSummary]:
    if not campaigns:
        return None
    sums = CounterSums.from_records(campaigns)
    dates = [campaign.sentDate for campaign in campaigns]
    return CampaignSummary(
        totalCampaigns=len(campaigns),
        dateRange=DateWindow(startDate=min(dates), endDate=max(dates)),
        totalRevenue=sums.revenue,
        totalEmailsSent=sums.emails_sent,
        avgOpenRate=derive(sums, MetricKey.OPEN_RATE),
        avgClickRate=derive(sums, MetricKey.CLICK_RATE),
        avgConversionRate=derive(sums, MetricKey.CONVERSION_RATE),
    )


def summarize_subscribers(subscribers: Sequence[SubscriberRecord]) -> Optional[SubscriberSummary]:
    if not subscribers:
        return None
    total = len(subscribers)
    buyers = sum(1 for subscriber in subscribers if subscriber.isBuyer)
    revenue = sum(subscriber.totalClv for subscriber in subscribers)
    return SubscriberSummary(
        totalSubscribers=total,
        totalBuyers=buyers,
        buyerPercentage=buyers / total * 100,
        avgLifetimeDays=sum(subscriber.lifetimeInDays for subscriber in subscribers) / total,
        totalRevenue=revenue,
        avgRevenuePerSubscriber=revenue / total,
        avgRevenuePerBuyer=revenue / buyers if buyers else 0.0,
        consentRate=sum(1 for subscriber in subscribers if subscriber.emailConsent) / total * 100,
    )


__all__ = [
    'DAY_NAMES',
    'get_aggregated_metrics_for_period',
    'previous_window',
    'is_window_covered',
    'calculate_period_over_period_change',
    'is_compare_window_available',
    'get_metric_time_series_with_compare',
    'get_granularity_for_date_range',
    'format_hour_label',
    'get_campaign_performance_by_day_of_week',
    'get_campaign_performance_by_hour_of_day',
    'summarize_campaigns',
    'summarize_subscribers',
]
