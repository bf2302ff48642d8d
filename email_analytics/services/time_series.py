"""
Metric time-series construction with adaptive granularity and safety bounds.

A series is built in five stages:

1. Window resolution: "Nd" ends at the latest record date (23:59:59.999999)
   and starts at local midnight N-1 days earlier; "all" spans the min/max
   record dates; "custom" spans local midnight of `from` to the end of `to`.
2. Filtering: records inside the window whose send date passes the
   plausible-year sanity check.
3. Escalation: daily becomes weekly past max_daily_buckets (365); weekly
   becomes monthly past max_weekly_buckets (104). If the window still needs
   more than max_series_buckets (200), only the most recent buckets' worth of
   time is kept.
4. Record cap: beyond max_series_records (50,000) only the most recent
   records are bucketed.
5. Bucketing: daily by date, weekly by Monday (labelled by the week end,
   capped at the window end), monthly by year-month. Buckets are zero-filled
   across the window and capped at max_bucket_map_size (250). Each bucket's
   value is derived once from its summed counters.

The whole build runs under an ExecutionBudget: loops check the clock every
budget_check_interval iterations and stop early once the budget is spent,
returning what has been built so far (flagged timedOut).
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from email_analytics.core.config import Settings, get_settings
from email_analytics.models import (
    DateRangeKind,
    DateWindow,
    Err,
    Granularity,
    MetricKey,
    Ok,
    Result,
    SendRecord,
    TimeSeriesPoint,
    TimeSeriesResult,
)
from email_analytics.services.dates import end_of_day, is_plausible, parse_date, start_of_day
from email_analytics.services.metrics import CounterSums, derive_parts

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
DateInput = Union[date, datetime, str, None]

MONTH_ABBREVIATIONS: List[str] = [
    'Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun',
    'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec',
]

_PRESET = re.compile(r'^(\d+)d$')
_CUSTOM_INLINE = re.compile(r'^custom:([^:]+):([^:]+)$')


# =============================================================================
# Execution Budget
# =============================================================================


class ExecutionBudget:
    """
    Cooperative wall-clock budget.

    Loops call tick() once per iteration; every `check_interval` ticks the
    clock is read and the budget is marked expired once the deadline passes.
    Expiry is sticky.

    Example:
        budget = ExecutionBudget(10.0)
        for record in records:
            if budget.tick():
                break
    """

    def __init__(self, seconds: float, check_interval: int = 500, clock: Optional[Clock] = None):
        self._clock = clock or time.monotonic
        self._deadline = self._clock() + seconds
        self._check_interval = max(int(check_interval), 1)
        self._ticks = 0
        self.expired = False

    def tick(self) -> bool:
        self._ticks += 1
        if not self.expired and self._ticks % self._check_interval == 0:
            self.check()
        return self.expired

    def check(self) -> bool:
        if not self.expired and self._clock() >= self._deadline:
            self.expired = True
        return self.expired


# =============================================================================
# Date Range Requests
# =============================================================================


@dataclass(frozen=True)
class DateRangeSpec:
    """
    A parsed date range request.

    Attributes:
        kind: PRESET ("30d"), ALL ("all") or CUSTOM.
        days: Preset length in days.
        custom_from: First day of a custom range.
        custom_to: Last day of a custom range.
    """
    kind: DateRangeKind
    days: Optional[int] = None
    custom_from: Optional[date] = None
    custom_to: Optional[date] = None

    @classmethod
    def parse(
        cls,
        spec: Union[str, "DateRangeSpec"],
        custom_from: DateInput = None,
        custom_to: DateInput = None,
    ) -> Result["DateRangeSpec"]:
        """
        Parse "30d", "all", "custom" (with custom_from/custom_to) or the inline
        form "custom:2025-01-01:2025-01-31".
        """
        if isinstance(spec, DateRangeSpec):
            return Ok(spec)

        text = str(spec or '').strip().lower()
        if text == 'all':
            return Ok(cls(DateRangeKind.ALL))

        preset = _PRESET.match(text)
        if preset:
            days = int(preset.group(1))
            if days <= 0:
                return Err(f"Preset range must be at least one day: {spec!r}")
            return Ok(cls(DateRangeKind.PRESET, days=days))

        inline = _CUSTOM_INLINE.match(text)
        if inline:
            custom_from, custom_to = inline.groups()
        elif text != 'custom':
            return Err(f"Unknown date range: {spec!r}")

        start = _as_date(custom_from)
        end = _as_date(custom_to)
        if start is None or end is None:
            return Err("Custom range requires valid from and to dates")
        if start > end:
            start, end = end, start
        return Ok(cls(DateRangeKind.CUSTOM, custom_from=start, custom_to=end))


def _as_date(value: DateInput) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_date(value)
    return parsed.value.date() if isinstance(parsed, Ok) else None


def resolve_window(range_spec: DateRangeSpec, record_dates: Sequence[datetime]) -> Optional[DateWindow]:
    """
    Turn a date range request into concrete local boundaries.

    Args:
        range_spec: Parsed request.
        record_dates: Send dates the preset/"all" windows are anchored to.

    Returns:
        The window, or None when a data-anchored range has no data.
    """
    if range_spec.kind == DateRangeKind.CUSTOM:
        return DateWindow(
            startDate=datetime.combine(range_spec.custom_from, datetime.min.time()),
            endDate=end_of_day(datetime.combine(range_spec.custom_to, datetime.min.time())),
        )

    if not record_dates:
        return None

    latest = max(record_dates)
    if range_spec.kind == DateRangeKind.ALL:
        return DateWindow(startDate=start_of_day(min(record_dates)), endDate=end_of_day(latest))

    end = end_of_day(latest)
    start = start_of_day(end - timedelta(days=range_spec.days - 1))
    return DateWindow(startDate=start, endDate=end)


# =============================================================================
# Buckets
# =============================================================================


def week_start(day: date) -> date:
    """Monday of the ISO week containing day."""
    return day - timedelta(days=day.weekday())


def month_start(day: date) -> date:
    return day.replace(day=1)


def bucket_key(day: date, granularity: Granularity) -> date:
    if granularity == Granularity.WEEKLY:
        return week_start(day)
    if granularity == Granularity.MONTHLY:
        return month_start(day)
    return day


def _months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + end.month - start.month


def count_buckets(window: DateWindow, granularity: Granularity) -> int:
    """Buckets needed to cover the window at a granularity."""
    start, end = window.startDate.date(), window.endDate.date()
    if granularity == Granularity.WEEKLY:
        return (week_start(end) - week_start(start)).days // 7 + 1
    if granularity == Granularity.MONTHLY:
        return _months_between(start, end) + 1
    return (end - start).days + 1


def escalate_granularity(window: DateWindow, requested: Granularity, settings: Settings) -> Granularity:
    """Coarsen the requested granularity until the bucket count is bounded."""
    granularity = requested
    if granularity == Granularity.DAILY and count_buckets(window, granularity) > settings.max_daily_buckets:
        granularity = Granularity.WEEKLY
    if granularity == Granularity.WEEKLY and count_buckets(window, granularity) > settings.max_weekly_buckets:
        granularity = Granularity.MONTHLY
    return granularity


def truncate_window(window: DateWindow, granularity: Granularity, max_buckets: int) -> Tuple[DateWindow, bool]:
    """
    Keep only the most recent max_buckets buckets' worth of the window.

    Returns:
        (window, truncated)
    """
    if count_buckets(window, granularity) <= max_buckets:
        return window, False

    end = window.endDate.date()
    if granularity == Granularity.WEEKLY:
        start = week_start(end) - timedelta(weeks=max_buckets - 1)
    elif granularity == Granularity.MONTHLY:
        months = end.year * 12 + end.month - 1 - (max_buckets - 1)
        start = date(months // 12, months % 12 + 1, 1)
    else:
        start = end - timedelta(days=max_buckets - 1)

    start_moment = max(window.startDate, datetime.combine(start, datetime.min.time()))
    return DateWindow(startDate=start_moment, endDate=window.endDate), True


def _day_label(day: date) -> str:
    return f"{MONTH_ABBREVIATIONS[day.month - 1]} {day.day}"


def bucket_label(key: date, granularity: Granularity, window_end: date) -> str:
    """
    Display label for a bucket.

    Daily "Mar 4"; weekly uses the week's last day capped at the window end
    ("Mar 9", or "Mar 6" for a partial final week); monthly "Mar 25".
    """
    if granularity == Granularity.WEEKLY:
        return _day_label(min(key + timedelta(days=6), window_end))
    if granularity == Granularity.MONTHLY:
        return f"{MONTH_ABBREVIATIONS[key.month - 1]} {key.year % 100:02d}"
    return _day_label(key)


# =============================================================================
# Series Construction
# =============================================================================


def plausible_send_dates(records: Iterable[SendRecord], settings: Settings) -> List[datetime]:
    return [
        record.sentDate
        for record in records
        if is_plausible(record.sentDate, settings.send_year_min, settings.send_year_max)
    ]


def build_time_series(
    campaigns: Sequence[SendRecord],
    flows: Sequence[SendRecord],
    metric: Union[MetricKey, str],
    date_range: Union[str, DateRangeSpec],
    granularity: Union[Granularity, str] = Granularity.DAILY,
    custom_from: DateInput = None,
    custom_to: DateInput = None,
    settings: Optional[Settings] = None,
    anchor_dates: Optional[Sequence[datetime]] = None,
    clock: Optional[Clock] = None,
) -> TimeSeriesResult:
    """
    Build a bucketed metric series.

    Args:
        campaigns: Campaign records to include.
        flows: Flow records to include.
        metric: Metric to compute per bucket.
        date_range: "Nd", "all", "custom" or a DateRangeSpec.
        granularity: Requested bucket width (may be escalated).
        custom_from: First day for "custom".
        custom_to: Last day for "custom".
        settings: Engine settings (bounds and budget).
        anchor_dates: Dates preset/"all" windows are anchored to; defaults to
            the send dates of the given records.
        clock: Monotonic clock for the execution budget.

    Returns:
        TimeSeriesResult with at most max_bucket_map_size points.

    Raises:
        ValueError: If metric or granularity is not recognized.
    """
    settings = settings or get_settings()
    metric_key = MetricKey(metric)
    requested = Granularity(granularity)
    budget = ExecutionBudget(settings.time_series_budget_seconds, settings.budget_check_interval, clock)
    result = TimeSeriesResult(metric=metric_key, requestedGranularity=requested, granularity=requested)

    range_spec = DateRangeSpec.parse(date_range, custom_from, custom_to)
    if isinstance(range_spec, Err):
        logger.warning(f"Time series skipped: {range_spec.reason}")
        return result

    records = [
        record for record in (*campaigns, *flows)
        if is_plausible(record.sentDate, settings.send_year_min, settings.send_year_max)
    ]
    anchors = list(anchor_dates) if anchor_dates else [record.sentDate for record in records]
    window = resolve_window(range_spec.value, anchors)
    if window is None:
        return result

    effective = escalate_granularity(window, requested, settings)
    if effective != requested:
        logger.info(f"Escalated {requested.value} series to {effective.value} for a {window.days}-day window")
    window, truncated = truncate_window(window, effective, settings.max_series_buckets)
    if truncated:
        logger.warning(f"Series window truncated to the most recent {settings.max_series_buckets} buckets")
    result.granularity = effective
    result.window = window
    result.truncated = truncated

    in_window: List[SendRecord] = []
    for record in records:
        if budget.tick():
            break
        if window.contains(record.sentDate):
            in_window.append(record)

    if len(in_window) > settings.max_series_records:
        logger.warning(
            f"Series limited to the {settings.max_series_records} most recent of {len(in_window)} records"
        )
        in_window.sort(key=lambda record: record.sentDate, reverse=True)
        in_window = in_window[:settings.max_series_records]
        result.recordsCapped = True

    buckets: Dict[date, CounterSums] = {}
    day, last_day = window.startDate.date(), window.endDate.date()
    while day <= last_day and not budget.expired:
        key = bucket_key(day, effective)
        if key not in buckets:
            if len(buckets) >= settings.max_bucket_map_size:
                logger.warning(f"Bucket map capped at {settings.max_bucket_map_size} buckets")
                break
            buckets[key] = CounterSums()
        day += timedelta(days=1)
        budget.tick()

    for record in in_window:
        if budget.tick():
            break
        sums = buckets.get(bucket_key(record.sentDate.date(), effective))
        if sums is not None:
            sums.add(record)

    for key in sorted(buckets):
        sums = buckets[key]
        value, numerator, denominator = derive_parts(sums, metric_key)
        result.points.append(TimeSeriesPoint(
            value=value,
            label=bucket_label(key, effective, last_day),
            bucketStart=key,
            numerator=numerator,
            denominator=denominator,
            emailCount=sums.email_count,
        ))

    if budget.expired:
        result.timedOut = True
        logger.warning(
            f"Time series for {metric_key.value} exceeded its "
            f"{settings.time_series_budget_seconds}s budget; returning partial result"
        )
    return result


def get_metric_time_series(
    campaigns: Sequence[SendRecord],
    flows: Sequence[SendRecord],
    metric: Union[MetricKey, str],
    date_range: Union[str, DateRangeSpec],
    granularity: Union[Granularity, str] = Granularity.DAILY,
    custom_from: DateInput = None,
    custom_to: DateInput = None,
    settings: Optional[Settings] = None,
    **kwargs,
) -> List[TimeSeriesPoint]:
    """Points of build_time_series() without the surrounding metadata."""
    return build_time_series(
        campaigns, flows, metric, date_range, granularity,
        custom_from=custom_from, custom_to=custom_to, settings=settings, **kwargs,
    ).points


def granularity_for_days(days: int, settings: Settings) -> Granularity:
    """<= 60 days daily, <= 365 days weekly, otherwise monthly."""
    if days <= settings.daily_granularity_max_days:
        return Granularity.DAILY
    if days <= settings.weekly_granularity_max_days:
        return Granularity.WEEKLY
    return Granularity.MONTHLY


__all__ = [
    'ExecutionBudget',
    'DateRangeSpec',
    'resolve_window',
    'week_start',
    'month_start',
    'bucket_key',
    'count_buckets',
    'escalate_granularity',
    'truncate_window',
    'bucket_label',
    'plausible_send_dates',
    'build_time_series',
    'get_metric_time_series',
    'granularity_for_days',
    'MONTH_ABBREVIATIONS',
]
