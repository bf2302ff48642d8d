"""
Analytics session: the in-memory dataset of one identity and its query surface.

An AnalyticsSession is an explicit context object. Nothing is global: every
consumer creates (or is handed) its own session, and switching identity
produces a new session that shares the cache tiers but none of the records.

Lifecycle:
    session = AnalyticsSession("brand-42")
    session.initialize()                  # fast-tier hydrate + durable hydrate scheduled
    await session.ensure_hydrated()       # optional: wait for the durable tier
    result = await session.load_files(campaigns=path)
    series = session.get_metric_time_series(
        session.get_campaigns(), session.get_flow_emails(), "openRate", "30d", "daily"
    )

Loading:
    Each provided file goes through parse_export -> transformer. Parse progress
    is reported at half scale (0-50); the kind is marked loaded at 100 only
    after its collection has been replaced. A failed file leaves the previous
    collection of that kind untouched.

Queries:
    Every public query method is wrapped by safe_query: unexpected failures are
    logged and the method's safe default (empty list, zeroed aggregate, None)
    is returned instead of raising.
"""

import asyncio
import functools
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from email_analytics.core.config import Settings, get_settings
from email_analytics.models import (
    AggregatedMetrics,
    AudienceInsights,
    CampaignRecord,
    CompareMode,
    ComparisonSeries,
    DataScope,
    DatasetSnapshot,
    DateWindow,
    DayOfWeekPerformance,
    Err,
    FlowEmailRecord,
    FlowSequenceInfo,
    FlowSummary,
    Granularity,
    HourOfDayPerformance,
    LoadProgress,
    LoadResult,
    MetricKey,
    PeriodOverPeriodResult,
    RecordKind,
    SubscriberRecord,
    SummaryStats,
    TimeSeriesPoint,
    TimeSeriesResult,
)
from email_analytics.services import aggregation
from email_analytics.services.cache import DurableCache
from email_analytics.services.csv_parser import CsvSource, parse_export
from email_analytics.services.time_series import (
    Clock,
    DateInput,
    DateRangeSpec,
    build_time_series,
    plausible_send_dates,
    resolve_window,
)
from email_analytics.services.transformers import (
    BaseTransformer,
    CampaignTransformer,
    FlowTransformer,
    SubscriberTransformer,
)

logger = logging.getLogger(__name__)

LoadProgressCallback = Callable[[RecordKind, float], None]


def safe_query(default_factory: Callable[[], Any]):
    """
    Decorator returning default_factory() when the wrapped query raises.

    Args:
        default_factory: Builds the value returned on failure.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except Exception:
                logger.exception(f"{func.__name__} failed; returning default")
                return default_factory()
        return wrapper
    return decorator


class AnalyticsSession:
    """
    Per-identity dataset held in memory and persisted through a DurableCache.

    Args:
        identity: Session identity (None for an anonymous session).
        settings: Engine settings; defaults to get_settings().
        cache: Cache to persist into; defaults to DurableCache.from_settings().
        clock: Monotonic clock for time-series budgets (tests inject a fake).
    """

    def __init__(
        self,
        identity: Optional[str] = None,
        settings: Optional[Settings] = None,
        cache: Optional[DurableCache] = None,
        clock: Optional[Clock] = None,
    ):
        self.identity = identity
        self.settings = settings or get_settings()
        self.cache = cache or DurableCache.from_settings(identity, self.settings)
        self.clock = clock
        self.campaigns: Tuple[CampaignRecord, ...] = ()
        self.flow_emails: Tuple[FlowEmailRecord, ...] = ()
        self.subscribers: Tuple[SubscriberRecord, ...] = ()
        self.load_progress = LoadProgress()
        self._hydration: Optional[asyncio.Task] = None

    @property
    def has_data(self) -> bool:
        return bool(self.campaigns or self.flow_emails or self.subscribers)

    # =========================================================================
    # Snapshot / Hydration
    # =========================================================================

    def snapshot(self) -> DatasetSnapshot:
        return DatasetSnapshot(
            campaigns=list(self.campaigns),
            flowEmails=list(self.flow_emails),
            subscribers=list(self.subscribers),
            savedAt=datetime.now(),
        )

    def _apply_snapshot(self, snapshot: DatasetSnapshot) -> None:
        self.campaigns = tuple(snapshot.campaigns)
        self.flow_emails = tuple(snapshot.flowEmails)
        self.subscribers = tuple(snapshot.subscribers)
        for kind, records in (
            (RecordKind.CAMPAIGNS, self.campaigns),
            (RecordKind.FLOWS, self.flow_emails),
            (RecordKind.SUBSCRIBERS, self.subscribers),
        ):
            if records:
                entry = getattr(self.load_progress, kind.value)
                entry.loaded, entry.progress, entry.error = True, 100.0, None
        logger.info(
            f"Hydrated session {self.identity or 'anonymous'}: {len(self.campaigns)} campaigns, "
            f"{len(self.flow_emails)} flow emails, {len(self.subscribers)} subscribers"
        )

    def initialize(self) -> bool:
        """
        Restore cached data for this identity.

        Reads the fast tier synchronously. When it is empty and a durable tier
        exists, a durable hydrate is scheduled on the running loop; await
        ensure_hydrated() to wait for it.

        Returns:
            True when data was restored from the fast tier.
        """
        snapshot = self.cache.hydrate_fast()
        if snapshot is not None and not snapshot.is_empty:
            self._apply_snapshot(snapshot)
            return True

        if self.cache.has_durable_tier and self._hydration is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running event loop; durable hydrate deferred to ensure_hydrated()")
                return False
            self._hydration = loop.create_task(self._hydrate_durable())
        return False

    async def _hydrate_durable(self) -> None:
        snapshot = await self.cache.hydrate_durable()
        # A load that finished first wins over older cached data
        if snapshot is not None and not snapshot.is_empty and not self.has_data:
            self._apply_snapshot(snapshot)

    async def ensure_hydrated(self) -> None:
        """Wait for (or run) the durable hydrate started by initialize()."""
        if self._hydration is None:
            if self.has_data or not self.cache.has_durable_tier:
                return
            self._hydration = asyncio.ensure_future(self._hydrate_durable())
        await self._hydration

    def reset(self) -> None:
        """Forget every in-memory record; the cache is left as is."""
        self.campaigns = ()
        self.flow_emails = ()
        self.subscribers = ()
        self.load_progress = LoadProgress()

    async def clear_all_data(self) -> None:
        """Forget every record and delete this identity's cached dataset."""
        self.reset()
        await self.cache.clear()

    def switch_identity(self, identity: Optional[str]) -> "AnalyticsSession":
        """
        Start a session for another identity.

        The new session shares this session's cache tiers and settings and is
        initialized immediately; this session should be discarded.
        """
        session = AnalyticsSession(
            identity=identity,
            settings=self.settings,
            cache=self.cache.for_identity(identity),
            clock=self.clock,
        )
        session.initialize()
        return session

    # =========================================================================
    # Loading
    # =========================================================================

    def _transformer(self, kind: RecordKind) -> BaseTransformer:
        if kind == RecordKind.CAMPAIGNS:
            return CampaignTransformer(self.settings)
        if kind == RecordKind.FLOWS:
            return FlowTransformer(self.settings)
        return SubscriberTransformer(self.settings)

    def _replace(self, kind: RecordKind, records: List[Any]) -> None:
        if kind == RecordKind.CAMPAIGNS:
            self.campaigns = tuple(records)
        elif kind == RecordKind.FLOWS:
            self.flow_emails = tuple(records)
        else:
            self.subscribers = tuple(records)

    def _report_progress(
        self,
        kind: RecordKind,
        on_progress: Optional[LoadProgressCallback],
        progress: float,
    ) -> None:
        getattr(self.load_progress, kind.value).progress = progress
        if on_progress is not None:
            on_progress(kind, progress)

    async def load_files(
        self,
        campaigns: Optional[CsvSource] = None,
        flows: Optional[CsvSource] = None,
        subscribers: Optional[CsvSource] = None,
        on_progress: Optional[LoadProgressCallback] = None,
    ) -> LoadResult:
        """
        Parse, transform and load any of the three exports.

        Args:
            campaigns: Campaign export (bytes, path or file-like).
            flows: Flow export.
            subscribers: Subscriber export.
            on_progress: Called with (kind, progress 0-100).

        Returns:
            LoadResult; success is True when at least one file was given and
            every given file loaded.
        """
        sources = [
            (RecordKind.CAMPAIGNS, campaigns),
            (RecordKind.FLOWS, flows),
            (RecordKind.SUBSCRIBERS, subscribers),
        ]
        result = LoadResult(success=False)
        attempted = 0

        for kind, source in sources:
            if source is None:
                continue
            attempted += 1
            entry = getattr(self.load_progress, kind.value)
            entry.loaded, entry.progress, entry.error = False, 0.0, None

            report = functools.partial(self._report_progress, kind, on_progress)

            parsed = await parse_export(
                kind, source, on_progress=lambda value: report(value * 0.5), settings=self.settings
            )
            if isinstance(parsed, Err):
                message = f"{kind.label}: {parsed.reason}"
                entry.error = message
                result.errors.append(message)
                logger.warning(f"Load failed for {kind.value}: {parsed.reason}")
                continue

            table = parsed.value
            result.row_errors.extend(table.errors)
            transformed = self._transformer(kind).transform_with_report(table.rows)
            if not transformed.records:
                message = f"{kind.label}: No rows with a valid date were found"
                entry.error = message
                result.errors.append(message)
                result.dropped_rows[kind.value] = transformed.dropped
                continue

            self._replace(kind, transformed.records)
            result.rows_loaded[kind.value] = len(transformed.records)
            result.dropped_rows[kind.value] = transformed.dropped
            entry.loaded = True
            report(100.0)
            logger.info(f"Loaded {len(transformed.records)} {kind.value} ({transformed.dropped} dropped)")

        result.success = attempted > 0 and not result.errors
        if self.has_data and result.rows_loaded:
            self.cache.persist(self.snapshot())
        return result

    # =========================================================================
    # Collections
    # =========================================================================

    @safe_query(list)
    def get_campaigns(self) -> List[CampaignRecord]:
        return list(self.campaigns)

    @safe_query(list)
    def get_flow_emails(self) -> List[FlowEmailRecord]:
        return list(self.flow_emails)

    @safe_query(list)
    def get_subscribers(self) -> List[SubscriberRecord]:
        return list(self.subscribers)

    def _send_dates(self) -> List[datetime]:
        return plausible_send_dates((*self.campaigns, *self.flow_emails), self.settings)

    @safe_query(lambda: None)
    def get_last_email_date(self) -> Optional[datetime]:
        """Latest send date across campaigns and flows, or None without data."""
        dates = self._send_dates()
        return max(dates) if dates else None

    @safe_query(lambda: None)
    def get_resolved_date_range(
        self,
        date_range: Union[str, DateRangeSpec],
        custom_from: DateInput = None,
        custom_to: DateInput = None,
    ) -> Optional[DateWindow]:
        """The exact window a date range resolves to against the loaded data."""
        range_spec = DateRangeSpec.parse(date_range, custom_from, custom_to)
        if isinstance(range_spec, Err):
            return None
        return resolve_window(range_spec.value, self._send_dates())

    # =========================================================================
    # Time Series
    # =========================================================================

    @safe_query(lambda: None)
    def get_metric_time_series_result(
        self,
        campaigns: Sequence[CampaignRecord],
        flows: Sequence[FlowEmailRecord],
        metric: Union[MetricKey, str],
        date_range: Union[str, DateRangeSpec],
        granularity: Union[Granularity, str] = Granularity.DAILY,
        custom_from: DateInput = None,
        custom_to: DateInput = None,
    ) -> Optional[TimeSeriesResult]:
        """Series plus effective granularity, window and bound flags."""
        return build_time_series(
            campaigns, flows, metric, date_range, granularity,
            custom_from=custom_from, custom_to=custom_to, settings=self.settings,
            anchor_dates=self._send_dates(), clock=self.clock,
        )

    @safe_query(list)
    def get_metric_time_series(
        self,
        campaigns: Sequence[CampaignRecord],
        flows: Sequence[FlowEmailRecord],
        metric: Union[MetricKey, str],
        date_range: Union[str, DateRangeSpec],
        granularity: Union[Granularity, str] = Granularity.DAILY,
        custom_from: DateInput = None,
        custom_to: DateInput = None,
    ) -> List[TimeSeriesPoint]:
        result = self.get_metric_time_series_result(
            campaigns, flows, metric, date_range, granularity, custom_from, custom_to
        )
        return result.points if result is not None else []

    @safe_query(ComparisonSeries)
    def get_metric_time_series_with_compare(
        self,
        campaigns: Sequence[CampaignRecord],
        flows: Sequence[FlowEmailRecord],
        metric: Union[MetricKey, str],
        date_range: Union[str, DateRangeSpec],
        granularity: Union[Granularity, str] = Granularity.DAILY,
        compare_mode: Union[CompareMode, str] = CompareMode.PREV_PERIOD,
        custom_from: DateInput = None,
        custom_to: DateInput = None,
    ) -> ComparisonSeries:
        return aggregation.get_metric_time_series_with_compare(
            campaigns, flows, metric, date_range, granularity,
            compare_mode=compare_mode, custom_from=custom_from, custom_to=custom_to, settings=self.settings,
        )

    @safe_query(list)
    def get_flow_step_time_series(
        self,
        flow_name: str,
        sequence_position: int,
        metric: Union[MetricKey, str],
        date_range: Union[str, DateRangeSpec],
        granularity: Union[Granularity, str] = Granularity.DAILY,
        custom_from: DateInput = None,
        custom_to: DateInput = None,
    ) -> List[TimeSeriesPoint]:
        """Series for one step (sequence position) of one flow."""
        step = [
            email for email in self.flow_emails
            if email.flowName == flow_name and email.sequencePosition == sequence_position
        ]
        return self.get_metric_time_series((), step, metric, date_range, granularity, custom_from, custom_to)

    # =========================================================================
    # Aggregation / Comparison
    # =========================================================================

    @safe_query(AggregatedMetrics)
    def get_aggregated_metrics_for_period(
        self,
        campaigns: Sequence[CampaignRecord],
        flows: Sequence[FlowEmailRecord],
        start: datetime,
        end: datetime,
    ) -> AggregatedMetrics:
        return aggregation.get_aggregated_metrics_for_period(campaigns, flows, start, end)

    @safe_query(PeriodOverPeriodResult)
    def calculate_period_over_period_change(
        self,
        metric: Union[MetricKey, str],
        date_range: Union[str, DateRangeSpec],
        scope: Union[DataScope, str] = DataScope.ALL,
        flow_name: Optional[str] = None,
        compare_mode: Union[CompareMode, str] = CompareMode.PREV_PERIOD,
        custom_from: DateInput = None,
        custom_to: DateInput = None,
    ) -> PeriodOverPeriodResult:
        return aggregation.calculate_period_over_period_change(
            self.campaigns, self.flow_emails, metric, date_range,
            scope=scope, flow_name=flow_name, compare_mode=compare_mode,
            custom_from=custom_from, custom_to=custom_to, settings=self.settings,
        )

    @safe_query(lambda: False)
    def is_compare_window_available(
        self,
        date_range: Union[str, DateRangeSpec],
        compare_mode: Union[CompareMode, str] = CompareMode.PREV_PERIOD,
        custom_from: DateInput = None,
        custom_to: DateInput = None,
    ) -> bool:
        return aggregation.is_compare_window_available(
            self.campaigns, self.flow_emails, date_range, compare_mode,
            custom_from=custom_from, custom_to=custom_to, settings=self.settings,
        )

    @safe_query(lambda: Granularity.DAILY)
    def get_granularity_for_date_range(
        self,
        date_range: Union[str, DateRangeSpec],
        custom_from: DateInput = None,
        custom_to: DateInput = None,
    ) -> Granularity:
        return aggregation.get_granularity_for_date_range(
            date_range, self._send_dates(), custom_from, custom_to, settings=self.settings
        )

    # =========================================================================
    # Breakdowns
    # =========================================================================

    @safe_query(list)
    def get_campaign_performance_by_day_of_week(
        self,
        campaigns: Sequence[CampaignRecord],
        metric: Union[MetricKey, str],
    ) -> List[DayOfWeekPerformance]:
        return aggregation.get_campaign_performance_by_day_of_week(campaigns, metric)

    @safe_query(list)
    def get_campaign_performance_by_hour_of_day(
        self,
        campaigns: Sequence[CampaignRecord],
        metric: Union[MetricKey, str],
    ) -> List[HourOfDayPerformance]:
        return aggregation.get_campaign_performance_by_hour_of_day(campaigns, metric)

    # =========================================================================
    # Flows / Audience / Summary
    # =========================================================================

    @safe_query(list)
    def get_unique_flow_names(self) -> List[str]:
        return FlowTransformer.get_unique_flow_names(self.flow_emails)

    @safe_query(FlowSequenceInfo)
    def get_flow_sequence_info(self, flow_name: str) -> FlowSequenceInfo:
        return FlowTransformer.get_flow_sequence_info(flow_name, self.flow_emails)

    @safe_query(AudienceInsights)
    def get_audience_insights(self) -> AudienceInsights:
        return SubscriberTransformer.get_audience_insights(self.subscribers)

    @safe_query(SummaryStats)
    def get_summary_stats(self) -> SummaryStats:
        return SummaryStats(
            campaigns=aggregation.summarize_campaigns(self.campaigns),
            subscribers=aggregation.summarize_subscribers(self.subscribers),
            flows=FlowSummary(
                totalFlows=len(FlowTransformer.get_unique_flow_names(self.flow_emails)),
                totalEmails=len(self.flow_emails),
            ),
        )

    def describe(self) -> Dict[str, Any]:
        """Counts and load state, for logs and the command line."""
        return {
            'identity': self.identity or 'anonymous',
            'campaigns': len(self.campaigns),
            'flowEmails': len(self.flow_emails),
            'subscribers': len(self.subscribers),
            'loadProgress': self.load_progress.model_dump(),
        }


__all__ = ['AnalyticsSession', 'LoadProgressCallback', 'safe_query']
