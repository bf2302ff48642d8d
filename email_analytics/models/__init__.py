"""
Package initialization for the engine's data models.

Re-exports the enums, pydantic schemas and result types so other modules can
import them from email_analytics.models directly:

    from email_analytics.models import CampaignRecord, MetricKey, Ok, Err
"""

# =============================================================================
# Enums
# =============================================================================

from email_analytics.models.enums import (
    RecordKind,
    Granularity,
    MetricKey,
    DataScope,
    CompareMode,
    DateRangeKind,
    CacheEvent,
)

# =============================================================================
# Result types
# =============================================================================

from email_analytics.models.result import Ok, Err, Result

# =============================================================================
# Schemas
# =============================================================================

from email_analytics.models.schemas import (
    # Records
    SendRecord,
    CampaignRecord,
    FlowEmailRecord,
    SubscriberRecord,
    # Load envelopes
    RowError,
    LoadProgressEntry,
    LoadProgress,
    LoadResult,
    DatasetSnapshot,
    # Query results
    DateWindow,
    TimeSeriesPoint,
    TimeSeriesResult,
    ComparisonSeries,
    AggregatedMetrics,
    PeriodOverPeriodResult,
    DayOfWeekPerformance,
    HourOfDayPerformance,
    FlowSequenceInfo,
    # Audience and summary
    PurchaseFrequency,
    LifetimeDistribution,
    AudienceInsights,
    CampaignSummary,
    SubscriberSummary,
    FlowSummary,
    SummaryStats,
)

__all__ = [
    # Enums
    'RecordKind',
    'Granularity',
    'MetricKey',
    'DataScope',
    'CompareMode',
    'DateRangeKind',
    'CacheEvent',
    # Result types
    'Ok',
    'Err',
    'Result',
    # Records
    'SendRecord',
    'CampaignRecord',
    'FlowEmailRecord',
    'SubscriberRecord',
    # Load envelopes
    'RowError',
    'LoadProgressEntry',
    'LoadProgress',
    'LoadResult',
    'DatasetSnapshot',
    # Query results
    'DateWindow',
    'TimeSeriesPoint',
    'TimeSeriesResult',
    'ComparisonSeries',
    'AggregatedMetrics',
    'PeriodOverPeriodResult',
    'DayOfWeekPerformance',
    'HourOfDayPerformance',
    'FlowSequenceInfo',
    # Audience and summary
    'PurchaseFrequency',
    'LifetimeDistribution',
    'AudienceInsights',
    'CampaignSummary',
    'SubscriberSummary',
    'FlowSummary',
    'SummaryStats',
]
