"""
Email Analytics Services

Business logic of the engine, from raw upload to dashboard query.

Services:
- dates: Defensive date resolution (ISO, slashed, free text, epoch)
- transformers: Raw export rows -> normalized campaign/flow/subscriber records
- csv_parser: Chunked CSV parsing with progress and row validation
- metrics: MetricKey dispatch table and weighted-ratio derivation
- time_series: Bounded, adaptively bucketed metric series
- aggregation: Fixed windows, period comparison, day/hour breakdowns
- cache: Two-tier write-behind dataset cache
- session: Per-identity context object tying the services together

Everything except session and cache is stateless and operates on the record
collections it is given.
"""

# =============================================================================
# Date Resolution
# Imported first: transformers and the parser depend on it
# =============================================================================

from email_analytics.services.dates import (
    parse_date,
    to_local,
    start_of_day,
    end_of_day,
    is_plausible,
    add_years,
    days_between,
)

# =============================================================================
# Transformers and Row Parser
# =============================================================================

from email_analytics.services.transformers import (
    CampaignTransformer,
    FlowTransformer,
    SubscriberTransformer,
    TransformReport,
)
from email_analytics.services.csv_parser import (
    ParsedTable,
    parse_csv,
    parse_export,
    validate_campaign_rows,
    validate_flow_rows,
    validate_subscriber_rows,
)

# =============================================================================
# Aggregation Engine
# =============================================================================

from email_analytics.services.metrics import (
    CounterSums,
    MetricSpec,
    METRIC_SPECS,
    derive,
    to_aggregated_metrics,
)
from email_analytics.services.time_series import (
    DateRangeSpec,
    ExecutionBudget,
    build_time_series,
    get_metric_time_series,
    resolve_window,
)
from email_analytics.services.aggregation import (
    get_aggregated_metrics_for_period,
    calculate_period_over_period_change,
    is_compare_window_available,
    get_metric_time_series_with_compare,
    get_granularity_for_date_range,
    get_campaign_performance_by_day_of_week,
    get_campaign_performance_by_hour_of_day,
)

# =============================================================================
# Cache and Session
# =============================================================================

from email_analytics.services.cache import (
    DurableCache,
    MemoryStore,
    PostgresStore,
    StorageError,
    StorageQuotaError,
)
from email_analytics.services.session import AnalyticsSession

__all__ = [
    # Dates
    'parse_date',
    'to_local',
    'start_of_day',
    'end_of_day',
    'is_plausible',
    'add_years',
    'days_between',
    # Transformers / parser
    'CampaignTransformer',
    'FlowTransformer',
    'SubscriberTransformer',
    'TransformReport',
    'ParsedTable',
    'parse_csv',
    'parse_export',
    'validate_campaign_rows',
    'validate_flow_rows',
    'validate_subscriber_rows',
    # Aggregation engine
    'CounterSums',
    'MetricSpec',
    'METRIC_SPECS',
    'derive',
    'to_aggregated_metrics',
    'DateRangeSpec',
    'ExecutionBudget',
    'build_time_series',
    'get_metric_time_series',
    'resolve_window',
    'get_aggregated_metrics_for_period',
    'calculate_period_over_period_change',
    'is_compare_window_available',
    'get_metric_time_series_with_compare',
    'get_granularity_for_date_range',
    'get_campaign_performance_by_day_of_week',
    'get_campaign_performance_by_hour_of_day',
    # Cache / session
    'DurableCache',
    'MemoryStore',
    'PostgresStore',
    'StorageError',
    'StorageQuotaError',
    'AnalyticsSession',
]
