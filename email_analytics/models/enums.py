"""
Enumeration definitions for the email analytics engine.

All enums inherit from both `str` and `Enum` so they serialize as plain strings
inside pydantic models and JSON snapshots, and so callers can pass either the
enum member or its string value.
"""

from enum import Enum
from typing import Dict


class RecordKind(str, Enum):
    """
    The three provider exports the engine ingests.

    Each kind has its own parser validation, transformer and in-memory collection.
    """
    CAMPAIGNS = "campaigns"
    FLOWS = "flows"
    SUBSCRIBERS = "subscribers"

    @property
    def label(self) -> str:
        """Human-readable prefix used in load error messages."""
        return self.value.capitalize()


class Granularity(str, Enum):
    """
    Time-series bucket width, ordered from finest to coarsest.

    Escalation only ever moves towards the coarser end.
    """
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def coarser(self) -> "Granularity":
        """Next coarser granularity (monthly is the coarsest)."""
        if self is Granularity.DAILY:
            return Granularity.WEEKLY
        return Granularity.MONTHLY


class MetricKey(str, Enum):
    """
    Closed set of metrics the engine can compute.

    Every member has exactly one entry in the metric dispatch table
    (services/metrics.py) that names its numerator and denominator.

    Legacy names used by dashboards ("totalRevenue", "averageOrderValue")
    resolve to their canonical member:
        >>> MetricKey("totalRevenue") is MetricKey.REVENUE
        True
    """
    REVENUE = "revenue"
    AVG_ORDER_VALUE = "avgOrderValue"
    REVENUE_PER_EMAIL = "revenuePerEmail"
    EMAILS_SENT = "emailsSent"
    TOTAL_ORDERS = "totalOrders"
    OPEN_RATE = "openRate"
    CLICK_RATE = "clickRate"
    CLICK_TO_OPEN_RATE = "clickToOpenRate"
    CONVERSION_RATE = "conversionRate"
    UNSUBSCRIBE_RATE = "unsubscribeRate"
    SPAM_RATE = "spamRate"
    BOUNCE_RATE = "bounceRate"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            return _METRIC_ALIASES.get(value)
        return None


_METRIC_ALIASES: Dict[str, MetricKey] = {
    "totalRevenue": MetricKey.REVENUE,
    "averageOrderValue": MetricKey.AVG_ORDER_VALUE,
}


class DataScope(str, Enum):
    """Which collections a period comparison draws from."""
    ALL = "all"
    CAMPAIGNS = "campaigns"
    FLOWS = "flows"


class CompareMode(str, Enum):
    """
    How the comparison window is placed relative to the current window.

    - PREV_PERIOD: immediately preceding window of identical length
    - PREV_YEAR: the same calendar window one year earlier
    """
    PREV_PERIOD = "prev-period"
    PREV_YEAR = "prev-year"


class DateRangeKind(str, Enum):
    """Shape of a date range request ("30d", "all" or "custom")."""
    PRESET = "preset"
    ALL = "all"
    CUSTOM = "custom"


class CacheEvent(str, Enum):
    """
    Notifications emitted by the durable cache.

    - HYDRATED: a snapshot was found and loaded for the session identity
    - PERSISTED: a durable-tier write completed
    - PERSIST_FAILED: a durable-tier write raised
    """
    HYDRATED = "hydrated"
    PERSISTED = "persisted"
    PERSIST_FAILED = "persist-failed"
