"""
Metric definitions and weighted-ratio aggregation.

Every dashboard metric is a ratio of two summed counters (or a plain sum).
Rates are always computed as sum(numerator) / sum(denominator) over the
records in scope, never as a mean of per-record rates: three campaigns with
100/200/300 sends and 10/40/60 opens have an open rate of 18.33%, not the
16.67% a naive average would report.

Dispatch Table:
    METRIC_SPECS maps every MetricKey to a MetricSpec naming its numerator and
    denominator accessors over CounterSums, its scale and its polarity.

Derived Metrics:
- openRate        = uniqueOpens / emailsSent * 100
- clickRate       = uniqueClicks / emailsSent * 100
- clickToOpenRate = uniqueClicks / uniqueOpens * 100
- conversionRate  = totalOrders / uniqueClicks * 100
- unsubscribeRate = unsubscribes / emailsSent * 100   (adverse)
- spamRate        = spamComplaints / emailsSent * 100 (adverse)
- bounceRate      = bounces / emailsSent * 100        (adverse)
- revenuePerEmail = revenue / emailsSent
- avgOrderValue   = revenue / totalOrders
- revenue, emailsSent, totalOrders are plain sums

A zero denominator always yields 0.
"""

from dataclasses import dataclass
from operator import attrgetter
from typing import Callable, Dict, Iterable, Optional, Tuple, Union

from email_analytics.models import AggregatedMetrics, MetricKey, SendRecord


# =============================================================================
# Counter Accumulation
# =============================================================================


@dataclass
class CounterSums:
    """
    Raw counters summed over a set of send records.

    Attributes:
        revenue: Attributed revenue.
        emails_sent: Recipients / deliveries.
        total_orders: Placed orders.
        unique_opens: Unique opens.
        unique_clicks: Unique clicks.
        unsubscribes: Unsubscribes.
        spam_complaints: Spam complaints.
        bounces: Bounces.
        email_count: Number of records accumulated.
    """
    revenue: float = 0.0
    emails_sent: int = 0
    total_orders: int = 0
    unique_opens: int = 0
    unique_clicks: int = 0
    unsubscribes: int = 0
    spam_complaints: int = 0
    bounces: int = 0
    email_count: int = 0

    def add(self, record: SendRecord) -> None:
        self.revenue += record.revenue
        self.emails_sent += record.emailsSent
        self.total_orders += record.totalOrders
        self.unique_opens += record.uniqueOpens
        self.unique_clicks += record.uniqueClicks
        self.unsubscribes += record.unsubscribesCount
        self.spam_complaints += record.spamComplaintsCount
        self.bounces += record.bouncesCount
        self.email_count += 1

    @classmethod
    def from_records(cls, records: Iterable[SendRecord]) -> "CounterSums":
        sums = cls()
        for record in records:
            sums.add(record)
        return sums


# =============================================================================
# Dispatch Table
# =============================================================================


@dataclass(frozen=True)
class MetricSpec:
    """
    How one metric is derived from CounterSums.

    Attributes:
        key: The metric.
        label: Display name.
        numerator: Accessor for the summed numerator.
        denominator: Accessor for the summed denominator; None for plain sums.
        scale: Multiplier applied to the ratio (100 for percentages).
        adverse: True when a decrease is an improvement.
        unit: 'currency', 'percent' or 'count'.
    """
    key: MetricKey
    label: str
    numerator: Callable[[CounterSums], float]
    denominator: Optional[Callable[[CounterSums], float]] = None
    scale: float = 1.0
    adverse: bool = False
    unit: str = 'count'


_revenue = attrgetter('revenue')
_sent = attrgetter('emails_sent')
_orders = attrgetter('total_orders')
_opens = attrgetter('unique_opens')
_clicks = attrgetter('unique_clicks')

METRIC_SPECS: Dict[MetricKey, MetricSpec] = {
    MetricKey.REVENUE: MetricSpec(MetricKey.REVENUE, 'Total Revenue', _revenue, unit='currency'),
    MetricKey.AVG_ORDER_VALUE: MetricSpec(
        MetricKey.AVG_ORDER_VALUE, 'Average Order Value', _revenue, _orders, unit='currency'
    ),
    MetricKey.REVENUE_PER_EMAIL: MetricSpec(
        MetricKey.REVENUE_PER_EMAIL, 'Revenue per Email', _revenue, _sent, unit='currency'
    ),
    MetricKey.EMAILS_SENT: MetricSpec(MetricKey.EMAILS_SENT, 'Emails Sent', _sent),
    MetricKey.TOTAL_ORDERS: MetricSpec(MetricKey.TOTAL_ORDERS, 'Total Orders', _orders),
    MetricKey.OPEN_RATE: MetricSpec(
        MetricKey.OPEN_RATE, 'Open Rate', _opens, _sent, scale=100, unit='percent'
    ),
    MetricKey.CLICK_RATE: MetricSpec(
        MetricKey.CLICK_RATE, 'Click Rate', _clicks, _sent, scale=100, unit='percent'
    ),
    MetricKey.CLICK_TO_OPEN_RATE: MetricSpec(
        MetricKey.CLICK_TO_OPEN_RATE, 'Click-to-Open Rate', _clicks, _opens, scale=100, unit='percent'
    ),
    MetricKey.CONVERSION_RATE: MetricSpec(
        MetricKey.CONVERSION_RATE, 'Conversion Rate', _orders, _clicks, scale=100, unit='percent'
    ),
    MetricKey.UNSUBSCRIBE_RATE: MetricSpec(
        MetricKey.UNSUBSCRIBE_RATE, 'Unsubscribe Rate', attrgetter('unsubscribes'), _sent,
        scale=100, adverse=True, unit='percent',
    ),
    MetricKey.SPAM_RATE: MetricSpec(
        MetricKey.SPAM_RATE, 'Spam Rate', attrgetter('spam_complaints'), _sent,
        scale=100, adverse=True, unit='percent',
    ),
    MetricKey.BOUNCE_RATE: MetricSpec(
        MetricKey.BOUNCE_RATE, 'Bounce Rate', attrgetter('bounces'), _sent,
        scale=100, adverse=True, unit='percent',
    ),
}


def get_metric_spec(metric: Union[MetricKey, str]) -> MetricSpec:
    """
    Look up a metric's definition.

    Raises:
        ValueError: If the metric name is not a known MetricKey or alias.
    """
    return METRIC_SPECS[MetricKey(metric)]


def is_adverse(metric: Union[MetricKey, str]) -> bool:
    return get_metric_spec(metric).adverse


def derive_parts(sums: CounterSums, metric: Union[MetricKey, str]) -> Tuple[float, float, Optional[float]]:
    """
    Compute a metric and the summed parts behind it.

    Returns:
        (value, numerator, denominator); denominator is None for plain sums.
    """
    spec = get_metric_spec(metric)
    numerator = float(spec.numerator(sums))
    if spec.denominator is None:
        return numerator, numerator, None
    denominator = float(spec.denominator(sums))
    value = numerator / denominator * spec.scale if denominator > 0 else 0.0
    return value, numerator, denominator


def derive(sums: CounterSums, metric: Union[MetricKey, str]) -> float:
    return derive_parts(sums, metric)[0]


def to_aggregated_metrics(sums: CounterSums) -> AggregatedMetrics:
    """Every dashboard metric for one set of sums."""
    return AggregatedMetrics(
        totalRevenue=derive(sums, MetricKey.REVENUE),
        emailsSent=sums.emails_sent,
        totalOrders=sums.total_orders,
        openRate=derive(sums, MetricKey.OPEN_RATE),
        clickRate=derive(sums, MetricKey.CLICK_RATE),
        clickToOpenRate=derive(sums, MetricKey.CLICK_TO_OPEN_RATE),
        conversionRate=derive(sums, MetricKey.CONVERSION_RATE),
        unsubscribeRate=derive(sums, MetricKey.UNSUBSCRIBE_RATE),
        spamRate=derive(sums, MetricKey.SPAM_RATE),
        bounceRate=derive(sums, MetricKey.BOUNCE_RATE),
        avgOrderValue=derive(sums, MetricKey.AVG_ORDER_VALUE),
        revenuePerEmail=derive(sums, MetricKey.REVENUE_PER_EMAIL),
        emailCount=sums.email_count,
    )


__all__ = [
    'CounterSums',
    'MetricSpec',
    'METRIC_SPECS',
    'get_metric_spec',
    'is_adverse',
    'derive_parts',
    'derive',
    'to_aggregated_metrics',
]
