"""
Pydantic models for the email analytics engine.

This module defines the normalized record types produced by the transformers,
the query results returned by the aggregation engine, and the load/cache
envelopes used by the session orchestrator.

Records are frozen: a new upload replaces a whole collection, individual
records are never patched. Field names follow the provider's JSON layout
(camelCase) so a persisted snapshot reads the same as the dashboard payloads.

Rates on records (openRate, clickRate, conversionRate) are computed fields
derived from the raw counters on access; they are serialized for consumers but
ignored on load, so counters remain the single source of truth.

All models use Pydantic v2 syntax.
"""

from datetime import date, datetime
from typing import ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field

from email_analytics.models.enums import CompareMode, Granularity, MetricKey


def _ratio(numerator: float, denominator: float) -> float:
    return (numerator / denominator) * 100 if denominator > 0 else 0.0


# =============================================================================
# Normalized Records
# =============================================================================


class SendRecord(BaseModel):
    """
    Counters shared by campaign sends and flow sends.

    dayOfWeek follows the Sunday = 0 convention used by the provider's
    weekday columns; hourOfDay is local wall-clock hour.
    """
    model_config = ConfigDict(frozen=True, extra='ignore')

    DATE_FIELDS: ClassVar[Tuple[str, ...]] = ('sentDate',)

    id: int = Field(..., ge=0, description="Sequential id assigned at transform time")
    sentDate: datetime = Field(..., description="Local send timestamp")
    dayOfWeek: int = Field(..., ge=0, le=6, description="0 = Sunday ... 6 = Saturday")
    hourOfDay: int = Field(..., ge=0, le=23, description="Local send hour")
    emailsSent: int = 0
    uniqueOpens: int = 0
    uniqueClicks: int = 0
    totalOrders: int = 0
    revenue: float = 0.0
    unsubscribesCount: int = 0
    spamComplaintsCount: int = 0
    bouncesCount: int = 0

    @computed_field
    @property
    def openRate(self) -> float:
        return _ratio(self.uniqueOpens, self.emailsSent)

    @computed_field
    @property
    def clickRate(self) -> float:
        return _ratio(self.uniqueClicks, self.emailsSent)

    @computed_field
    @property
    def conversionRate(self) -> float:
        return _ratio(self.totalOrders, self.uniqueClicks)


class CampaignRecord(SendRecord):
    """One campaign send from the campaigns export."""
    model_config = ConfigDict(
        frozen=True,
        extra='ignore',
        json_schema_extra={
            "example": {
                "id": 1,
                "campaignName": "Spring Sale",
                "subject": "20% off everything",
                "sentDate": "2025-04-01T10:00:00",
                "dayOfWeek": 2,
                "hourOfDay": 10,
                "emailsSent": 12000,
                "uniqueOpens": 4200,
                "uniqueClicks": 380,
                "totalOrders": 41,
                "revenue": 3120.5,
                "unsubscribesCount": 18,
                "spamComplaintsCount": 1,
                "bouncesCount": 60,
            }
        },
    )

    campaignName: str = ''
    subject: str = ''


class FlowEmailRecord(SendRecord):
    """One day of sends for one message of an automated flow."""
    flowId: str = ''
    flowName: str = ''
    flowMessageId: str = ''
    emailName: str = ''
    sequencePosition: int = Field(1, ge=1, description="1-based step within the flow")
    status: str = 'unknown'


class SubscriberRecord(BaseModel):
    """One subscriber profile from the subscribers export."""
    model_config = ConfigDict(frozen=True, extra='ignore')

    DATE_FIELDS: ClassVar[Tuple[str, ...]] = (
        'profileCreated',
        'firstActive',
        'lastActive',
        'lastOpen',
        'lastClick',
        'emailConsentTimestamp',
    )

    id: str
    email: str
    profileCreated: datetime
    firstActive: Optional[datetime] = None
    lastActive: Optional[datetime] = None
    lastOpen: Optional[datetime] = None
    lastClick: Optional[datetime] = None
    emailConsent: bool = False
    emailConsentRaw: str = ''
    emailConsentTimestamp: Optional[datetime] = None
    emailSuppressions: List[str] = Field(default_factory=list)
    canReceiveEmail: bool = False
    isBuyer: bool = False
    totalClv: float = 0.0
    historicClv: float = 0.0
    predictedClv: float = 0.0
    avgOrderValue: float = 0.0
    totalOrders: int = 0
    avgDaysBetweenOrders: Optional[float] = None
    lifetimeInDays: int = 0


# =============================================================================
# Parse / Load Envelopes
# =============================================================================


class RowError(BaseModel):
    """
    Row-level problem found while parsing or validating an upload.

    Used for reporting skipped rows alongside the rows that did parse.
    """
    field: Optional[str] = Field(default=None, description="Column involved, if any")
    message: str = Field(..., description="Error message")
    row_number: Optional[int] = Field(
        default=None,
        ge=1,
        description="1-based data row number where the error occurred",
    )


class LoadProgressEntry(BaseModel):
    """Upload feedback for one record kind."""
    loaded: bool = False
    progress: float = Field(0.0, ge=0, le=100)
    error: Optional[str] = None


class LoadProgress(BaseModel):
    """Per-kind upload feedback for the whole session."""
    campaigns: LoadProgressEntry = Field(default_factory=LoadProgressEntry)
    flows: LoadProgressEntry = Field(default_factory=LoadProgressEntry)
    subscribers: LoadProgressEntry = Field(default_factory=LoadProgressEntry)


class LoadResult(BaseModel):
    """
    Result of loading one or more exports into a session.
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": False,
                "rows_loaded": {"campaigns": 120, "flows": 0},
                "dropped_rows": {"campaigns": 2},
                "errors": ["Flows: Missing required columns: Delivered"],
                "row_errors": [],
            }
        }
    )

    success: bool = Field(..., description="True when every provided file loaded")
    rows_loaded: Dict[str, int] = Field(default_factory=dict)
    dropped_rows: Dict[str, int] = Field(
        default_factory=dict,
        description="Rows excluded at the transformer boundary (unparseable dates)",
    )
    errors: List[str] = Field(default_factory=list)
    row_errors: List[RowError] = Field(default_factory=list)


class DatasetSnapshot(BaseModel):
    """
    The persisted document for one identity.

    Serialized with dates as ISO-8601 strings.
    """
    campaigns: List[CampaignRecord] = Field(default_factory=list)
    flowEmails: List[FlowEmailRecord] = Field(default_factory=list)
    subscribers: List[SubscriberRecord] = Field(default_factory=list)
    savedAt: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return not (self.campaigns or self.flowEmails or self.subscribers)


# =============================================================================
# Query Results
# =============================================================================


class DateWindow(BaseModel):
    """Inclusive local time window."""
    model_config = ConfigDict(frozen=True)

    startDate: datetime
    endDate: datetime

    @property
    def days(self) -> int:
        """Number of calendar days touched by the window."""
        return (self.endDate.date() - self.startDate.date()).days + 1

    def contains(self, moment: datetime) -> bool:
        return self.startDate <= moment <= self.endDate


class TimeSeriesPoint(BaseModel):
    """
    One bucket of a metric time series.

    numerator and denominator are the summed raw counters behind value;
    denominator is None for plain sums (revenue, emailsSent, totalOrders).
    """
    value: float
    label: str
    bucketStart: date
    numerator: float = 0.0
    denominator: Optional[float] = None
    emailCount: int = 0


class TimeSeriesResult(BaseModel):
    """A series plus the bounds that shaped it."""
    metric: MetricKey
    requestedGranularity: Granularity
    granularity: Granularity
    points: List[TimeSeriesPoint] = Field(default_factory=list)
    window: Optional[DateWindow] = None
    truncated: bool = False
    recordsCapped: bool = False
    timedOut: bool = False


class ComparisonSeries(BaseModel):
    """Primary series with an aligned comparison series."""
    primary: List[TimeSeriesPoint] = Field(default_factory=list)
    compare: Optional[List[TimeSeriesPoint]] = None
    granularity: Granularity = Granularity.DAILY
    compareMode: CompareMode = CompareMode.PREV_PERIOD


class AggregatedMetrics(BaseModel):
    """Single-pass aggregate over a window. All zero for an empty window."""
    totalRevenue: float = 0.0
    emailsSent: int = 0
    totalOrders: int = 0
    openRate: float = 0.0
    clickRate: float = 0.0
    clickToOpenRate: float = 0.0
    conversionRate: float = 0.0
    unsubscribeRate: float = 0.0
    spamRate: float = 0.0
    bounceRate: float = 0.0
    avgOrderValue: float = 0.0
    revenuePerEmail: float = 0.0
    emailCount: int = 0


class PeriodOverPeriodResult(BaseModel):
    """
    Metric value for the current window against the preceding window.

    previousPeriodCovered is False when the loaded data does not span the whole
    comparison window (the comparison is then based on partial history).
    """
    currentValue: float = 0.0
    previousValue: float = 0.0
    changePercent: float = 0.0
    isPositive: bool = True
    currentPeriod: Optional[DateWindow] = None
    previousPeriod: Optional[DateWindow] = None
    previousPeriodCovered: bool = False


class DayOfWeekPerformance(BaseModel):
    day: str
    dayIndex: int = Field(..., ge=0, le=6)
    value: float = 0.0
    campaignCount: int = 0
    percentageOfTotal: float = 0.0


class HourOfDayPerformance(BaseModel):
    hour: int = Field(..., ge=0, le=23)
    hourLabel: str
    value: float = 0.0
    campaignCount: int = 0
    percentageOfTotal: float = 0.0


class FlowSequenceInfo(BaseModel):
    """Ordered steps of one flow."""
    flowId: str = ''
    flowName: str = ''
    messageIds: List[str] = Field(default_factory=list)
    emailNames: List[str] = Field(default_factory=list)
    positions: List[int] = Field(default_factory=list)
    sequenceLength: int = 0


# =============================================================================
# Audience / Summary
# =============================================================================


class PurchaseFrequency(BaseModel):
    never: int = 0
    oneOrder: int = 0
    twoOrders: int = 0
    threeTo5: int = 0
    sixPlus: int = 0


class LifetimeDistribution(BaseModel):
    zeroTo3Months: int = 0
    threeTo6Months: int = 0
    sixTo12Months: int = 0
    oneToTwoYears: int = 0
    twoYearsPlus: int = 0


class AudienceInsights(BaseModel):
    totalSubscribers: int = 0
    buyerCount: int = 0
    nonBuyerCount: int = 0
    buyerPercentage: float = 0.0
    avgClvAll: float = 0.0
    avgClvBuyers: float = 0.0
    purchaseFrequency: PurchaseFrequency = Field(default_factory=PurchaseFrequency)
    lifetimeDistribution: LifetimeDistribution = Field(default_factory=LifetimeDistribution)


class CampaignSummary(BaseModel):
    totalCampaigns: int
    dateRange: DateWindow
    totalRevenue: float
    totalEmailsSent: int
    avgOpenRate: float
    avgClickRate: float
    avgConversionRate: float


class SubscriberSummary(BaseModel):
    totalSubscribers: int
    totalBuyers: int
    buyerPercentage: float
    avgLifetimeDays: float
    totalRevenue: float
    avgRevenuePerSubscriber: float
    avgRevenuePerBuyer: float
    consentRate: float


class FlowSummary(BaseModel):
    totalFlows: int = 0
    totalEmails: int = 0


class SummaryStats(BaseModel):
    campaigns: Optional[CampaignSummary] = None
    subscribers: Optional[SubscriberSummary] = None
    flows: FlowSummary = Field(default_factory=FlowSummary)
