"""
Subscriber export transformer and audience insights.

profileCreated ("Profile Created On", falling back to "Date Added") is the
primary date; profiles without a parseable one are dropped. Every other date
is optional and resolves to None when absent or unparseable, including
sentinel strings such as NEVER_SUBSCRIBED in the consent timestamp column.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from email_analytics.core.config import Settings
from email_analytics.models import (
    AudienceInsights,
    Err,
    LifetimeDistribution,
    Ok,
    PurchaseFrequency,
    SubscriberRecord,
)
from email_analytics.services.dates import days_between
from email_analytics.services.transformers.base import (
    BaseTransformer,
    TransformReport,
    first_present,
    is_blank,
    parse_consent,
    parse_generic_date,
    parse_number,
    parse_optional_number,
    parse_suppressions,
)

logger = logging.getLogger(__name__)


class SubscriberTransformer(BaseTransformer[SubscriberRecord]):
    """
    Normalizes subscriber export rows.

    Args:
        settings: Engine settings (date ranges, timezone).
        reference_date: "Now" for lifetime calculations; defaults to the
            moment the transformer is created.
    """

    kind_label = 'subscriber'

    def __init__(self, settings: Optional[Settings] = None, reference_date: Optional[datetime] = None):
        super().__init__(settings)
        self.reference_date = reference_date or datetime.now()

    def _optional_date(self, value: Any) -> Optional[datetime]:
        result = parse_generic_date(value, self.settings)
        return result.value if isinstance(result, Ok) else None

    def transform_with_report(self, raw_rows: Sequence[Dict[str, Any]]) -> TransformReport[SubscriberRecord]:
        report: TransformReport[SubscriberRecord] = TransformReport()

        for raw in raw_rows:
            created_value = first_present(raw, 'Profile Created On', 'Date Added')
            created = parse_generic_date(created_value, self.settings)
            if isinstance(created, Err):
                report.reject(created_value)
                continue
            profile_created = created.value

            consent_raw = '' if is_blank(raw.get('Email Marketing Consent')) else str(raw['Email Marketing Consent'])
            consent_timestamp = self._optional_date(raw.get('Email Marketing Consent Timestamp'))
            if consent_timestamp is None:
                # Older exports put the consent date in the consent column itself
                consent_timestamp = self._optional_date(consent_raw)

            total_clv = parse_number(raw.get('Total Customer Lifetime Value'))
            predicted_clv = parse_number(raw.get('Predicted Customer Lifetime Value'))
            historic_clv = parse_number(raw.get('Historic Customer Lifetime Value'))
            if historic_clv <= 0:
                historic_clv = max(total_clv - predicted_clv, 0.0)
            total_orders = math.floor(parse_number(raw.get('Historic Number Of Orders')))

            suppressions, can_receive = parse_suppressions(raw.get('Email Suppressions'))

            report.records.append(SubscriberRecord(
                id=str(raw.get('Klaviyo ID') or ''),
                email=str(raw.get('Email') or ''),
                profileCreated=profile_created,
                firstActive=self._optional_date(raw.get('First Active')) or profile_created,
                lastActive=self._optional_date(raw.get('Last Active')),
                lastOpen=self._optional_date(raw.get('Last Open')),
                lastClick=self._optional_date(raw.get('Last Click')),
                emailConsent=parse_consent(consent_raw, self.settings),
                emailConsentRaw=consent_raw,
                emailConsentTimestamp=consent_timestamp,
                emailSuppressions=suppressions,
                canReceiveEmail=can_receive,
                isBuyer=total_orders > 0 or historic_clv > 0,
                totalClv=total_clv,
                historicClv=historic_clv,
                predictedClv=predicted_clv,
                avgOrderValue=parse_number(raw.get('Average Order Value')),
                totalOrders=total_orders,
                avgDaysBetweenOrders=parse_optional_number(raw.get('Average Days Between Orders')),
                lifetimeInDays=max(days_between(profile_created, self.reference_date), 0),
            ))

        self._log_report(report)
        return report

    @staticmethod
    def get_audience_insights(subscribers: Sequence[SubscriberRecord]) -> AudienceInsights:
        """
        Buyer share, average CLV and distribution buckets for an audience.

        Lifetime buckets are in days: <= 90, <= 180, <= 365, <= 730, > 730.
        """
        total = len(subscribers)
        if total == 0:
            return AudienceInsights()

        buyers = [subscriber for subscriber in subscribers if subscriber.isBuyer]
        clv_all = sum(subscriber.historicClv for subscriber in subscribers)
        clv_buyers = sum(subscriber.historicClv for subscriber in buyers)

        frequency = PurchaseFrequency(
            never=total - len(buyers),
            oneOrder=sum(1 for s in buyers if s.totalOrders == 1),
            twoOrders=sum(1 for s in buyers if s.totalOrders == 2),
            threeTo5=sum(1 for s in buyers if 3 <= s.totalOrders <= 5),
            sixPlus=sum(1 for s in buyers if s.totalOrders >= 6),
        )
        lifetimes = [subscriber.lifetimeInDays for subscriber in subscribers]
        distribution = LifetimeDistribution(
            zeroTo3Months=sum(1 for days in lifetimes if days <= 90),
            threeTo6Months=sum(1 for days in lifetimes if 90 < days <= 180),
            sixTo12Months=sum(1 for days in lifetimes if 180 < days <= 365),
            oneToTwoYears=sum(1 for days in lifetimes if 365 < days <= 730),
            twoYearsPlus=sum(1 for days in lifetimes if days > 730),
        )

        return AudienceInsights(
            totalSubscribers=total,
            buyerCount=len(buyers),
            nonBuyerCount=total - len(buyers),
            buyerPercentage=len(buyers) / total * 100,
            avgClvAll=clv_all / total,
            avgClvBuyers=clv_buyers / len(buyers) if buyers else 0.0,
            purchaseFrequency=frequency,
            lifetimeDistribution=distribution,
        )


__all__ = ['SubscriberTransformer']
