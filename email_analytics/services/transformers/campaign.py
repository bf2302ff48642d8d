"""
Campaign export transformer.

Maps rows of the provider's campaign export to CampaignRecord. Header names
are resolved through normalized lookups so renamed and duplicated columns
("Send Time", "Send Time.1", "Message send date time") are all accepted.
Rows whose send time fails every date strategy are dropped.
"""

import logging
from typing import Any, Dict, List, Sequence

from email_analytics.models import CampaignRecord, Err
from email_analytics.services.transformers.base import (
    BaseTransformer,
    TransformReport,
    find_field,
    parse_count,
    parse_number,
    parse_send_date,
    sunday_first_weekday,
)

logger = logging.getLogger(__name__)

# =============================================================================
# COLUMN CANDIDATES (most specific first)
# =============================================================================

CAMPAIGN_NAME_FIELDS: List[str] = ['Campaign Name', 'Name']
SUBJECT_FIELDS: List[str] = ['Subject', 'Subject Line']
SEND_TIME_FIELDS: List[str] = [
    'Send Time',
    'Message send date time',
    'Send Date',
    'Sent At',
    'Send Date (UTC)',
    'Send Date (GMT)',
    'Date',
]
RECIPIENT_FIELDS: List[str] = ['Total Recipients', 'Recipients']
OPEN_FIELDS: List[str] = ['Unique Opens']
CLICK_FIELDS: List[str] = ['Unique Clicks']
ORDER_FIELDS: List[str] = ['Unique Placed Order', 'Placed Order']
REVENUE_FIELDS: List[str] = ['Revenue']
UNSUBSCRIBE_FIELDS: List[str] = ['Unsubscribes']
SPAM_FIELDS: List[str] = ['Spam Complaints']
BOUNCE_FIELDS: List[str] = ['Bounces']


class CampaignTransformer(BaseTransformer[CampaignRecord]):
    """Normalizes campaign export rows."""

    kind_label = 'campaign'

    def transform_with_report(self, raw_rows: Sequence[Dict[str, Any]]) -> TransformReport[CampaignRecord]:
        report: TransformReport[CampaignRecord] = TransformReport()

        for index, raw in enumerate(raw_rows, start=1):
            send_value = find_field(raw, SEND_TIME_FIELDS)
            sent = parse_send_date(send_value, self.settings)
            if isinstance(sent, Err):
                report.reject(send_value)
                continue

            sent_date = sent.value
            name = str(find_field(raw, CAMPAIGN_NAME_FIELDS) or '')
            subject = str(find_field(raw, SUBJECT_FIELDS) or name)

            report.records.append(CampaignRecord(
                id=index,
                campaignName=name,
                subject=subject,
                sentDate=sent_date,
                dayOfWeek=sunday_first_weekday(sent_date),
                hourOfDay=sent_date.hour,
                emailsSent=parse_count(find_field(raw, RECIPIENT_FIELDS)),
                uniqueOpens=parse_count(find_field(raw, OPEN_FIELDS)),
                uniqueClicks=parse_count(find_field(raw, CLICK_FIELDS)),
                totalOrders=parse_count(find_field(raw, ORDER_FIELDS)),
                revenue=parse_number(find_field(raw, REVENUE_FIELDS)),
                unsubscribesCount=parse_count(find_field(raw, UNSUBSCRIBE_FIELDS)),
                spamComplaintsCount=parse_count(find_field(raw, SPAM_FIELDS)),
                bouncesCount=parse_count(find_field(raw, BOUNCE_FIELDS)),
            ))

        self._log_report(report)
        return report


__all__ = ['CampaignTransformer', 'SEND_TIME_FIELDS', 'CAMPAIGN_NAME_FIELDS']
