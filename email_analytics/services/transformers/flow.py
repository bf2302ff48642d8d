"""
Flow export transformer.

The flow export has one row per flow message per day. Besides normalizing the
counters, this transformer infers each message's step in its flow: messages
are ranked by the date they were first sent within their Flow ID, so the
welcome email that started sending first is step 1.

Some export versions only report bounce/unsubscribe/spam as rates; counts
are then reconstructed as round(delivered * rate).
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from email_analytics.models import Err, FlowEmailRecord, FlowSequenceInfo
from email_analytics.services.transformers.base import (
    BaseTransformer,
    TransformReport,
    first_present,
    is_blank,
    parse_count,
    parse_decimal_rate,
    parse_number,
    parse_send_date,
    sunday_first_weekday,
)

logger = logging.getLogger(__name__)

EMAIL_CHANNEL: str = 'email'


def is_email_row(raw: Dict[str, Any]) -> bool:
    """Rows without a channel predate SMS support and are email."""
    channel = raw.get('Flow Message Channel')
    return is_blank(channel) or str(channel).strip().lower() == EMAIL_CHANNEL


def _count_or_rate(raw: Dict[str, Any], count_field: str, rate_fields: Tuple[str, ...], delivered: int) -> int:
    count = parse_count(raw.get(count_field))
    if count:
        return count
    rate = parse_decimal_rate(first_present(raw, *rate_fields))
    return int(round(delivered * rate))


class FlowTransformer(BaseTransformer[FlowEmailRecord]):
    """Normalizes flow export rows and answers flow-structure questions."""

    kind_label = 'flow'

    def transform_with_report(self, raw_rows: Sequence[Dict[str, Any]]) -> TransformReport[FlowEmailRecord]:
        report: TransformReport[FlowEmailRecord] = TransformReport()

        dated: List[Tuple[Dict[str, Any], datetime]] = []
        for raw in raw_rows:
            if not is_email_row(raw):
                continue
            sent = parse_send_date(raw.get('Day'), self.settings)
            if isinstance(sent, Err):
                report.reject(raw.get('Day'))
                continue
            dated.append((raw, sent.value))

        positions = self._sequence_positions(dated)

        for index, (raw, sent_date) in enumerate(dated, start=1):
            flow_id = str(raw.get('Flow ID') or '')
            message_id = str(raw.get('Flow Message ID') or '')
            position = positions.get((flow_id, message_id), 1)
            delivered = parse_count(raw.get('Delivered'))

            report.records.append(FlowEmailRecord(
                id=index,
                flowId=flow_id,
                flowName=str(raw.get('Flow Name') or ''),
                flowMessageId=message_id,
                emailName=str(raw.get('Flow Message Name') or f"Email {position}"),
                sequencePosition=position,
                status=str(raw.get('Status') or 'unknown'),
                sentDate=sent_date,
                dayOfWeek=sunday_first_weekday(sent_date),
                hourOfDay=sent_date.hour,
                emailsSent=delivered,
                uniqueOpens=parse_count(raw.get('Unique Opens')),
                uniqueClicks=parse_count(raw.get('Unique Clicks')),
                totalOrders=parse_count(first_present(raw, 'Unique Placed Order', 'Placed Order')),
                revenue=parse_number(raw.get('Revenue')),
                bouncesCount=_count_or_rate(raw, 'Bounced', ('Bounce Rate',), delivered),
                unsubscribesCount=_count_or_rate(
                    raw, 'Unsubscribes', ('Unsub Rate', 'Unsubscribe Rate'), delivered
                ),
                spamComplaintsCount=_count_or_rate(
                    raw, 'Spam', ('Complaint Rate', 'Spam Rate'), delivered
                ),
            ))

        self._log_report(report)
        return report

    @staticmethod
    def _sequence_positions(
        dated: List[Tuple[Dict[str, Any], datetime]],
    ) -> Dict[Tuple[str, str], int]:
        """1-based rank of each message's first send date within its flow."""
        first_sent: Dict[Tuple[str, str], datetime] = {}
        for raw, sent_date in dated:
            key = (str(raw.get('Flow ID') or ''), str(raw.get('Flow Message ID') or ''))
            if key not in first_sent or sent_date < first_sent[key]:
                first_sent[key] = sent_date

        by_flow: Dict[str, List[Tuple[datetime, str]]] = defaultdict(list)
        for (flow_id, message_id), sent_date in first_sent.items():
            by_flow[flow_id].append((sent_date, message_id))

        positions: Dict[Tuple[str, str], int] = {}
        for flow_id, messages in by_flow.items():
            for rank, (_, message_id) in enumerate(sorted(messages), start=1):
                positions[(flow_id, message_id)] = rank
        return positions

    # =========================================================================
    # Flow structure queries
    # =========================================================================

    @staticmethod
    def get_unique_flow_names(flows: Sequence[FlowEmailRecord]) -> List[str]:
        return sorted({flow.flowName for flow in flows if flow.flowName})

    @staticmethod
    def get_flow_sequence_info(flow_name: str, flows: Sequence[FlowEmailRecord]) -> FlowSequenceInfo:
        """
        Ordered steps of one flow.

        Messages are ordered by the earliest sequence position they were seen
        at; each message is labelled with its most recent name, since flow
        emails are often renamed while live.

        Args:
            flow_name: Flow to describe.
            flows: Flow records to search.

        Returns:
            FlowSequenceInfo; empty when the flow is unknown.
        """
        members = [flow for flow in flows if flow.flowName == flow_name]
        if not members:
            return FlowSequenceInfo(flowName=flow_name)

        earliest_position: Dict[str, int] = {}
        latest: Dict[str, Tuple[datetime, str]] = {}
        for flow in members:
            message_id = flow.flowMessageId
            current: Optional[int] = earliest_position.get(message_id)
            if current is None or flow.sequencePosition < current:
                earliest_position[message_id] = flow.sequencePosition
            if message_id not in latest or flow.sentDate > latest[message_id][0]:
                latest[message_id] = (flow.sentDate, flow.emailName)

        ordered = sorted(earliest_position, key=lambda message_id: earliest_position[message_id])
        return FlowSequenceInfo(
            flowId=members[0].flowId,
            flowName=flow_name,
            messageIds=ordered,
            emailNames=[latest[message_id][1] for message_id in ordered],
            positions=sorted({flow.sequencePosition for flow in members}),
            sequenceLength=len(ordered),
        )


__all__ = ['FlowTransformer', 'is_email_row']
