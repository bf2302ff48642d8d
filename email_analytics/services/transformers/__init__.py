"""
Record transformers: raw export rows -> normalized, immutable records.

Usage:
    from email_analytics.services.transformers import CampaignTransformer

    records = CampaignTransformer().transform(rows)
"""

from email_analytics.services.transformers.base import (
    BaseTransformer,
    TransformReport,
    find_column,
    find_field,
    normalize_key,
)
from email_analytics.services.transformers.campaign import CampaignTransformer
from email_analytics.services.transformers.flow import FlowTransformer
from email_analytics.services.transformers.subscriber import SubscriberTransformer

__all__ = [
    'BaseTransformer',
    'TransformReport',
    'CampaignTransformer',
    'FlowTransformer',
    'SubscriberTransformer',
    'find_column',
    'find_field',
    'normalize_key',
]
