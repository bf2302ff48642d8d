"""
Pytest Configuration and Shared Fixtures for the Email Analytics Engine Tests.

This module provides fixtures and helpers for every test module, supporting:
- Async test execution with pytest-asyncio
- Explicit Settings instances (no .env or global state involved)
- Mock asyncpg pool fixtures for the durable cache tier
- An in-memory async durable tier with failure injection
- A fake monotonic clock for execution-budget tests
- Record builders and export DataFrames shaped like provider downloads

Helpers:
- create_csv_bytes(df): DataFrame -> upload bytes
- assert_close(actual, expected): float comparison with a readable message
- make_campaign(...) / make_flow(...): normalized records without parsing
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pandas as pd
import pytest

from email_analytics.core.config import Settings
from email_analytics.models import CampaignRecord, FlowEmailRecord
from email_analytics.services.cache import DurableCache, MemoryStore, StorageError
from email_analytics.services.transformers.base import sunday_first_weekday


# ============================================================
# PYTEST PLUGINS CONFIGURATION
# ============================================================

pytest_plugins: List[str] = ['pytest_asyncio']


# ============================================================
# PYTEST HOOKS
# ============================================================

def pytest_configure(config) -> None:
    """
    Register custom markers.

    - slow: large synthetic datasets (deselect with -m "not slow")
    - cache: tests touching the cache tiers
    """
    config.addinivalue_line(
        'markers',
        'slow: marks tests as slow (deselect with -m "not slow")'
    )
    config.addinivalue_line(
        'markers',
        'cache: marks tests exercising the durable cache tiers'
    )


# ============================================================
# SETTINGS FIXTURE
# ============================================================

@pytest.fixture
def settings() -> Settings:
    """
    Engine settings with the durable tier disabled and UTC as local time.

    Tests needing different bounds build their own with model_copy(update=...).
    """
    return Settings(database_url=None, local_timezone='UTC')


# ============================================================
# CLOCK
# ============================================================

class FakeClock:
    """
    Deterministic monotonic clock.

    Each call returns the current time and then moves it forward by `step`.
    """

    def __init__(self, start: float = 0.0, step: float = 0.0):
        self.now = start
        self.step = step
        self.calls = 0

    def __call__(self) -> float:
        self.calls += 1
        value = self.now
        self.now += self.step
        return value

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ============================================================
# DATABASE MOCK FIXTURES
# ============================================================

@pytest.fixture
def mock_db_pool() -> AsyncMock:
    """
    Mock asyncpg pool whose acquire() yields a mock connection.

    Usage:
        conn = mock_db_pool.acquire.return_value.__aenter__.return_value
        conn.fetchrow.return_value = {'payload': '{}'}
    """
    pool = AsyncMock()

    conn = AsyncMock()
    conn.execute = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)

    acquire_context = AsyncMock()
    acquire_context.__aenter__ = AsyncMock(return_value=conn)
    acquire_context.__aexit__ = AsyncMock(return_value=None)
    pool.acquire = Mock(return_value=acquire_context)

    pool.close = AsyncMock(return_value=None)

    return pool


# ============================================================
# CACHE FIXTURES
# ============================================================

class InMemoryDurableStore:
    """
    Async stand-in for PostgresStore.

    Set `fail = True` to make every operation raise StorageError.
    """

    def __init__(self, fail: bool = False):
        self.entries: Dict[str, str] = {}
        self.fail = fail
        self.writes = 0

    async def get(self, key: str) -> Optional[str]:
        await asyncio.sleep(0)
        if self.fail:
            raise StorageError("durable tier unavailable")
        return self.entries.get(key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.sleep(0)
        if self.fail:
            raise StorageError("durable tier unavailable")
        self.entries[key] = value
        self.writes += 1

    async def delete(self, key: str) -> None:
        await asyncio.sleep(0)
        if self.fail:
            raise StorageError("durable tier unavailable")
        self.entries.pop(key, None)


@pytest.fixture
def durable_store() -> InMemoryDurableStore:
    return InMemoryDurableStore()


@pytest.fixture
def memory_cache(settings: Settings) -> DurableCache:
    """Cache with only the fast tier."""
    return DurableCache('brand-1', MemoryStore(settings.fast_tier_max_bytes), None, settings)


@pytest.fixture
def two_tier_cache(settings: Settings, durable_store: InMemoryDurableStore) -> DurableCache:
    return DurableCache('brand-1', MemoryStore(settings.fast_tier_max_bytes), durable_store, settings)


# ============================================================
# RECORD BUILDERS
# ============================================================

def make_campaign(
    sent: datetime,
    emails_sent: int = 100,
    opens: int = 0,
    clicks: int = 0,
    orders: int = 0,
    revenue: float = 0.0,
    unsubscribes: int = 0,
    spam: int = 0,
    bounces: int = 0,
    name: str = 'Campaign',
    record_id: int = 1,
) -> CampaignRecord:
    return CampaignRecord(
        id=record_id,
        campaignName=name,
        subject=name,
        sentDate=sent,
        dayOfWeek=sunday_first_weekday(sent),
        hourOfDay=sent.hour,
        emailsSent=emails_sent,
        uniqueOpens=opens,
        uniqueClicks=clicks,
        totalOrders=orders,
        revenue=revenue,
        unsubscribesCount=unsubscribes,
        spamComplaintsCount=spam,
        bouncesCount=bounces,
    )


def make_flow(
    sent: datetime,
    flow_name: str = 'Welcome Series',
    position: int = 1,
    emails_sent: int = 100,
    opens: int = 0,
    clicks: int = 0,
    orders: int = 0,
    revenue: float = 0.0,
    message_id: Optional[str] = None,
    record_id: int = 1,
) -> FlowEmailRecord:
    return FlowEmailRecord(
        id=record_id,
        flowId=f"flow-{flow_name}",
        flowName=flow_name,
        flowMessageId=message_id or f"msg-{position}",
        emailName=f"Email {position}",
        sequencePosition=position,
        status='live',
        sentDate=sent,
        dayOfWeek=sunday_first_weekday(sent),
        hourOfDay=sent.hour,
        emailsSent=emails_sent,
        uniqueOpens=opens,
        uniqueClicks=clicks,
        totalOrders=orders,
        revenue=revenue,
    )


# ============================================================
# EXPORT DATAFRAMES
# ============================================================

@pytest.fixture
def campaign_export_df() -> pd.DataFrame:
    """Three campaigns in one week, shaped like the provider's campaign export."""
    return pd.DataFrame({
        'Campaign Name': ['Spring Sale', 'Spring Sale Reminder', 'New Arrivals'],
        'Subject': ['20% off', 'Last chance', 'Just landed'],
        'Send Time': ['2025-03-03 09:00:00', '2025-03-05 14:30:00', '2025-03-09 18:00:00'],
        'Total Recipients': ['100', '200', '300'],
        'Unique Opens': ['10', '40', '60'],
        'Unique Clicks': ['2', '8', '12'],
        'Unique Placed Order': ['1', '2', '3'],
        'Revenue': ['$50.00', '$1,200.00', '$300.00'],
        'Unsubscribes': ['1', '0', '2'],
        'Spam Complaints': ['0', '0', '1'],
        'Bounces': ['3', '1', '0'],
    })


@pytest.fixture
def flow_export_text() -> str:
    """Flow export with the two preamble lines the provider prepends."""
    return (
        "Flow Performance Report\n"
        "Generated,2025-03-10\n"
        "Day,Flow ID,Flow Name,Flow Message ID,Flow Message Name,Flow Message Channel,"
        "Status,Delivered,Unique Opens,Unique Clicks,Placed Order,Revenue,Bounced,Bounce Rate\n"
        "2025-03-01,F1,Welcome Series,M1,Welcome,Email,live,100,50,10,2,80,1,\n"
        "2025-03-02,F1,Welcome Series,M1,Welcome,Email,live,120,60,12,3,90,,\n"
        "2025-03-03,F1,Welcome Series,M2,Best Sellers,Email,live,1000,400,50,5,250,,1.5%\n"
        "2025-03-03,F1,Welcome Series,M3,Text Offer,SMS,live,80,0,5,1,20,0,\n"
        "2025-03-04,F2,Abandoned Cart,C1,Reminder,Email,live,40,20,5,1,35,0,\n"
    )


@pytest.fixture
def subscriber_export_df() -> pd.DataFrame:
    return pd.DataFrame({
        'Email': ['a@example.com', 'b@example.com', 'c@example.com'],
        'Klaviyo ID': ['K1', 'K2', 'K3'],
        'Email Marketing Consent': ['TRUE', 'NEVER_SUBSCRIBED', '2024-06-01 12:00:00'],
        'Email Marketing Consent Timestamp': ['2024-01-05 08:00:00', 'NEVER_SUBSCRIBED', ''],
        'Profile Created On': ['2024-01-01', '2024-06-01', '2023-01-01'],
        'Total Customer Lifetime Value': ['150.00', '0', '400'],
        'Predicted Customer Lifetime Value': ['50', '0', '100'],
        'Historic Customer Lifetime Value': ['100', '0', ''],
        'Historic Number Of Orders': ['2', '0', '6'],
        'Average Order Value': ['50', '0', '50'],
        'Email Suppressions': ['[]', '["UNSUBSCRIBE"]', '[]'],
    })


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def create_csv_bytes(df: pd.DataFrame) -> bytes:
    """Convert a DataFrame to UTF-8 CSV bytes, as an upload would arrive."""
    return df.to_csv(index=False).encode('utf-8')


def assert_close(
    actual: float,
    expected: float,
    tolerance: float = 0.001
) -> None:
    """Assert two floats are within tolerance, showing both on failure."""
    assert abs(actual - expected) <= tolerance, (
        f"Expected {expected}, got {actual} (tolerance {tolerance})"
    )
