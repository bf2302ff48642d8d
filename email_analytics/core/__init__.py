"""
Core infrastructure package for the email analytics engine.

Provides:
- Configuration management via pydantic-settings
- Async PostgreSQL connectivity via asyncpg (durable cache tier)

Usage:
    from email_analytics.core import get_settings, get_db_pool
"""

# =============================================================================
# Re-exports from email_analytics.core.config
# =============================================================================
from email_analytics.core.config import Settings, get_settings

# =============================================================================
# Re-exports from email_analytics.core.database
# =============================================================================
from email_analytics.core.database import (
    init_db,
    close_db,
    get_db_pool,
    ensure_cache_table,
)

__all__ = [
    # Configuration management
    'Settings',
    'get_settings',
    # Database pool lifecycle
    'init_db',
    'close_db',
    'get_db_pool',
    'ensure_cache_table',
]
