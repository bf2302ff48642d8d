"""
Two-tier durable cache for session datasets.

Tiers:
- Fast tier: MemoryStore, an in-process, size-limited key/value store.
  Reads are synchronous so a session can hydrate before its first query.
- Durable tier: PostgresStore, one JSON document per key in the
  dataset_cache table, reached through the shared asyncpg pool.

Writes are write-behind: persist() writes the fast tier immediately (a quota
failure is logged and ignored), then schedules the durable write on the
running event loop and returns. Listeners registered with add_listener()
observe the outcome through CacheEvent.PERSISTED / PERSIST_FAILED, and
flush() awaits every pending write.

Key format:
    {storage_key_prefix}:{identity or 'anonymous'}:{cache_schema_version}

Revival:
    Date fields are stored as ISO-8601 strings and turned back into datetimes
    on load, converted to naive local wall time when they carry an offset.
    A value that cannot be revived becomes FALLBACK_DATE. Campaign and flow
    records whose send date is then outside the plausible send years are
    skipped, as is any record that fails validation. A document that is not
    valid JSON is treated as absent.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type

from pydantic import BaseModel, ValidationError

from email_analytics.core.config import Settings, get_settings
from email_analytics.core.database import (
    DELETE_CACHE_ENTRY,
    SELECT_CACHE_ENTRY,
    UPSERT_CACHE_ENTRY,
    ensure_cache_table,
    get_db_pool,
)
from email_analytics.models import (
    CacheEvent,
    CampaignRecord,
    DatasetSnapshot,
    FlowEmailRecord,
    Ok,
    SubscriberRecord,
)
from email_analytics.services.dates import is_plausible, parse_date, to_local

logger = logging.getLogger(__name__)

FALLBACK_DATE = datetime(1970, 1, 1)

CacheListener = Callable[[CacheEvent, str], None]


# =============================================================================
# Exceptions
# =============================================================================


class StorageError(Exception):
    """A cache tier could not complete a read, write or delete."""
    pass


class StorageQuotaError(StorageError):
    """The payload exceeds what the tier is allowed to hold."""
    pass


# =============================================================================
# Tiers
# =============================================================================


class MemoryStore:
    """
    Fast tier: in-process key/value store with a per-value size limit.

    One instance is normally shared by every session of a process, so
    switching identity keeps other identities' entries.
    """

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self._entries: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def set(self, key: str, value: str) -> None:
        size = len(value.encode('utf-8'))
        if size > self.max_bytes:
            raise StorageQuotaError(f"Payload of {size} bytes exceeds fast tier limit of {self.max_bytes}")
        self._entries[key] = value

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


class PostgresStore:
    """
    Durable tier: JSON documents in PostgreSQL.

    Args:
        pool_provider: Coroutine function returning the asyncpg pool.
    """

    def __init__(self, pool_provider: Callable[[], Awaitable[Any]] = get_db_pool):
        self._pool_provider = pool_provider
        self._table_ready = False

    async def _pool(self):
        pool = await self._pool_provider()
        if not self._table_ready:
            await ensure_cache_table(pool)
            self._table_ready = True
        return pool

    async def get(self, key: str) -> Optional[str]:
        try:
            pool = await self._pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(SELECT_CACHE_ENTRY, key)
        except Exception as e:
            raise StorageError(f"Durable read failed for {key}: {e}") from e
        return row['payload'] if row else None

    async def set(self, key: str, value: str) -> None:
        try:
            pool = await self._pool()
            async with pool.acquire() as conn:
                await conn.execute(UPSERT_CACHE_ENTRY, key, value)
        except Exception as e:
            raise StorageError(f"Durable write failed for {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            pool = await self._pool()
            async with pool.acquire() as conn:
                await conn.execute(DELETE_CACHE_ENTRY, key)
        except Exception as e:
            raise StorageError(f"Durable delete failed for {key}: {e}") from e


# =============================================================================
# Serialization
# =============================================================================


def storage_key(identity: Optional[str], settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    return f"{settings.storage_key_prefix}:{identity or 'anonymous'}:{settings.cache_schema_version}"


def serialize_snapshot(snapshot: DatasetSnapshot) -> str:
    return snapshot.model_dump_json()


def revive_date(value: Any, settings: Optional[Settings] = None) -> Optional[datetime]:
    """
    Turn a stored date value back into a naive local datetime.

    Offset-bearing values ("...Z", "+02:00") are converted to local wall time.
    None stays None; anything present that cannot be read becomes FALLBACK_DATE.
    """
    if value is None:
        return None
    settings = settings or get_settings()
    if isinstance(value, datetime):
        return to_local(value, settings.local_timezone)
    if isinstance(value, str):
        try:
            return to_local(datetime.fromisoformat(value), settings.local_timezone)
        except ValueError:
            pass
    parsed = parse_date(
        value,
        min_year=settings.generic_year_min,
        max_year=settings.generic_year_max,
        pivot=settings.two_digit_year_pivot,
        tz_name=settings.local_timezone,
    )
    return parsed.value if isinstance(parsed, Ok) else FALLBACK_DATE


def _revive_records(items: Any, model: Type[BaseModel], settings: Settings) -> List[Any]:
    if not isinstance(items, list):
        return []

    # Send records must keep a plausible send date; FALLBACK_DATE never qualifies
    check_send_date = 'sentDate' in model.DATE_FIELDS

    revived = []
    for item in items:
        if not isinstance(item, dict):
            continue
        data = dict(item)
        for field in model.DATE_FIELDS:
            if field in data:
                data[field] = revive_date(data[field], settings)
        if check_send_date and not is_plausible(data.get('sentDate'), settings.send_year_min, settings.send_year_max):
            logger.warning(f"Skipping cached {model.__name__}: implausible send date {item.get('sentDate')!r}")
            continue
        try:
            revived.append(model.model_validate(data))
        except ValidationError as e:
            logger.warning(f"Skipping cached {model.__name__}: {e.error_count()} validation error(s)")
    return revived


def revive_snapshot(payload: Optional[str], settings: Optional[Settings] = None) -> Optional[DatasetSnapshot]:
    """
    Rebuild a DatasetSnapshot from its stored JSON.

    Args:
        payload: Stored JSON document.
        settings: Supplies the local zone and plausible send years.

    Returns:
        The snapshot, or None when the payload is missing or corrupt.
    """
    if not payload:
        return None
    try:
        document = json.loads(payload)
    except (TypeError, ValueError) as e:
        logger.warning(f"Discarding corrupt cached dataset: {e}")
        return None
    if not isinstance(document, dict):
        logger.warning("Discarding cached dataset that is not a JSON object")
        return None

    settings = settings or get_settings()
    return DatasetSnapshot(
        campaigns=_revive_records(document.get('campaigns'), CampaignRecord, settings),
        flowEmails=_revive_records(document.get('flowEmails'), FlowEmailRecord, settings),
        subscribers=_revive_records(document.get('subscribers'), SubscriberRecord, settings),
        savedAt=revive_date(document.get('savedAt'), settings),
    )


# =============================================================================
# Durable Cache
# =============================================================================


class DurableCache:
    """
    Write-behind cache of one identity's dataset across the two tiers.

    Args:
        identity: Session identity; None maps to 'anonymous'.
        fast_tier: Synchronous in-process store.
        durable_tier: Async durable store, or None to run memory-only.
        settings: Engine settings (key format).

    Example:
        cache = DurableCache.from_settings("brand-42")
        cache.add_listener(lambda event, key: print(event, key))
        cache.persist(snapshot)
        await cache.flush()
    """

    def __init__(
        self,
        identity: Optional[str],
        fast_tier: MemoryStore,
        durable_tier: Optional[PostgresStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.identity = identity
        self.key = storage_key(identity, self.settings)
        self.fast_tier = fast_tier
        self.durable_tier = durable_tier
        self._listeners: List[CacheListener] = []
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, identity: Optional[str] = None, settings: Optional[Settings] = None) -> "DurableCache":
        """Memory tier always; PostgreSQL tier when DATABASE_URL is configured."""
        settings = settings or get_settings()
        durable = PostgresStore() if settings.database_url else None
        return cls(identity, MemoryStore(settings.fast_tier_max_bytes), durable, settings)

    def for_identity(self, identity: Optional[str]) -> "DurableCache":
        """A cache for another identity sharing this cache's tiers."""
        return DurableCache(identity, self.fast_tier, self.durable_tier, self.settings)

    @property
    def has_durable_tier(self) -> bool:
        return self.durable_tier is not None

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def add_listener(self, listener: CacheListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: CacheListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: CacheEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, self.key)
            except Exception:
                logger.exception(f"Cache listener failed on {event.value}")

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def persist(self, snapshot: DatasetSnapshot) -> None:
        """
        Store a snapshot: fast tier now, durable tier in the background.

        Never raises for storage problems.
        """
        if snapshot.savedAt is None:
            snapshot = snapshot.model_copy(update={'savedAt': datetime.now()})
        payload = serialize_snapshot(snapshot)

        try:
            self.fast_tier.set(self.key, payload)
        except StorageQuotaError as e:
            # The durable tier still receives the write
            logger.warning(f"Fast tier skipped for {self.key}: {e}")

        if self.durable_tier is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; durable write for {self.key} not scheduled")
            return

        task = loop.create_task(self._write_durable(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_durable(self, payload: str) -> None:
        try:
            await self.durable_tier.set(self.key, payload)
        except StorageError as e:
            logger.error(f"Durable persist failed: {e}")
            self._emit(CacheEvent.PERSIST_FAILED)
            return
        logger.info(f"Persisted dataset to durable tier under {self.key}")
        self._emit(CacheEvent.PERSISTED)

    async def flush(self) -> None:
        """Wait for every scheduled durable write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def clear(self) -> None:
        """Remove this identity's entry from both tiers."""
        await self.flush()
        self.fast_tier.delete(self.key)
        if self.durable_tier is not None:
            try:
                await self.durable_tier.delete(self.key)
            except StorageError as e:
                logger.error(f"Durable clear failed: {e}")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def hydrate_fast(self) -> Optional[DatasetSnapshot]:
        """Synchronously read the fast tier."""
        snapshot = revive_snapshot(self.fast_tier.get(self.key), self.settings)
        if snapshot is not None:
            self._emit(CacheEvent.HYDRATED)
        return snapshot

    async def hydrate_durable(self) -> Optional[DatasetSnapshot]:
        """Read the durable tier and warm the fast tier with what it returns."""
        if self.durable_tier is None:
            return None
        try:
            payload = await self.durable_tier.get(self.key)
        except StorageError as e:
            logger.error(f"Durable hydrate failed: {e}")
            return None

        snapshot = revive_snapshot(payload, self.settings)
        if snapshot is None:
            return None
        try:
            self.fast_tier.set(self.key, payload)
        except StorageQuotaError as e:
            logger.warning(f"Fast tier not warmed for {self.key}: {e}")
        self._emit(CacheEvent.HYDRATED)
        return snapshot

    async def hydrate(self) -> Optional[DatasetSnapshot]:
        """Fast tier first, then the durable tier."""
        snapshot = self.hydrate_fast()
        if snapshot is not None:
            return snapshot
        return await self.hydrate_durable()


__all__ = [
    'FALLBACK_DATE',
    'StorageError',
    'StorageQuotaError',
    'MemoryStore',
    'PostgresStore',
    'storage_key',
    'serialize_snapshot',
    'revive_date',
    'revive_snapshot',
    'DurableCache',
]
