"""
Staleness-aware enrichment cache.

StaleCache sits in front of a CacheProvider (the keyed store) and only returns
a payload when the record is younger than the staleness window. Age is taken
from updated_at, else created_at; a record with neither is always stale.
Writes are best-effort: a failed write is logged and the step carries on.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger('pipeline.cache')


@dataclass
class CacheRecord:
    key: str
    payload: Any
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CacheProvider(ABC):
    """Keyed persistent store behind a StaleCache."""

    @abstractmethod
    def lookup(self, key: str) -> Optional[CacheRecord]:
        ...

    @abstractmethod
    def upsert(self, key: str, payload: Any) -> None:
        ...


class SqlCacheProvider(CacheProvider):
    """
    SQLAlchemy-backed provider over the enrichment_cache table.

    Payloads are stored as JSON text. Each call opens its own session so the
    provider is safe to share across the worker threads of one step.
    """

    def __init__(self, domain: str, session_factory: Callable = None, clock: Callable[[], datetime] = None):
        self.domain = domain
        self._session_factory = session_factory
        self._clock = clock or _utcnow

    def _session(self):
        if self._session_factory is not None:
            return self._session_factory()
        from leadpipe.database import get_session
        return get_session()

    def lookup(self, key):
        from leadpipe.models.cache_entry import EnrichmentCacheEntry
        session = self._session()
        try:
            entry = session.query(EnrichmentCacheEntry).filter_by(domain=self.domain, cache_key=key).first()
            if entry is None:
                return None
            return CacheRecord(
                key=key,
                payload=entry.payload,
                updated_at=entry.updated_at,
                created_at=entry.created_at,
            )
        finally:
            session.close()

    def upsert(self, key, payload):
        from leadpipe.models.cache_entry import EnrichmentCacheEntry
        session = self._session()
        try:
            now = self._clock()
            text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
            entry = session.query(EnrichmentCacheEntry).filter_by(domain=self.domain, cache_key=key).first()
            if entry is None:
                session.add(EnrichmentCacheEntry(
                    domain=self.domain,
                    cache_key=key,
                    payload=text,
                    created_at=now,
                    updated_at=now,
                ))
            else:
                entry.payload = text
                entry.updated_at = now
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class MemoryCacheProvider(CacheProvider):
    """Dict-backed provider for mock runs and tests."""

    def __init__(self, clock: Callable[[], datetime] = None):
        self.records: Dict[str, CacheRecord] = {}
        self._clock = clock or _utcnow

    def lookup(self, key):
        return self.records.get(key)

    def upsert(self, key, payload):
        now = self._clock()
        existing = self.records.get(key)
        created = existing.created_at if existing else now
        self.records[key] = CacheRecord(key=key, payload=payload, updated_at=now, created_at=created)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_datetime(value) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            logger.warning("Unparseable cache timestamp %r — treating as stale", value)
            return None
    if dt.tzinfo is None:
        # SQLite drops tz info; timestamps are written in UTC
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_stale(record: CacheRecord, window: timedelta, now: datetime) -> bool:
    """A record is fresh only while now - timestamp < window; the exact boundary is stale."""
    timestamp = _as_datetime(record.updated_at) or _as_datetime(record.created_at)
    if timestamp is None:
        return True
    return not (now - timestamp < window)


class StaleCache:
    """
    Cache facade for one domain.

    Args:
        provider:  the keyed store
        window:    staleness window (timedelta)
        clock:     returns the current UTC datetime (injectable for tests)
        validator: optional payload check; a payload it rejects is a miss
    """

    def __init__(
        self,
        provider: CacheProvider,
        window: timedelta,
        clock: Callable[[], datetime] = None,
        validator: Callable[[Any], bool] = None,
        name: str = 'cache',
    ):
        self.provider = provider
        self.window = window
        self.clock = clock or _utcnow
        self.validator = validator
        self.name = name

    def get(self, key: str) -> Optional[Any]:
        """Return a fresh, valid payload for key, or None on any kind of miss."""
        if not key:
            return None
        try:
            record = self.provider.lookup(key)
        except Exception:
            logger.warning("[%s] lookup failed for %s — treating as miss", self.name, key, exc_info=True)
            return None
        if record is None:
            return None
        if is_stale(record, self.window, _as_datetime(self.clock())):
            logger.debug("[%s] stale entry for %s", self.name, key)
            return None

        payload = record.payload
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError:
                logger.warning("[%s] corrupt payload for %s — refetching", self.name, key)
                return None
        if payload is None:
            return None
        if self.validator is not None and not self.validator(payload):
            logger.warning("[%s] payload for %s failed validation — refetching", self.name, key)
            return None
        return payload

    def put(self, key: str, payload: Any) -> bool:
        """Store payload under key. Returns False (and logs) if the write failed."""
        if not key:
            return False
        try:
            self.provider.upsert(key, payload)
            return True
        except Exception:
            logger.error("[%s] failed to cache %s", self.name, key, exc_info=True)
            return False
