"""Window store backends for the sliding window rate limiter.

A window store is the durable log of admission events. Three backends share
one interface:

- InMemoryWindowStore: per-process, lost on restart
- SqlWindowStore: admission_events table, shared by every instance using
  the same database
- RedisWindowStore: one sorted set per key, shared by every instance using
  the same Redis

Every backend turns its library errors into StorageUnavailableError. A key
that stays locked by other checks raises WindowContentionError instead.
"""

import asyncio
import bisect
import math
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import redis
import redis.asyncio as aioredis
from redis.exceptions import LockError
from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studygate.app.core.logging import get_logger
from studygate.app.db.models import AdmissionEvent
from studygate.app.exceptions import StorageUnavailableError, WindowContentionError

logger = get_logger(__name__)

Clock = Callable[[], float]


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class WindowStore(ABC):
    """Append-only log of admission events, queryable by key and time.

    Timestamps are epoch seconds from now(). Windows are half-open: an
    event counts when its timestamp is strictly greater than `since`.
    """

    name = "abstract"

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or time.time
        self._key_locks = KeyedLock()

    async def now(self) -> float:
        """Authoritative clock for decisions and recorded timestamps."""
        return self._clock()

    @asynccontextmanager
    async def serialize(self, key: str) -> AsyncIterator[None]:
        """Run a check-then-record sequence for `key` atomically.

        The base implementation serializes callers inside this process.
        """
        async with self._key_locks.hold(key):
            yield

    @abstractmethod
    async def count(self, key: str, since: float) -> int:
        """Number of events for `key` with timestamp > since."""

    @abstractmethod
    async def oldest(self, key: str, since: float) -> Optional[float]:
        """Earliest event timestamp for `key` after `since`, or None."""

    @abstractmethod
    async def record(self, key: str, timestamp: float) -> None:
        """Durably append one event."""

    @abstractmethod
    async def prune(self, before: float) -> int:
        """Delete events with timestamp <= before. Returns rows removed."""

    async def ping(self) -> bool:
        """Cheap availability probe for health checks."""
        return True

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryWindowStore(WindowStore):
    """Process-local store: key -> sorted list of timestamps.

    Suitable for single-instance deployments and tests. Not shared across
    processes and lost on restart.
    """

    name = "memory"

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._events: Dict[str, List[float]] = {}

    async def count(self, key: str, since: float) -> int:
        events = self._events.get(key, [])
        return len(events) - bisect.bisect_right(events, since)

    async def oldest(self, key: str, since: float) -> Optional[float]:
        events = self._events.get(key, [])
        index = bisect.bisect_right(events, since)
        return events[index] if index < len(events) else None

    async def record(self, key: str, timestamp: float) -> None:
        bisect.insort(self._events.setdefault(key, []), timestamp)

    async def prune(self, before: float) -> int:
        removed = 0
        for key in list(self._events):
            events = self._events[key]
            index = bisect.bisect_right(events, before)
            if index:
                del events[:index]
                removed += index
            if not events:
                del self._events[key]
        return removed

    def __len__(self) -> int:
        return len(self._events)


# Session bound by SqlWindowStore.serialize for the current task
_bound_session: ContextVar[Optional[AsyncSession]] = ContextVar(
    "studygate_window_session", default=None
)


class SqlWindowStore(WindowStore):
    """Admission events in the admission_events table.

    serialize() runs the whole check in one transaction. On PostgreSQL it
    also takes a transaction-scoped advisory lock on the key so that
    instances sharing the database are serialized, and the database clock
    is used as the authoritative clock.
    """

    name = "database"

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Optional[Clock] = None,
    ):
        super().__init__(clock)
        self._session_maker = session_maker
        self._server_clock = clock is None

    @property
    def _dialect(self) -> str:
        bind = self._session_maker.kw.get("bind")
        return bind.dialect.name if bind is not None else ""

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Bound session inside serialize(), otherwise a short transaction."""
        bound = _bound_session.get()
        if bound is not None:
            yield bound
            return
        async with self._session_maker() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def serialize(self, key: str) -> AsyncIterator[None]:
        async with self._key_locks.hold(key):
            try:
                async with self._session_maker() as session:
                    async with session.begin():
                        if self._dialect == "postgresql":
                            await session.execute(
                                select(func.pg_advisory_xact_lock(func.hashtext(key)))
                            )
                        token = _bound_session.set(session)
                        try:
                            yield
                        finally:
                            _bound_session.reset(token)
            except (SQLAlchemyError, OSError) as e:
                raise StorageUnavailableError(
                    f"Admission transaction failed: {e}", backend=self.name
                ) from e

    async def now(self) -> float:
        if not (self._server_clock and self._dialect == "postgresql"):
            return self._clock()
        try:
            async with self._session() as session:
                result = await session.execute(
                    text("SELECT EXTRACT(EPOCH FROM clock_timestamp())")
                )
                return float(result.scalar_one())
        except (SQLAlchemyError, OSError) as e:
            raise StorageUnavailableError(f"Clock query failed: {e}", backend=self.name) from e

    async def count(self, key: str, since: float) -> int:
        try:
            async with self._session() as session:
                result = await session.execute(
                    select(func.count(AdmissionEvent.id)).where(
                        AdmissionEvent.key == key,
                        AdmissionEvent.occurred_at > since,
                    )
                )
                return int(result.scalar_one())
        except (SQLAlchemyError, OSError) as e:
            raise StorageUnavailableError(f"Count query failed: {e}", backend=self.name) from e

    async def oldest(self, key: str, since: float) -> Optional[float]:
        try:
            async with self._session() as session:
                result = await session.execute(
                    select(func.min(AdmissionEvent.occurred_at)).where(
                        AdmissionEvent.key == key,
                        AdmissionEvent.occurred_at > since,
                    )
                )
                value = result.scalar_one_or_none()
                return float(value) if value is not None else None
        except (SQLAlchemyError, OSError) as e:
            raise StorageUnavailableError(f"Oldest query failed: {e}", backend=self.name) from e

    async def record(self, key: str, timestamp: float) -> None:
        try:
            async with self._session() as session:
                session.add(AdmissionEvent(key=key, occurred_at=timestamp))
                await session.flush()
        except (SQLAlchemyError, OSError) as e:
            raise StorageUnavailableError(f"Insert failed: {e}", backend=self.name) from e

    async def prune(self, before: float) -> int:
        try:
            async with self._session() as session:
                result = await session.execute(
                    delete(AdmissionEvent).where(AdmissionEvent.occurred_at <= before)
                )
                return result.rowcount or 0
        except (SQLAlchemyError, OSError) as e:
            raise StorageUnavailableError(f"Prune failed: {e}", backend=self.name) from e

    async def ping(self) -> bool:
        try:
            async with self._session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError):
            return False


class RedisWindowStore(WindowStore):
    """Admission events in Redis sorted sets (score = timestamp).

    Keys expire after the longest window, so no pruning job is needed.
    serialize() takes a Redis lock on the key so that every instance
    sharing the Redis is serialized. The Redis server TIME is the clock.
    """

    name = "redis"

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        key_prefix: str = "studygate:window:",
        ttl_seconds: int = 24 * 60 * 60,
        lock_timeout: float = 5.0,
        clock: Optional[Clock] = None,
    ):
        super().__init__(clock)
        self._redis = redis_client
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._ttl_seconds = max(1, int(math.ceil(ttl_seconds)))
        self._lock_timeout = lock_timeout
        self._server_clock = clock is None

    def _get_redis(self) -> Any:
        """Get or create the Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _unavailable(self, what: str, e: Exception) -> StorageUnavailableError:
        return StorageUnavailableError(f"Redis {what} failed: {e}", backend=self.name)

    @asynccontextmanager
    async def serialize(self, key: str) -> AsyncIterator[None]:
        async with self._key_locks.hold(key):
            lock = self._get_redis().lock(
                f"{self._key(key)}:lock",
                timeout=self._lock_timeout,
                blocking_timeout=self._lock_timeout,
            )
            try:
                acquired = await lock.acquire()
            except (redis.RedisError, OSError) as e:
                raise self._unavailable("lock", e) from e
            if not acquired:
                raise WindowContentionError(
                    f"Timed out waiting for lock on {key}", backend=self.name
                )
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError:
                    # Lock expired before release; the check already finished
                    logger.warning(
                        "Redis window lock expired before release",
                        extra={"rate_limit_key": key},
                    )
                except (redis.RedisError, OSError) as e:
                    logger.warning(
                        f"Failed to release Redis window lock: {e}",
                        extra={"rate_limit_key": key},
                    )

    async def now(self) -> float:
        if not self._server_clock:
            return self._clock()
        try:
            seconds, microseconds = await self._get_redis().time()
        except (redis.RedisError, OSError) as e:
            raise self._unavailable("TIME", e) from e
        return seconds + microseconds / 1_000_000

    async def count(self, key: str, since: float) -> int:
        try:
            return int(await self._get_redis().zcount(self._key(key), f"({since}", "+inf"))
        except (redis.RedisError, OSError) as e:
            raise self._unavailable("ZCOUNT", e) from e

    async def oldest(self, key: str, since: float) -> Optional[float]:
        try:
            entries = await self._get_redis().zrangebyscore(
                self._key(key), f"({since}", "+inf", start=0, num=1, withscores=True
            )
        except (redis.RedisError, OSError) as e:
            raise self._unavailable("ZRANGEBYSCORE", e) from e
        if not entries:
            return None
        _, score = entries[0]
        return float(score)

    async def record(self, key: str, timestamp: float) -> None:
        member = f"{timestamp}:{uuid.uuid4().hex[:8]}"
        try:
            pipe = self._get_redis().pipeline()
            pipe.zadd(self._key(key), {member: timestamp})
            pipe.expire(self._key(key), self._ttl_seconds)
            await pipe.execute()
        except (redis.RedisError, OSError) as e:
            raise self._unavailable("ZADD", e) from e

    async def prune(self, before: float) -> int:
        """No-op; keys expire on their own."""
        return 0

    async def ping(self) -> bool:
        try:
            return bool(await self._get_redis().ping())
        except (redis.RedisError, OSError):
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
