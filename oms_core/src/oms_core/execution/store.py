"""State persistence layer for the order pipeline.

Provides abstraction over storage backends (Redis, in-memory) for
persisting orders, idempotency records and their secondary indexes.

Design Decisions:
- Protocol-based interface for flexibility
- Single-key compare-and-set is the only serialization point
- TTL support for ephemeral data (honoured by both backends)
- Fail-fast on production (Redis required), graceful fallback in dev
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

import structlog
from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from collections.abc import Generator, Iterator

log = structlog.get_logger()

# Generic type for Pydantic models
T = TypeVar("T", bound=BaseModel)


# ==============================================================================
# State Store Protocol
# ==============================================================================
@runtime_checkable
class StateStore(Protocol):
    """Protocol for state persistence backends.

    Implementations must support:
    - Key-value storage for raw strings with optional TTL
    - Pydantic model serialization
    - Atomic create (set-if-absent) and single-key compare-and-set
    - Unordered secondary indexes (sets of members per index key)
    """

    def save(self, key: str, model: BaseModel, ttl_seconds: int | None = None) -> None:
        """Persist a Pydantic model."""
        ...

    def load(self, key: str, model_cls: type[T]) -> T | None:
        """Load a Pydantic model by key."""
        ...

    def delete(self, key: str) -> None:
        """Delete a key."""
        ...

    def exists(self, key: str) -> bool:
        """Check if key exists."""
        ...

    def get(self, key: str) -> str | None:
        """Get raw string value."""
        ...

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Set raw string value."""
        ...

    def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Create a key only if it does not exist. Returns True on create."""
        ...

    def compare_and_set(
        self,
        key: str,
        expected: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Replace ``expected`` with ``value`` atomically. Returns True on swap."""
        ...

    def get_many(self, keys: list[str]) -> list[str | None]:
        """Get multiple keys in one round-trip."""
        ...

    def index_add(self, index: str, member: str) -> None:
        """Add a member to a secondary index."""
        ...

    def index_remove(self, index: str, member: str) -> None:
        """Remove a member from a secondary index."""
        ...

    def index_members(self, index: str) -> set[str]:
        """All members of a secondary index."""
        ...

    def scan(self, prefix: str) -> list[str]:
        """All keys starting with ``prefix``."""
        ...

    def health_check(self) -> bool:
        """Check if the backend is reachable."""
        ...


# ==============================================================================
# Custom Exceptions
# ==============================================================================
class StoreConnectionError(Exception):
    """Raised when store connection or a store command fails."""


class TransactionError(Exception):
    """Raised when atomic transaction fails."""


# ==============================================================================
# Redis Store
# ==============================================================================
class RedisStore:
    """Redis-backed persistence with transaction support.

    Features:
    - Compare-and-set via WATCH/MULTI/EXEC
    - Atomic create via SET NX
    - JSON serialization for Pydantic models
    - Secondary indexes as Redis sets

    Attributes:
        redis_url: Redis connection URL.
        client: Redis client instance.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        connection_timeout: float = 5.0,
        socket_timeout: float = 5.0,
        client: Any | None = None,
    ) -> None:
        """Initialize Redis connection.

        Args:
            redis_url: Redis connection URL.
            connection_timeout: Connection timeout in seconds.
            socket_timeout: Socket timeout in seconds.
            client: Pre-built client (tests, shared pools).

        Raises:
            StoreConnectionError: If Redis is unreachable.
        """
        import redis

        self.redis_url = redis_url
        self._redis_module = redis

        try:
            self.client: redis.Redis[str] = client or redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=connection_timeout,
                socket_timeout=socket_timeout,
            )
            # Verify connection
            self.client.ping()
            log.info("Redis connection established", url=redis_url)
        except redis.RedisError as exc:
            raise StoreConnectionError(
                f"Cannot connect to Redis at {redis_url}: {exc}"
            ) from exc

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Re-raise client failures as ``StoreConnectionError``."""
        try:
            yield
        except self._redis_module.WatchError:
            raise
        except self._redis_module.RedisError as exc:
            raise StoreConnectionError(f"Redis {operation} failed: {exc}") from exc

    def save(self, key: str, model: BaseModel, ttl_seconds: int | None = None) -> None:
        """Persist a Pydantic model as JSON."""
        data = model.model_dump_json()
        self.set(key, data, ttl_seconds)

    def load(self, key: str, model_cls: type[T]) -> T | None:
        """Load and deserialize a Pydantic model."""
        data = self.get(key)
        if data is None:
            return None
        try:
            return model_cls.model_validate_json(data)
        except ValidationError as e:
            log.error("Failed to deserialize model", key=key, error=str(e))
            return None

    def delete(self, key: str) -> None:
        """Delete a key."""
        with self._translate_errors("delete"):
            self.client.delete(key)

    def exists(self, key: str) -> bool:
        """Check if key exists."""
        with self._translate_errors("exists"):
            return bool(self.client.exists(key))

    def get(self, key: str) -> str | None:
        """Get raw string value."""
        with self._translate_errors("get"):
            return self.client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Set raw string value with optional TTL."""
        with self._translate_errors("set"):
            if ttl_seconds and ttl_seconds > 0:
                self.client.setex(key, ttl_seconds, value)
            else:
                self.client.set(key, value)

    def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Atomic create with SET NX (EX when a TTL is given)."""
        with self._translate_errors("set_if_absent"):
            if ttl_seconds and ttl_seconds > 0:
                return bool(self.client.set(key, value, nx=True, ex=ttl_seconds))
            return bool(self.client.set(key, value, nx=True))

    def compare_and_set(
        self,
        key: str,
        expected: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Optimistic single-key CAS using WATCH/MULTI/EXEC.

        When ``ttl_seconds`` is None the remaining TTL of the key is kept.
        """
        try:
            with self.transaction() as pipe:
                pipe.watch(key)
                current = pipe.get(key)
                if current != expected:
                    pipe.unwatch()
                    return False
                pipe.multi()
                if ttl_seconds and ttl_seconds > 0:
                    pipe.set(key, value, ex=ttl_seconds)
                else:
                    pipe.set(key, value, keepttl=True)
        except TransactionError as exc:
            if isinstance(exc.__cause__, self._redis_module.WatchError):
                log.debug("CAS lost to concurrent writer", key=key)
                return False
            raise StoreConnectionError(str(exc)) from exc
        return True

    def ttl(self, key: str) -> int | None:
        """Remaining TTL in seconds (None when the key has no expiry)."""
        with self._translate_errors("ttl"):
            remaining = self.client.ttl(key)
        return remaining if remaining is not None and remaining >= 0 else None

    def get_many(self, keys: list[str]) -> list[str | None]:
        """Get multiple keys in one round-trip."""
        if not keys:
            return []
        with self._translate_errors("mget"):
            return self.client.mget(keys)  # type: ignore[return-value]

    def index_add(self, index: str, member: str) -> None:
        """Add a member to a Redis set index."""
        with self._translate_errors("sadd"):
            self.client.sadd(index, member)

    def index_remove(self, index: str, member: str) -> None:
        """Remove a member from a Redis set index."""
        with self._translate_errors("srem"):
            self.client.srem(index, member)

    def index_members(self, index: str) -> set[str]:
        """All members of a Redis set index."""
        with self._translate_errors("smembers"):
            return set(self.client.smembers(index))

    def scan(self, prefix: str) -> list[str]:
        """List keys by prefix with SCAN (never KEYS)."""
        with self._translate_errors("scan"):
            return list(self.client.scan_iter(match=f"{prefix}*"))

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        """Execute commands atomically using MULTI/EXEC.

        Usage:
            ```python
            with store.transaction() as pipe:
                pipe.watch("key1")
                pipe.multi()
                pipe.set("key1", "value1")
            # Executed atomically, aborted if key1 changed
            ```

        Raises:
            TransactionError: If transaction fails.
        """
        redis = self._redis_module

        pipe = self.client.pipeline(transaction=True)
        try:
            yield pipe
            if pipe.explicit_transaction or pipe.command_stack:
                pipe.execute()
        except redis.WatchError as e:
            raise TransactionError(f"Transaction aborted due to concurrent modification: {e}") from e
        except redis.RedisError as e:
            raise TransactionError(f"Transaction failed: {e}") from e
        finally:
            pipe.reset()

    def health_check(self) -> bool:
        """Check if Redis is healthy."""
        try:
            return bool(self.client.ping())
        except self._redis_module.RedisError:
            return False


# ==============================================================================
# Memory Store (Development/Testing)
# ==============================================================================
class MemoryStore:
    """In-memory store for development and testing.

    WARNING: Data is lost on restart. Do not use in production.

    Features:
    - Thread-safe operations (one re-entrant lock)
    - TTL honoured with lazy eviction on access
    - Compare-and-set is truly atomic under the lock
    """

    def __init__(self, clock: Any = time.monotonic) -> None:
        """Initialize in-memory store.

        Args:
            clock: Monotonic seconds source (injectable for TTL tests).
        """
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}
        self._indexes: dict[str, set[str]] = {}
        self._lock = threading.RLock()
        self._clock = clock
        log.warning(
            "MemoryStore initialized - DATA IS VOLATILE",
            hint="Use RedisStore in production",
        )

    def _evict_if_expired(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def _write(self, key: str, value: str, ttl_seconds: int | None) -> None:
        self._data[key] = value
        if ttl_seconds and ttl_seconds > 0:
            self._expires[key] = self._clock() + ttl_seconds
        else:
            self._expires.pop(key, None)

    def save(self, key: str, model: BaseModel, ttl_seconds: int | None = None) -> None:
        """Persist a Pydantic model."""
        self.set(key, model.model_dump_json(), ttl_seconds)

    def load(self, key: str, model_cls: type[T]) -> T | None:
        """Load a Pydantic model."""
        data = self.get(key)
        if data is None:
            return None
        try:
            return model_cls.model_validate_json(data)
        except ValidationError:
            return None

    def delete(self, key: str) -> None:
        """Delete a key."""
        with self._lock:
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def exists(self, key: str) -> bool:
        """Check if key exists."""
        with self._lock:
            self._evict_if_expired(key)
            return key in self._data

    def get(self, key: str) -> str | None:
        """Get raw string value."""
        with self._lock:
            self._evict_if_expired(key)
            return self._data.get(key)

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Set raw string value."""
        with self._lock:
            self._write(key, value, ttl_seconds)

    def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Create a key only if it does not exist."""
        with self._lock:
            self._evict_if_expired(key)
            if key in self._data:
                return False
            self._write(key, value, ttl_seconds)
            return True

    def compare_and_set(
        self,
        key: str,
        expected: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Atomic CAS; keeps the remaining TTL when none is given."""
        with self._lock:
            self._evict_if_expired(key)
            if self._data.get(key) != expected:
                return False
            self._data[key] = value
            if ttl_seconds and ttl_seconds > 0:
                self._expires[key] = self._clock() + ttl_seconds
            return True

    def ttl(self, key: str) -> int | None:
        """Remaining TTL in seconds (None when the key has no expiry)."""
        with self._lock:
            self._evict_if_expired(key)
            deadline = self._expires.get(key)
            if deadline is None or key not in self._data:
                return None
            return max(0, int(deadline - self._clock()))

    def get_many(self, keys: list[str]) -> list[str | None]:
        """Get multiple keys."""
        return [self.get(k) for k in keys]

    def index_add(self, index: str, member: str) -> None:
        """Add a member to an index."""
        with self._lock:
            self._indexes.setdefault(index, set()).add(member)

    def index_remove(self, index: str, member: str) -> None:
        """Remove a member from an index."""
        with self._lock:
            members = self._indexes.get(index)
            if members is not None:
                members.discard(member)

    def index_members(self, index: str) -> set[str]:
        """All members of an index (copy)."""
        with self._lock:
            return set(self._indexes.get(index, set()))

    def scan(self, prefix: str) -> list[str]:
        """List live keys by prefix."""
        with self._lock:
            for key in list(self._expires):
                self._evict_if_expired(key)
            return [key for key in self._data if key.startswith(prefix)]

    def health_check(self) -> bool:
        """Always healthy for memory store."""
        return True

    def clear(self) -> None:
        """Clear all data (useful for tests)."""
        with self._lock:
            self._data.clear()
            self._expires.clear()
            self._indexes.clear()


# ==============================================================================
# Factory Function
# ==============================================================================
def create_store(
    redis_url: str = "redis://localhost:6379/0",
    use_redis: bool = True,
    fallback_to_memory: bool = True,
) -> RedisStore | MemoryStore:
    """Create a state store instance.

    Args:
        redis_url: Redis connection URL.
        use_redis: Whether to attempt Redis connection.
        fallback_to_memory: If True, use MemoryStore when Redis unavailable.

    Returns:
        RedisStore or MemoryStore instance.

    Raises:
        StoreConnectionError: If Redis required but unavailable.
    """
    if use_redis:
        try:
            return RedisStore(redis_url=redis_url)
        except StoreConnectionError:
            if not fallback_to_memory:
                raise
            log.warning(
                "Redis unavailable, using MemoryStore",
                url=redis_url,
            )

    return MemoryStore()
