"""Redis-backed lease store (networked backend)."""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

from leasegate.config import Settings
from leasegate.errors import BackendTimeout, BackendUnavailable, CorruptRecord
from leasegate.integrations.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
)
from leasegate.store.base import (
    RECOVERY_LOG_KEY,
    RECOVERY_QUEUE_KEY,
    LeaseStore,
    StoredRecord,
    agent_tasks_key,
    format_timestamp,
    parse_timestamp,
)
from leasegate.utils.time import Clock, system_clock

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Optimistic transactions retried this many times on concurrent modification
WATCH_RETRIES = 5
SCAN_BATCH = 200

_TRANSIENT = (RedisConnectionError, RedisTimeoutError, BackendTimeout, OSError)

Decision = Optional[Callable[[Any], None]]


class RedisLeaseStore(LeaseStore):
    """
    Lease store on a shared Redis instance.

    Creation uses ``SET NX EX`` and expiry is native. Owner-checked
    mutations run as ``WATCH``/``MULTI`` transactions: the record is read
    under watch and the write is discarded if anyone touched the key in
    between.
    """

    name = "redis"

    def __init__(self, client: aioredis.Redis, settings: Settings, clock: Clock = system_clock):
        super().__init__(clock)
        self._redis = client
        self._settings = settings
        self._timeout = settings.backend_timeout_seconds
        self._breaker: Optional[CircuitBreaker] = None
        if settings.circuit_breaker_enabled:
            self._breaker = CircuitBreaker(
                "redis",
                CircuitBreakerConfig(
                    failure_threshold=settings.circuit_breaker_failure_threshold,
                    timeout_seconds=settings.circuit_breaker_timeout_seconds,
                    half_open_max_calls=settings.circuit_breaker_half_open_max_calls,
                    success_threshold=settings.circuit_breaker_success_threshold,
                ),
                trip_on=_TRANSIENT,
            )

    @classmethod
    def from_url(cls, settings: Settings, clock: Clock = system_clock) -> "RedisLeaseStore":
        client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.backend_timeout_seconds,
            socket_connect_timeout=settings.backend_timeout_seconds,
        )
        logger.info(f"Redis lease store initialized: {settings.redis_url}")
        return cls(client, settings, clock)

    # ------------------------------------------------------------------
    # Call plumbing
    # ------------------------------------------------------------------

    async def _with_timeout(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(factory(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise BackendTimeout(self.name, operation, self._timeout) from e

    async def _execute(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run a store call with timeout, bounded retries and the circuit breaker."""
        attempts = self._settings.backend_retry_attempts
        delay = self._settings.backend_retry_backoff_seconds
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                if self._breaker:
                    return await self._breaker.call(self._with_timeout, operation, factory)
                return await self._with_timeout(operation, factory)
            except CircuitBreakerOpen:
                raise
            except _TRANSIENT as e:
                last_error = e
                if attempt < attempts:
                    logger.warning(
                        f"Redis {operation} failed (attempt {attempt}/{attempts}): {e}; "
                        f"retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    delay *= 2
            except RedisError as e:
                raise BackendUnavailable(self.name, f"{operation}: {e}") from e

        if isinstance(last_error, BackendTimeout):
            raise last_error
        raise BackendUnavailable(
            self.name, f"{operation} failed after {attempts} attempts: {last_error}"
        ) from last_error

    def _decode(self, key: str, raw: Optional[str]) -> Optional[dict[str, Any]]:
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptRecord(key, f"invalid JSON: {e}") from e
        if not isinstance(value, dict):
            raise CorruptRecord(key, f"expected object, got {type(value).__name__}")
        return value

    async def _compare_and_act(
        self,
        operation: str,
        key: str,
        decide: Callable[[Optional[dict[str, Any]]], Decision],
    ) -> bool:
        """Read ``key`` under WATCH and apply the queued writes ``decide`` returns.

        ``decide`` returns None to abort without writing.
        """

        async def attempt() -> bool:
            for _ in range(WATCH_RETRIES):
                async with self._redis.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(key)
                        current = self._decode(key, await pipe.get(key))
                        action = decide(current)
                        if action is None:
                            return False
                        pipe.multi()
                        action(pipe)
                        await pipe.execute()
                        return True
                    except WatchError:
                        logger.debug(f"Concurrent update on {key} during {operation}, retrying")
                        continue
            logger.warning(f"{operation} on {key} lost {WATCH_RETRIES} races, giving up")
            return False

        return await self._execute(operation, attempt)

    # ------------------------------------------------------------------
    # Conditional primitives
    # ------------------------------------------------------------------

    async def create_if_absent(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        payload = json.dumps({**value, "ttl": ttl})
        result = await self._execute(
            "create_if_absent",
            lambda: self._redis.set(key, payload, nx=True, ex=int(ttl)),
        )
        return bool(result)

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        raw = await self._execute("get", lambda: self._redis.get(key))
        return self._decode(key, raw)

    async def compare_and_delete(self, key: str, expected_owner: str) -> bool:
        def decide(current: Optional[dict[str, Any]]) -> Decision:
            if current is None or current.get("owner_id") != expected_owner:
                return None
            return lambda pipe: pipe.delete(key)

        return await self._compare_and_act("compare_and_delete", key, decide)

    async def refresh(self, key: str, expected_owner: str, ttl: int) -> bool:
        renewed_at = format_timestamp(self.clock.now())

        def decide(current: Optional[dict[str, Any]]) -> Decision:
            if current is None or current.get("owner_id") != expected_owner:
                return None
            payload = json.dumps({**current, "renewed_at": renewed_at, "ttl": ttl})
            return lambda pipe: pipe.set(key, payload, ex=int(ttl))

        return await self._compare_and_act("refresh", key, decide)

    async def list_prefix(self, prefix: str) -> list[StoredRecord]:
        async def scan() -> list[tuple[str, Optional[str]]]:
            keys = [key async for key in self._redis.scan_iter(match=f"{prefix}*", count=SCAN_BATCH)]
            pairs: list[tuple[str, Optional[str]]] = []
            for start in range(0, len(keys), SCAN_BATCH):
                chunk = keys[start:start + SCAN_BATCH]
                values = await self._redis.mget(chunk)
                pairs.extend(zip(chunk, values))
            return pairs

        now = self.clock.now()
        records: list[StoredRecord] = []
        for key, raw in await self._execute("list_prefix", scan):
            try:
                value = self._decode(key, raw)
                if value is None:
                    continue  # expired between SCAN and MGET
                records.append(StoredRecord(key=key, value=value, age=self._age(key, value, now)))
            except CorruptRecord as e:
                logger.warning(f"Skipping corrupt record: {e.message}")
        return sorted(records, key=lambda r: r.key)

    # ------------------------------------------------------------------
    # Liveness records
    # ------------------------------------------------------------------

    async def write_heartbeat(self, key: str, value: dict[str, Any], ttl: int) -> bool:
        new_at = parse_timestamp(value["last_heartbeat"])
        payload = json.dumps({**value, "ttl": ttl})

        def decide(current: Optional[dict[str, Any]]) -> Decision:
            if current is not None:
                try:
                    stored_at = parse_timestamp(current.get("last_heartbeat"))
                except ValueError:
                    stored_at = None
                if stored_at is not None and stored_at > new_at:
                    return None
            return lambda pipe: pipe.set(key, payload, ex=int(ttl))

        return await self._compare_and_act("write_heartbeat", key, decide)

    async def delete_if_stale(self, key: str, cutoff: datetime) -> bool:
        def decide(current: Optional[dict[str, Any]]) -> Decision:
            if current is None:
                return None
            try:
                last = parse_timestamp(current.get("last_heartbeat"))
            except ValueError:
                last = None
            if last is not None and last > cutoff:
                return None
            return lambda pipe: pipe.delete(key)

        return await self._compare_and_act("delete_if_stale", key, decide)

    # ------------------------------------------------------------------
    # Held-task index
    # ------------------------------------------------------------------

    async def index_add(self, agent_id: str, task_id: str) -> None:
        await self._execute("index_add", lambda: self._redis.sadd(agent_tasks_key(agent_id), task_id))

    async def index_remove(self, agent_id: str, task_id: str) -> None:
        await self._execute("index_remove", lambda: self._redis.srem(agent_tasks_key(agent_id), task_id))

    async def index_members(self, agent_id: str) -> set[str]:
        members = await self._execute("index_members", lambda: self._redis.smembers(agent_tasks_key(agent_id)))
        return set(members)

    async def index_clear(self, agent_id: str) -> None:
        await self._execute("index_clear", lambda: self._redis.delete(agent_tasks_key(agent_id)))

    # ------------------------------------------------------------------
    # Plain records
    # ------------------------------------------------------------------

    async def put(self, key: str, value: dict[str, Any]) -> None:
        payload = json.dumps(value)
        await self._execute("put", lambda: self._redis.set(key, payload))

    async def replace_if(
        self,
        key: str,
        field: str,
        allowed: set[str],
        value: dict[str, Any],
    ) -> bool:
        payload = json.dumps(value)

        def decide(current: Optional[dict[str, Any]]) -> Decision:
            if current is None or current.get(field) not in allowed:
                return None
            return lambda pipe: pipe.set(key, payload)

        return await self._compare_and_act("replace_if", key, decide)

    # ------------------------------------------------------------------
    # Recovery queue
    # ------------------------------------------------------------------

    async def _push_recovery(self, value: dict[str, Any]) -> None:
        payload = json.dumps(value)
        log_size = self._settings.recovery_log_size

        async def push() -> None:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lpush(RECOVERY_QUEUE_KEY, payload)
                pipe.lpush(RECOVERY_LOG_KEY, payload)
                pipe.ltrim(RECOVERY_LOG_KEY, 0, log_size - 1)
                await pipe.execute()

        await self._execute("enqueue_recovery", push)

    async def dequeue_recovery(self) -> Optional[dict[str, Any]]:
        while True:
            raw = await self._execute("dequeue_recovery", lambda: self._redis.rpop(RECOVERY_QUEUE_KEY))
            if raw is None:
                return None
            try:
                return self._decode(RECOVERY_QUEUE_KEY, raw)
            except CorruptRecord as e:
                logger.warning(f"Dropping corrupt recovery entry: {e.message}")

    async def pending_recovery(self, limit: int = 100) -> list[dict[str, Any]]:
        raws = await self._execute(
            "pending_recovery", lambda: self._redis.lrange(RECOVERY_QUEUE_KEY, -limit, -1)
        )
        return self._decode_list(RECOVERY_QUEUE_KEY, reversed(raws))

    async def recovery_log(self, limit: int = 100) -> list[dict[str, Any]]:
        raws = await self._execute(
            "recovery_log", lambda: self._redis.lrange(RECOVERY_LOG_KEY, 0, limit - 1)
        )
        return self._decode_list(RECOVERY_LOG_KEY, raws)

    def _decode_list(self, key: str, raws: Any) -> list[dict[str, Any]]:
        entries = []
        for raw in raws:
            try:
                entries.append(self._decode(key, raw))
            except CorruptRecord as e:
                logger.warning(f"Skipping corrupt entry: {e.message}")
        return entries

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        try:
            ok = await asyncio.wait_for(self._redis.ping(), timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Redis ping failed: {e}")
            return False
        if ok and self._breaker:
            await self._breaker.reset()
        return bool(ok)

    async def close(self) -> None:
        await self._redis.aclose()
