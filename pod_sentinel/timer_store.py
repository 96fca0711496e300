"""
Redis-backed shutdown timers for the pod sentinel
"""
import logging
import time
from contextlib import contextmanager
from typing import Callable, List, Optional, Tuple

from redis.exceptions import RedisError, ResponseError

from pod_sentinel.errors import TransientStoreError

logger = logging.getLogger(__name__)

KEY_SEPARATOR = ":"

# Keyspace flags: K$ for SET on ready:* keys, Ex for expired keyevents
KEYSPACE_EVENT_FLAGS = "K$Ex"

def parse_pod_id(key: str, prefix: str) -> Optional[str]:
    """Extract the pod id from '<prefix>:<id>', or None if the key is not one of ours"""
    if not key or not key.startswith(prefix + KEY_SEPARATOR):
        return None
    parts = key.split(KEY_SEPARATOR)
    if len(parts) != 2 or not parts[1]:
        return None
    return parts[1]

@contextmanager
def store_errors(operation: str):
    """Translate Redis and socket failures into TransientStoreError"""
    try:
        yield
    except (RedisError, OSError) as e:
        raise TransientStoreError(f"Redis {operation} failed: {e}") from e

class TimerStore:
    """Owns the shutdown:<pod_id> keys and their deadlines"""

    def __init__(
        self,
        redis,
        prefix: str = "shutdown",
        grace_seconds: int = 0,
        claim_window_seconds: int = 30,
        dead_letter_key: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.prefix = prefix
        self.grace_seconds = grace_seconds
        self.claim_window_seconds = claim_window_seconds
        self.dead_letter_key = dead_letter_key
        self.clock = clock

    def key_for(self, pod_id: str) -> str:
        return f"{self.prefix}{KEY_SEPARATOR}{pod_id}"

    def claim_key_for(self, pod_id: str) -> str:
        return f"{self.prefix}-claim{KEY_SEPARATOR}{pod_id}"

    def parse(self, key: str) -> Optional[str]:
        return parse_pod_id(key, self.prefix)

    async def arm(self, pod_id: str, ttl: int):
        """Create or overwrite the timer for a pod; a later call replaces the earlier deadline"""
        if not pod_id or KEY_SEPARATOR in pod_id:
            raise ValueError(f"Invalid pod id '{pod_id}': must be non-empty and must not contain '{KEY_SEPARATOR}'")
        if ttl <= 0:
            raise ValueError(f"Timer TTL must be positive, got {ttl}")

        deadline = self.clock() + ttl
        with store_errors("SET"):
            await self.redis.set(self.key_for(pod_id), f"{deadline:.3f}", ex=ttl + self.grace_seconds)

    async def remaining(self, pod_id: str) -> Optional[float]:
        """Seconds left before the timer lapses; None when no timer exists"""
        key = self.key_for(pod_id)
        with store_errors("GET"):
            value = await self.redis.get(key)
            if value is None:
                return None
            try:
                return float(value) - self.clock()
            except (TypeError, ValueError):
                pass

            # Value written by something else; fall back to the store's own TTL
            ttl = await self.redis.ttl(key)
        if ttl == -2:
            return None
        return float(ttl)

    async def scan_page(self, cursor: int, limit: int) -> Tuple[int, List[str]]:
        """Read roughly `limit` timer keys starting at `cursor`; a returned cursor of 0 means the pass is complete"""
        keys: List[str] = []
        with store_errors("SCAN"):
            while True:
                cursor, batch = await self.redis.scan(
                    cursor=cursor, match=f"{self.prefix}{KEY_SEPARATOR}*", count=min(limit, 500)
                )
                keys.extend(batch)
                if cursor == 0 or len(keys) >= limit:
                    break
        return int(cursor), keys

    async def count(self, limit: int = 10000) -> int:
        """Number of live timers, capped at `limit`"""
        total = 0
        with store_errors("SCAN"):
            async for _ in self.redis.scan_iter(match=f"{self.prefix}{KEY_SEPARATOR}*", count=500):
                total += 1
                if total >= limit:
                    break
        return total

    async def claim(self, pod_id: str) -> bool:
        """Atomically take ownership of a lapse by deleting its timer; only one caller gets True"""
        with store_errors("DEL"):
            removed = await self.redis.delete(self.key_for(pod_id))
        return removed == 1

    async def claim_expired(self, pod_id: str) -> bool:
        """Take ownership of a lapse whose key the store already evicted

        A live timer under the same key means the pod was re-armed after the
        eviction; the event is stale and the new timer is left alone.
        """
        with store_errors("SET NX"):
            if await self.redis.exists(self.key_for(pod_id)):
                logger.debug("Ignoring stale expiry for %s: timer was re-armed", pod_id)
                return False
            claimed = await self.redis.set(
                self.claim_key_for(pod_id), "1", nx=True, ex=self.claim_window_seconds
            )
        return bool(claimed)

    async def record_failed_stop(self, pod_id: str):
        """Push a pod onto the dead-letter list for operators"""
        if not self.dead_letter_key:
            return
        with store_errors("RPUSH"):
            await self.redis.rpush(self.dead_letter_key, pod_id)

    async def failed_stops(self) -> List[str]:
        if not self.dead_letter_key:
            return []
        with store_errors("LRANGE"):
            return list(await self.redis.lrange(self.dead_letter_key, 0, -1))

    async def enable_keyspace_events(self):
        """Turn on the notifications the push detector and ready watcher rely on"""
        try:
            await self.redis.config_set("notify-keyspace-events", KEYSPACE_EVENT_FLAGS)
            logger.info("✓ Enabled Redis keyspace notifications (%s)", KEYSPACE_EVENT_FLAGS)
        except ResponseError as e:
            # Managed Redis often forbids CONFIG; push delivery then depends on server-side setup
            logger.warning("Could not enable keyspace notifications: %s", e)
        except (RedisError, OSError) as e:
            raise TransientStoreError(f"Redis CONFIG SET failed: {e}") from e
