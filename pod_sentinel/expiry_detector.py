"""
Detection of lapsed shutdown timers
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from pod_sentinel.config import SentinelConfig
from pod_sentinel.errors import ProviderError, TransientStoreError
from pod_sentinel.keyspace import expired_channel, watch_pattern
from pod_sentinel.models import DetectionSource, ExpiryEvent
from pod_sentinel.timer_store import TimerStore

logger = logging.getLogger(__name__)

ExpiryHandler = Callable[[str], Awaitable[Any]]

class ExpiryDetector:
    """Surfaces every timer lapse to the handler exactly once.

    Two strategies feed the same dispatch path:

    * push - Redis `expired` keyevents. Best effort: Redis drops them when
      nobody is subscribed, and some deployments never emit them.
    * poll - a capped SCAN of the timer namespace every `poll_interval`
      seconds, treating remaining time <= 0 as lapsed.

    Each lapse is claimed in the store before it is handed off, so a crash
    mid-handling never leads to a second stop and racing strategies (or
    replicas) cannot both act on it. Handling runs as one task per event,
    concurrent across pods and serialized per pod.
    """

    def __init__(
        self,
        redis,
        timer_store: TimerStore,
        handler: ExpiryHandler,
        mode: str = "both",
        poll_interval: float = 15.0,
        poll_max_keys: int = 1000,
        reconnect_delay: float = 5.0,
        db: int = 0,
    ):
        self.redis = redis
        self.timer_store = timer_store
        self.handler = handler
        self.mode = mode
        self.poll_interval = poll_interval
        self.poll_max_keys = poll_max_keys
        self.reconnect_delay = reconnect_delay
        self.db = db

        self._scan_cursor = 0
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._inflight: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: SentinelConfig, redis, timer_store: TimerStore, handler: ExpiryHandler) -> 'ExpiryDetector':
        return cls(
            redis,
            timer_store,
            handler,
            mode=config.detection_mode,
            poll_interval=config.poll_interval,
            poll_max_keys=config.poll_max_keys,
            reconnect_delay=config.reconnect_delay,
            db=config.redis_db,
        )

    @property
    def push_enabled(self) -> bool:
        return self.mode in ("push", "both")

    @property
    def poll_enabled(self) -> bool:
        return self.mode in ("poll", "both")

    async def claim_expired_key(self, key: str) -> Optional[ExpiryEvent]:
        """Turn an `expired` keyevent into an event, if it is ours and nobody claimed it yet"""
        pod_id = self.timer_store.parse(key)
        if pod_id is None:
            if key.startswith(self.timer_store.prefix + ":"):
                logger.warning("Skipping unparseable timer key %r", key)
            return None

        if not await self.timer_store.claim_expired(pod_id):
            logger.info("Expiry of pod %s already claimed or superseded, skipping", pod_id)
            return None
        return ExpiryEvent(pod_id=pod_id, source=DetectionSource.PUSH)

    async def push_events(self) -> AsyncIterator[ExpiryEvent]:
        async for _channel, key in watch_pattern(self.redis, expired_channel(self.db), self.reconnect_delay):
            try:
                event = await self.claim_expired_key(key)
            except TransientStoreError as e:
                logger.error("Could not claim expired key %s: %s", key, e)
                continue
            if event is not None:
                yield event

    async def scan_once(self) -> List[ExpiryEvent]:
        """One bounded poll cycle; the SCAN cursor carries over so large namespaces are covered across cycles"""
        self._scan_cursor, keys = await self.timer_store.scan_page(self._scan_cursor, self.poll_max_keys)

        events = []
        for key in keys:
            pod_id = self.timer_store.parse(key)
            if pod_id is None:
                logger.warning("Skipping unparseable timer key %r", key)
                continue

            remaining = await self.timer_store.remaining(pod_id)
            if remaining is None or remaining > 0:
                continue

            if await self.timer_store.claim(pod_id):
                events.append(ExpiryEvent(pod_id=pod_id, source=DetectionSource.POLL))
            else:
                logger.info("Expiry of pod %s already claimed or superseded, skipping", pod_id)
        return events

    async def poll_events(self) -> AsyncIterator[ExpiryEvent]:
        while True:
            try:
                for event in await self.scan_once():
                    yield event
            except TransientStoreError as e:
                logger.error("Timer scan failed, retrying in %.0fs: %s", self.poll_interval, e)
            await asyncio.sleep(self.poll_interval)

    def dispatch(self, event: ExpiryEvent) -> asyncio.Task:
        """Handle an event in the background without blocking detection of other pods"""
        task = asyncio.create_task(self.handle(event))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def handle(self, event: ExpiryEvent):
        pod_id = event.pod_id
        lock = self._locks.setdefault(pod_id, asyncio.Lock())
        self._lock_users[pod_id] = self._lock_users.get(pod_id, 0) + 1
        try:
            async with lock:
                logger.info("🔔 Shutdown timer expired for pod %s (detected by %s)", pod_id, event.source.value)
                return await self.handler(pod_id)
        except (TransientStoreError, ProviderError) as e:
            logger.error("✗ Handling expiry of pod %s failed: %s", pod_id, e)
        except Exception:
            logger.exception("✗ Unexpected error handling expiry of pod %s", pod_id)
        finally:
            self._lock_users[pod_id] -= 1
            if self._lock_users[pod_id] == 0:
                del self._lock_users[pod_id]
                del self._locks[pod_id]

    async def _consume(self, events: AsyncIterator[ExpiryEvent]):
        async for event in events:
            self.dispatch(event)

    async def run(self):
        """Run the configured strategies until cancelled"""
        if self.push_enabled and self.poll_enabled:
            logger.info("Expiry detection: push + poll (every %.0fs)", self.poll_interval)
        elif self.push_enabled:
            logger.info("Expiry detection: push")
        else:
            logger.info("Expiry detection: poll (every %.0fs)", self.poll_interval)

        tasks = []
        if self.push_enabled:
            tasks.append(asyncio.create_task(self._consume(self.push_events())))
        if self.poll_enabled:
            tasks.append(asyncio.create_task(self._consume(self.poll_events())))

        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks + list(self._inflight):
                task.cancel()
            await asyncio.gather(*tasks, *self._inflight, return_exceptions=True)
