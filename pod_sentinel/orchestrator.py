#!/usr/bin/env python3
"""
Pod Sentinel Server
Stops idle RunPod pods when their shutdown timer lapses, and streams
"ready" events to subscribers when pods come back up.
"""
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import redis.asyncio as aioredis
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from pod_sentinel.api import SentinelAPI
from pod_sentinel.config import SentinelConfig
from pod_sentinel.decision_engine import IdleDecisionEngine
from pod_sentinel.errors import TransientStoreError
from pod_sentinel.expiry_detector import ExpiryDetector
from pod_sentinel.keyspace import key_from_keyspace_channel, keyspace_pattern, watch_pattern
from pod_sentinel.lifecycle_controller import LifecycleController
from pod_sentinel.metadata_store import MetadataStore
from pod_sentinel.models import ArmResponse, NotifyResponse, SentinelStatus
from pod_sentinel.runpod_manager import RunPodManager
from pod_sentinel.subscription_registry import SubscriptionRegistry
from pod_sentinel.timer_store import TimerStore, parse_pod_id

logger = logging.getLogger(__name__)

class PodSentinel:
    """Main sentinel class that coordinates all components"""

    def __init__(
        self,
        config: Optional[SentinelConfig] = None,
        redis=None,
        runpod_manager: Optional[RunPodManager] = None,
        metadata_store: Optional[MetadataStore] = None,
    ):
        # Load configuration
        self.config = config or SentinelConfig.from_env()

        # Initialize components
        self.redis = redis if redis is not None else self._create_redis()
        self.timer_store = TimerStore(
            self.redis,
            prefix=self.config.timer_prefix,
            grace_seconds=self.config.timer_grace_seconds,
            claim_window_seconds=self.config.claim_window_seconds,
            dead_letter_key=self.config.dead_letter_key,
        )
        self.runpod_manager = runpod_manager or RunPodManager(self.config)
        self.lifecycle_controller = LifecycleController(self.runpod_manager, self.timer_store)
        self.decision_engine = IdleDecisionEngine(
            self.runpod_manager,
            self.timer_store,
            self.lifecycle_controller,
            idle_threshold=self.config.idle_threshold,
            extension_seconds=self.config.extension_seconds,
        )
        self.detector = ExpiryDetector.from_config(
            self.config, self.redis, self.timer_store, self.decision_engine.decide
        )
        self.metadata_store = metadata_store or MetadataStore.from_config(self.config)
        self.registry = SubscriptionRegistry(self.metadata_store, self.config.connection_queue_size)
        self.api = SentinelAPI(self.config, self.registry, self.timer_store)

        self._tasks: List[asyncio.Task] = []

        # Initialize FastAPI app
        self.app = FastAPI(title="Pod Sentinel", lifespan=self._lifespan)
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.cors_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )
        self._setup_routes()

    def _create_redis(self):
        """Create the Redis client shared by the timer store and the notification feeds"""
        return aioredis.from_url(
            self.config.redis_url,
            encoding="utf-8",
            decode_responses=True,
            health_check_interval=30,
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.start()
        try:
            yield
        finally:
            await self.stop()

    def _setup_routes(self):
        """Setup FastAPI routes"""

        @self.app.get("/events")
        async def events(subscriptionId: Optional[str] = None):
            return await self.api.open_event_stream(subscriptionId)

        @self.app.post("/notify", response_model=NotifyResponse)
        async def notify(request: Request):
            try:
                payload = await request.json()
            except ValueError:
                payload = None
            return await self.api.notify(payload)

        @self.app.post("/timers/{pod_id}", response_model=ArmResponse)
        async def arm_timer(pod_id: str, ttl: Optional[int] = None):
            return await self.api.arm_timer(pod_id, ttl)

        @self.app.get("/status", response_model=SentinelStatus)
        async def get_status():
            return await self.api.get_status()

    async def start(self):
        """Start background tasks"""
        if self.config.configure_keyspace_events:
            try:
                await self.timer_store.enable_keyspace_events()
            except TransientStoreError as e:
                logger.warning("Keyspace notifications not configured: %s", e)

        self._tasks = [
            asyncio.create_task(self.detector.run(), name="expiry-detector"),
            asyncio.create_task(self._ready_watch_loop(), name="ready-watcher"),
            asyncio.create_task(
                self.registry.heartbeat_loop(self.config.heartbeat_interval), name="heartbeat"
            ),
        ]
        for task in self._tasks:
            task.add_done_callback(self._report_task_exit)
        logger.info(
            "✓ Pod sentinel started (detection: %s, idle threshold: %.1f%%, extension: %ds)",
            self.config.detection_mode, self.config.idle_threshold, self.config.extension_seconds
        )

    @staticmethod
    def _report_task_exit(task: asyncio.Task):
        """Log a background loop that stopped on its own"""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s died: %s", task.get_name(), exc, exc_info=exc)
        else:
            logger.warning("Background task %s exited", task.get_name())

    async def stop(self):
        """Close subscriber streams, cancel background tasks and release clients"""
        await self.registry.close()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.runpod_manager.close()
        await self.metadata_store.close()
        await self.redis.aclose()
        logger.info("Pod sentinel stopped")

    async def _ready_watch_loop(self):
        """Forward SETs on ready:<pod_id> keys to subscribers"""
        pattern = keyspace_pattern(self.config.redis_db, self.config.ready_prefix)
        async for channel, action in watch_pattern(self.redis, pattern, self.config.reconnect_delay):
            if action != "set":
                continue

            pod_id = parse_pod_id(key_from_keyspace_channel(channel), self.config.ready_prefix)
            if pod_id is None:
                logger.warning("Skipping unparseable ready key on channel %r", channel)
                continue

            await self.registry.notify_ready(pod_id)

def main():
    """Main function to run the sentinel"""
    try:
        config = SentinelConfig.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(1)

    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s %(levelname)s %(name)s %(message)s'
    )
    logger.info("Starting Pod Sentinel...")

    sentinel = PodSentinel(config)
    uvicorn.run(
        sentinel.app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower()
    )

if __name__ == "__main__":
    main()
