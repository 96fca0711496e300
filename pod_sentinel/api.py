"""
HTTP handlers for the pod sentinel
"""
import logging
from typing import Any, Optional

from fastapi import HTTPException
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from pod_sentinel.config import SentinelConfig
from pod_sentinel.errors import TransientStoreError
from pod_sentinel.models import ArmResponse, NotifyRequest, NotifyResponse, SentinelStatus
from pod_sentinel.subscription_registry import SubscriptionRegistry
from pod_sentinel.timer_store import TimerStore

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

class SentinelAPI:
    """Handles HTTP API endpoints for the sentinel"""

    def __init__(self, config: SentinelConfig, registry: SubscriptionRegistry, timer_store: TimerStore):
        self.config = config
        self.registry = registry
        self.timer_store = timer_store

    async def open_event_stream(self, subscription_id: Optional[str]) -> StreamingResponse:
        """Register a subscriber and stream its events until it disconnects"""
        subscription_id = (subscription_id or "").strip()
        if not subscription_id:
            raise HTTPException(status_code=400, detail="Missing subscriptionId")

        connection = await self.registry.register(subscription_id)

        async def stream():
            try:
                # Flush headers so the client sees the stream open immediately
                yield "\n"
                async for frame in connection.frames():
                    yield frame
            finally:
                await self.registry.unregister(connection)

        return StreamingResponse(stream(), media_type="text/event-stream", headers=STREAM_HEADERS)

    async def notify(self, payload: Any) -> NotifyResponse:
        """Fire-and-forget ready notification for a pod"""
        try:
            request = NotifyRequest.model_validate(payload if isinstance(payload, dict) else {})
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid notification: {e.errors()}")

        pod_id = (request.pod_id or "").strip()
        if not pod_id:
            raise HTTPException(status_code=400, detail="Missing podId")

        delivered = await self.registry.notify_ready(pod_id)
        return NotifyResponse(status="ok", pod_id=pod_id, delivered=delivered)

    async def arm_timer(self, pod_id: str, ttl: Optional[int] = None) -> ArmResponse:
        """Start (or restart) a pod's idle-shutdown timer"""
        ttl = ttl or self.config.extension_seconds
        try:
            await self.timer_store.arm(pod_id, ttl)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except TransientStoreError as e:
            logger.error("Could not arm timer for pod %s: %s", pod_id, e)
            raise HTTPException(status_code=503, detail="Timer store unavailable")

        logger.info("Armed shutdown timer for pod %s (%ds)", pod_id, ttl)
        return ArmResponse(pod_id=pod_id, ttl=ttl)

    async def get_status(self) -> SentinelStatus:
        """Get current sentinel status"""
        try:
            tracked = await self.timer_store.count()
            failed = await self.timer_store.failed_stops()
        except TransientStoreError as e:
            logger.error("Status lookup failed: %s", e)
            raise HTTPException(status_code=503, detail="Timer store unavailable")

        counts = self.registry.subscription_counts()
        return SentinelStatus(
            detection_mode=self.config.detection_mode,
            idle_threshold=self.config.idle_threshold,
            extension_seconds=self.config.extension_seconds,
            tracked_timers=tracked,
            subscriptions=len(counts),
            connections=sum(counts.values()),
            subscription_counts=counts,
            failed_stops=failed,
        )
