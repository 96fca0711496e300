"""
Live event-stream subscribers and "ready" fan-out
"""
import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, Optional, Set

from pod_sentinel.errors import SubscriberWriteError, TransientStoreError
from pod_sentinel.metadata_store import MetadataStore
from pod_sentinel.models import ConnectionState

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"
READY_EVENT = "ready"

def format_event(event: str, payload: Dict[str, Any]) -> str:
    """Render one text/event-stream frame"""
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"

class EventConnection:
    """One open event stream. Writes are queued so a slow reader never blocks the writer"""

    def __init__(self, subscription_id: str, queue_size: int = 100):
        self.subscription_id = subscription_id
        self.connection_id = uuid.uuid4().hex[:12]
        self.state = ConnectionState.CONNECTING
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    @property
    def is_open(self) -> bool:
        return self.state != ConnectionState.CLOSED

    def send(self, frame: str):
        if self.state == ConnectionState.CLOSED:
            raise SubscriberWriteError(self.subscription_id, "connection closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            raise SubscriberWriteError(self.subscription_id, "reader too slow, send queue full")

    def close(self):
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        # Make room for the end-of-stream marker
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def frames(self) -> AsyncIterator[str]:
        """Frames in write order, ending once the connection is closed"""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

class SubscriptionRegistry:
    """Maps subscription ids to their open connections.

    Each subscription id has its own lock guarding both membership changes
    and iterate-and-write, so a connection is never written mid-teardown
    while unrelated subscriptions proceed independently. Empty sets are
    left in place when the last connection goes away.
    """

    def __init__(self, metadata_store: MetadataStore, queue_size: int = 100):
        self.metadata_store = metadata_store
        self.queue_size = queue_size
        self._connections: Dict[str, Set[EventConnection]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, subscription_id: str) -> asyncio.Lock:
        return self._locks.setdefault(subscription_id, asyncio.Lock())

    async def register(self, subscription_id: str) -> EventConnection:
        connection = EventConnection(subscription_id, self.queue_size)
        async with self._lock_for(subscription_id):
            self._connections.setdefault(subscription_id, set()).add(connection)
            connection.state = ConnectionState.REGISTERED
        logger.info("Subscriber %s connected to subscription %s", connection.connection_id, subscription_id)
        return connection

    async def unregister(self, connection: EventConnection):
        subscription_id = connection.subscription_id
        async with self._lock_for(subscription_id):
            self._connections.get(subscription_id, set()).discard(connection)
            connection.close()
        logger.info("Subscriber %s disconnected from subscription %s", connection.connection_id, subscription_id)

    async def _write_all(self, subscription_id: str, frame: str) -> int:
        """Write a frame to every connection of a subscription; broken ones are dropped"""
        delivered = 0
        async with self._lock_for(subscription_id):
            connections = self._connections.get(subscription_id)
            if not connections:
                return 0

            for connection in list(connections):
                try:
                    connection.send(frame)
                    delivered += 1
                except SubscriberWriteError as e:
                    logger.warning("Dropping subscriber %s: %s", connection.connection_id, e)
                    connections.discard(connection)
                    connection.close()
        return delivered

    async def publish(self, subscription_id: str, event: str, payload: Dict[str, Any]) -> int:
        return await self._write_all(subscription_id, format_event(event, payload))

    async def notify_ready(self, pod_id: str) -> int:
        """Tell everyone subscribed to this pod that it is ready; returns how many connections got it"""
        try:
            subscription_id = await self.metadata_store.find_subscription(pod_id)
        except TransientStoreError as e:
            logger.error("Cannot resolve subscription for pod %s: %s", pod_id, e)
            return 0

        if subscription_id is None:
            logger.info("No subscription mapped to pod %s, dropping ready event", pod_id)
            return 0

        payload = {"podId": pod_id, "resourceId": pod_id, "event": READY_EVENT}
        delivered = await self.publish(subscription_id, READY_EVENT, payload)
        logger.info("Ready event for pod %s delivered to %d connection(s) of subscription %s",
                    pod_id, delivered, subscription_id)
        return delivered

    async def heartbeat(self) -> int:
        """Comment frame to every connection; keeps proxies from timing out idle streams"""
        delivered = 0
        for subscription_id in list(self._connections):
            delivered += await self._write_all(subscription_id, HEARTBEAT_FRAME)
        return delivered

    async def heartbeat_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            await self.heartbeat()

    def connections_for(self, subscription_id: str) -> Set[EventConnection]:
        return set(self._connections.get(subscription_id, set()))

    def subscription_counts(self) -> Dict[str, int]:
        return {sid: len(conns) for sid, conns in self._connections.items()}

    async def close(self, subscription_id: Optional[str] = None):
        """Close every connection (or every connection of one subscription)"""
        subscription_ids = [subscription_id] if subscription_id else list(self._connections)
        for sid in subscription_ids:
            async with self._lock_for(sid):
                for connection in self._connections.get(sid, set()):
                    connection.close()
                self._connections.get(sid, set()).clear()
