"""
Redis keyspace notification feeds
"""
import asyncio
import logging
from typing import AsyncIterator, Tuple, Union

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

def expired_channel(db: int) -> str:
    return f"__keyevent@{db}__:expired"

def keyspace_pattern(db: int, prefix: str) -> str:
    return f"__keyspace@{db}__:{prefix}:*"

def key_from_keyspace_channel(channel: str) -> str:
    """'__keyspace@0__:ready:pod-1' -> 'ready:pod-1'"""
    return channel.split(":", 1)[1] if ":" in channel else ""

def _text(value: Union[str, bytes, None]) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value or ""

async def watch_pattern(redis, pattern: str, reconnect_delay: float = 5.0) -> AsyncIterator[Tuple[str, str]]:
    """Yield (channel, data) for every message matching `pattern`, forever.

    Redis pub/sub is fire-and-forget: anything published while we are
    disconnected is lost, which is why the poll detector and the explicit
    notify endpoint exist. Connection failures are logged and the
    subscription is re-established after `reconnect_delay` seconds.
    """
    while True:
        pubsub = redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.psubscribe(pattern)
            logger.info("Subscribed to %s", pattern)
            async for message in pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                yield _text(message.get("channel")), _text(message.get("data"))
            logger.warning("Subscription to %s ended", pattern)
        except (RedisError, OSError) as e:
            logger.error("Subscription to %s lost: %s", pattern, e)
        finally:
            try:
                await pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.debug("Error closing pubsub for %s: %s", pattern, e)

        logger.info("Resubscribing to %s in %.0fs", pattern, reconnect_delay)
        await asyncio.sleep(reconnect_delay)
