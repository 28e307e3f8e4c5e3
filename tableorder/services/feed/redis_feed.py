"""
Redis Change Feed

Carries row notifications between API processes over Redis pub/sub.
One channel per table ({prefix}:{table}); the listener pattern-subscribes
to all of them and filters locally per subscription.

When the connection drops, the listener retries with exponential backoff.
Already-fetched client state stays valid; after a reconnect every
subscriber receives a RESYNC notification so it re-fetches anything that
was published while the listener was away.
"""

import asyncio
import json
import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from tableorder.core.config import get_settings
from tableorder.errors import SubscriptionFailure
from tableorder.services.feed.base import BaseChangeFeed, ChangeEvent, ChangeOperation

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_event(event: ChangeEvent) -> str:
    """Serialize an event for the wire."""
    return json.dumps(event.to_dict(), default=_json_default, ensure_ascii=False)


def decode_event(payload: str) -> Optional[ChangeEvent]:
    """Parse a wire payload; malformed payloads yield None."""
    try:
        return ChangeEvent.from_dict(json.loads(payload))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        logger.warning(f"Dropping malformed change payload: {e}")
        return None


class RedisChangeFeed(BaseChangeFeed):
    """Change feed over Redis pub/sub with automatic resubscription."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        channel_prefix: Optional[str] = None,
        initial_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ):
        super().__init__()
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.channel_prefix = channel_prefix or settings.redis_channel_prefix
        self.initial_delay = initial_delay or settings.feed_reconnect_initial_delay
        self.max_delay = max_delay or settings.feed_reconnect_max_delay
        self.retry_delay = self.initial_delay

        self._client: Optional[redis.Redis] = None
        self._listener: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()
        self._closing = False

        logger.info(f"RedisChangeFeed initialized (prefix={self.channel_prefix})")

    @property
    def provider_name(self) -> str:
        return "redis"

    def channel_for(self, table: str) -> str:
        return f"{self.channel_prefix}:{table}"

    async def start(self) -> None:
        if self._listener is not None:
            return
        self._closing = False
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        self._listener = asyncio.create_task(self._listen(), name="redis-change-feed")

    async def close(self) -> None:
        self._closing = True
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        await super().close()
        logger.info("RedisChangeFeed closed")

    async def publish(self, events: Iterable[ChangeEvent]) -> None:
        if self._client is None:
            raise SubscriptionFailure("Change feed is not started")
        for event in events:
            try:
                await self._client.publish(self.channel_for(event.table), encode_event(event))
            except RedisError as e:
                # The write is committed; readers recover through RESYNC
                logger.error(f"Failed to publish {event.operation.value} on {event.table}: {e}")

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        """Wait until the listener holds a live subscription."""
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def _listen(self) -> None:
        self.retry_delay = self.initial_delay
        reconnecting = False

        while not self._closing:
            pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.psubscribe(f"{self.channel_prefix}:*")
                self._connected.set()
                if reconnecting:
                    logger.info("Change feed reconnected; requesting resync")
                    await self._dispatch(ChangeEvent(ChangeOperation.RESYNC, "*"))
                    reconnecting = False
                self.retry_delay = self.initial_delay

                async for message in pubsub.listen():
                    if message.get("type") != "pmessage":
                        continue
                    event = decode_event(message["data"])
                    if event is not None:
                        await self._dispatch(event)

            except (RedisError, OSError) as e:
                self._connected.clear()
                reconnecting = True
                logger.warning(f"Change feed disconnected ({e}); retrying in {self.retry_delay:.1f}s")
                await asyncio.sleep(self.retry_delay)
                self.retry_delay = min(self.retry_delay * 2, self.max_delay)
            finally:
                await pubsub.aclose()
