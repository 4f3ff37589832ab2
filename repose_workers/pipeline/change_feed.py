"""
Per-table change notifications for realtime observers.

`ChangeFeed` delivers events to subscribers in this process. `RedisChangeFeed`
also fans them out through Redis pub/sub so observers in other worker
processes see writes they did not make themselves.
"""

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from .. import config

logger = logging.getLogger(__name__)

ChangeCallback = Callable[["ChangeEvent"], None]


class ChangeEvent(BaseModel):
    table: str
    event_type: str  # insert | update | delete
    row: dict[str, Any] = Field(default_factory=dict)


class ChangeFeed:
    """In-process fan-out of store writes."""

    def __init__(self):
        self._subscribers: dict[str, list[ChangeCallback]] = defaultdict(list)

    def subscribe(self, table: str, callback: ChangeCallback) -> Callable[[], None]:
        """Register `callback` for events on `table`. Returns an unsubscribe function."""
        self._subscribers[table].append(callback)

        def _unsubscribe():
            try:
                self._subscribers[table].remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        self._dispatch(event)

    def _dispatch(self, event: ChangeEvent) -> None:
        for callback in list(self._subscribers.get(event.table, ())):
            try:
                callback(event)
            except Exception as e:
                # A broken observer must not fail the write that triggered it
                logger.error(f"Change subscriber failed on {event.table}: {e}", exc_info=True)

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None


class RedisChangeFeed(ChangeFeed):
    """Change feed mirrored over a Redis pub/sub channel."""

    def __init__(self, redis_client, channel: str = config.CHANGE_CHANNEL):
        super().__init__()
        self._redis = redis_client
        self._channel = channel
        self._origin = uuid.uuid4().hex
        self._listener: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()

    def publish(self, event: ChangeEvent) -> None:
        self._dispatch(event)
        message = json.dumps({
            "origin": self._origin,
            "table": event.table,
            "event_type": event.event_type,
            "row": event.row,
        }, default=str)
        try:
            task = asyncio.get_running_loop().create_task(self._redis.publish(self._channel, message))
        except RuntimeError:
            logger.warning(f"No running loop — change on {event.table} not published to Redis")
            return
        self._pending.add(task)
        task.add_done_callback(self._publish_done)

    def _publish_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Redis publish failed: {task.exception()}")

    async def start(self) -> None:
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen())

    async def _listen(self) -> None:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        logger.info(f"Listening for pipeline changes on Redis channel {self._channel}")
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                self.handle_remote(message.get("data"))
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()

    def handle_remote(self, data) -> None:
        """Dispatch a message received from another process."""
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            payload = json.loads(data)
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"Ignoring malformed change message: {data!r}")
            return
        if payload.get("origin") == self._origin:
            return
        self._dispatch(ChangeEvent(
            table=payload.get("table", ""),
            event_type=payload.get("event_type", "update"),
            row=payload.get("row") or {},
        ))

    async def close(self) -> None:
        if self._listener:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        await self._redis.aclose()


def create_change_feed() -> ChangeFeed:
    """Use Redis when REDIS_URL is configured, otherwise stay in-process."""
    if not config.REDIS_URL:
        logger.info("No REDIS_URL — change notifications stay in-process")
        return ChangeFeed()

    import redis.asyncio as aioredis

    client = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    logger.info(f"Redis change feed configured: {config.REDIS_URL[:30]}...")
    return RedisChangeFeed(client)
