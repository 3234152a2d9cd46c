"""Per-conversation publish/subscribe used by the relay.

Every relay session owns one ``Subscription`` to its conversation's channel,
so one publish fans out to every connected participant. Three brokers share
the same payload format (``{"author_user_id": int, "content": str}``):

* ``PostgresBroker`` LISTENs on a dedicated psycopg2 connection per
  subscription. Publishing is done by the ``messages`` insert trigger, so a
  notification only exists if the insert committed.
* ``RedisBroker`` uses Redis pub/sub; callers publish after their commit.
* ``LocalBroker`` fans out through in-process queues; callers publish after
  their commit. Single process only.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set
from uuid import UUID

import psycopg2
import redis.asyncio as aioredis
from psycopg2 import sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from redis.exceptions import RedisError
from sqlalchemy.engine import make_url
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

_END = object()


class BridgeError(Exception):
    """The notification stream failed and cannot be resumed."""


@dataclass(frozen=True)
class Notification:
    author_user_id: int
    content: str


def channel_name(conversation_id: UUID) -> str:
    return f"conversation_{conversation_id}"


def encode_notification(notification: Notification) -> str:
    return json.dumps({
        "author_user_id": notification.author_user_id,
        "content": notification.content,
    })


def decode_notification(payload) -> Notification:
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError(f"Unexpected notification payload: {payload!r}")
    author = data.get("author_user_id")
    content = data.get("content")
    if not isinstance(author, int) or isinstance(author, bool) or not isinstance(content, str):
        raise ValueError(f"Unexpected notification payload: {payload!r}")
    return Notification(author_user_id=author, content=content)


class Subscription:
    """Lazy stream of notifications for one conversation."""

    def __init__(self, channel: str):
        self.channel = channel
        self.closed = False

    async def _next_payload(self):
        raise NotImplementedError

    async def next_notification(self) -> Optional[Notification]:
        """Next notification, or ``None`` once the stream has ended.

        Raises BridgeError when the underlying connection fails. Payloads
        that cannot be decoded are logged and skipped.
        """
        while True:
            payload = await self._next_payload()
            if payload is None:
                return None
            try:
                return decode_notification(payload)
            except ValueError as e:
                logger.error(f"Failed to parse notification on {self.channel}: {e}")

    async def close(self):
        self.closed = True


class QueueSubscription(Subscription):
    def __init__(self, channel: str, on_close: Optional[Callable[["QueueSubscription"], None]] = None):
        super().__init__(channel)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close

    def deliver(self, payload: str):
        if not self.closed:
            self._queue.put_nowait(payload)

    def end(self, error: Optional[Exception] = None):
        self._queue.put_nowait(_END if error is None else error)

    async def _next_payload(self):
        item = await self._queue.get()
        if item is _END:
            return None
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        if not self.closed and self._on_close is not None:
            self._on_close(self)
        await super().close()


class LocalBroker:
    name = "local"

    def __init__(self):
        self._subscribers: Dict[str, Set[QueueSubscription]] = {}

    async def connect(self):
        logger.info("Using in-process notification broker")

    async def ping(self):
        return True

    def _unsubscribe(self, subscription: QueueSubscription):
        subscribers = self._subscribers.get(subscription.channel)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.channel]

    async def subscribe(self, conversation_id: UUID) -> Subscription:
        subscription = QueueSubscription(channel_name(conversation_id), on_close=self._unsubscribe)
        self._subscribers.setdefault(subscription.channel, set()).add(subscription)
        return subscription

    async def publish(self, conversation_id: UUID, notification: Notification):
        payload = encode_notification(notification)
        for subscription in list(self._subscribers.get(channel_name(conversation_id), ())):
            subscription.deliver(payload)

    async def close(self):
        for subscriptions in self._subscribers.values():
            for subscription in subscriptions:
                subscription.end()
        self._subscribers.clear()


class PostgresSubscription(QueueSubscription):
    def __init__(self, channel: str, connection, loop: asyncio.AbstractEventLoop):
        super().__init__(channel)
        self._connection = connection
        self._loop = loop
        self._fd = connection.fileno()
        loop.add_reader(self._fd, self._on_readable)

    def _on_readable(self):
        try:
            self._connection.poll()
        except psycopg2.Error as e:
            logger.error(f"Listener connection for {self.channel} failed: {e}")
            self._loop.remove_reader(self._fd)
            self.end(BridgeError(str(e)))
            return
        while self._connection.notifies:
            notify = self._connection.notifies.pop(0)
            self.deliver(notify.payload)

    async def close(self):
        if self.closed:
            return
        await super().close()
        self._loop.remove_reader(self._fd)
        try:
            self._connection.close()
        except psycopg2.Error as e:
            logger.warning(f"Error closing listener for {self.channel}: {e}")


class PostgresBroker:
    name = "postgres"

    def __init__(self, database_url: str):
        url = make_url(database_url)
        self._connect_args = url.translate_connect_args(username="user", database="dbname")
        self._connect_args.update(url.query)

    def _listen(self, channel: str):
        connection = psycopg2.connect(**self._connect_args)
        try:
            connection.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
            with connection.cursor() as cursor:
                cursor.execute(sql.SQL("LISTEN {}").format(sql.Identifier(channel)))
        except psycopg2.Error:
            connection.close()
            raise
        return connection

    def _check(self):
        psycopg2.connect(**self._connect_args).close()

    async def connect(self):
        logger.info("Using PostgreSQL LISTEN/NOTIFY broker")

    async def ping(self):
        """Open and drop a connection like the ones LISTEN runs on."""
        try:
            await run_in_threadpool(self._check)
        except psycopg2.Error as e:
            logger.error(f"Listener connection check failed: {e}")
            raise BridgeError(str(e)) from e
        return True

    async def subscribe(self, conversation_id: UUID) -> Subscription:
        channel = channel_name(conversation_id)
        try:
            connection = await run_in_threadpool(self._listen, channel)
        except psycopg2.Error as e:
            logger.error(f"Failed to listen to channel {channel}: {e}")
            raise BridgeError(str(e)) from e
        logger.debug(f"Listening on {channel}")
        return PostgresSubscription(channel, connection, asyncio.get_running_loop())

    async def publish(self, conversation_id: UUID, notification: Notification):
        # The messages insert trigger already issued pg_notify in the write transaction.
        return None

    async def close(self):
        pass


class RedisSubscription(Subscription):
    def __init__(self, channel: str, pubsub):
        super().__init__(channel)
        self._pubsub = pubsub

    async def _next_payload(self):
        while True:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=None)
            except RedisError as e:
                logger.error(f"Subscription error on {self.channel}: {e}")
                raise BridgeError(str(e)) from e
            if message and message["type"] == "message":
                return message["data"]

    async def close(self):
        if self.closed:
            return
        await super().close()
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning(f"Error closing subscription to {self.channel}: {e}")


class RedisBroker:
    name = "redis"

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.redis = None

    async def connect(self):
        try:
            self.redis = aioredis.from_url(self.redis_url, decode_responses=True)
            await self.redis.ping()
            logger.info("Connected to Redis")
        except RedisError as e:
            logger.error(f"Redis connection failed: {e}")
            raise

    async def ping(self):
        return await self.redis.ping()

    async def subscribe(self, conversation_id: UUID) -> Subscription:
        channel = channel_name(conversation_id)
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as e:
            logger.error(f"Failed to subscribe to {channel}: {e}")
            await pubsub.aclose()
            raise BridgeError(str(e)) from e
        logger.debug(f"Subscribed to channel: {channel}")
        return RedisSubscription(channel, pubsub)

    async def publish(self, conversation_id: UUID, notification: Notification):
        channel = channel_name(conversation_id)
        try:
            await self.redis.publish(channel, encode_notification(notification))
        except RedisError as e:
            logger.error(f"Message publishing failed on {channel}: {e}")
            raise BridgeError(str(e)) from e

    async def close(self):
        if self.redis:
            await self.redis.aclose()


def create_broker(backend: str, database_url: str, redis_url: str):
    if backend == "postgres":
        return PostgresBroker(database_url)
    if backend == "redis":
        return RedisBroker(redis_url)
    if backend == "local":
        return LocalBroker()
    raise ValueError(f"Unknown NOTIFY_BACKEND: {backend}")
