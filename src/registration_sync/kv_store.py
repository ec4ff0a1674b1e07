"""Redis-backed key/value store with list, hash and pub/sub primitives."""

import asyncio
import inspect
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from .config.settings import RedisConfig, RetryConfig
from .exceptions import StoreUnavailableError
from .utils.retry import retry_with_config


logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any, Optional[str]], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by Channel.subscribe; call unsubscribe() to stop delivery."""

    def __init__(self, channel: str, pubsub: Any, task: "asyncio.Task"):
        self.channel = channel
        self._pubsub = pubsub
        self._task = task
        self.active = True

    async def unsubscribe(self):
        if not self.active:
            return
        self.active = False

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning(f"Error closing subscription to {self.channel}: {e}")

        logger.info(f"Unsubscribed from channel: {self.channel}")


class Channel:
    """A named pub/sub topic. Delivery is at-most-once."""

    def __init__(self, store: "KeyValueStore", name: str):
        self.store = store
        self.name = name

    async def publish(self, message: Any) -> int:
        return await self.store.publish(self.name, message)

    async def subscribe(self, handler: MessageHandler) -> Optional[Subscription]:
        return await self.store.subscribe(self.name, handler)


class KeyValueStore:
    """
    Thin async wrapper over Redis.

    Every operation degrades to a sentinel (None, False, empty) when the store
    is unreachable so callers can fall back to the upstream.
    """

    def __init__(
        self,
        config: RedisConfig,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[Any] = None
    ):
        self.config = config
        self.retry_config = retry_config or RetryConfig()
        self.redis_client = client
        self._injected = client is not None

        self.stats = {
            "reads": 0,
            "writes": 0,
            "errors": 0,
            "connection_errors": 0,
        }

        logger.info(f"KeyValueStore initialized for {config.url or f'{config.host}:{config.port}'}")

    # ==================== Connection ====================

    def _build_client(self):
        retry = Retry(
            ExponentialBackoff(
                cap=self.config.reconnect_backoff_cap_seconds,
                base=self.config.reconnect_backoff_base_seconds
            ),
            self.config.reconnect_attempts
        )
        options = dict(
            socket_timeout=self.config.socket_timeout,
            socket_connect_timeout=self.config.socket_connect_timeout,
            health_check_interval=30,
            retry=retry,
            retry_on_error=[ConnectionError, TimeoutError],
            decode_responses=True
        )

        if self.config.url:
            return redis.Redis.from_url(self.config.url, **options)

        return redis.Redis(
            host=self.config.host,
            port=self.config.port,
            password=self.config.password,
            db=self.config.db,
            **options
        )

    async def initialize(self):
        """Create the Redis client and verify connectivity."""
        if self.redis_client is None:
            self.redis_client = self._build_client()

        try:
            await retry_with_config(
                self.redis_client.ping,
                self.retry_config,
                exceptions=(ConnectionError, TimeoutError)
            )
        except RedisError as e:
            self.stats["connection_errors"] += 1
            logger.error(f"Failed to initialize Redis connection: {e}")
            raise StoreUnavailableError(f"Redis unavailable: {e}") from e

        logger.info("Redis connection initialized successfully")

    async def close(self):
        if self.redis_client and not self._injected:
            logger.info("Closing Redis connection")
            await self.redis_client.aclose()
            self.redis_client = None

    @property
    def is_ready(self) -> bool:
        return self.redis_client is not None

    async def ping(self) -> bool:
        if not self.redis_client:
            return False
        try:
            return bool(await self.redis_client.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    def _key(self, key: str) -> str:
        if self.config.key_prefix:
            return f"{self.config.key_prefix}:{key}"
        return key

    def _strip(self, key: str) -> str:
        prefix = f"{self.config.key_prefix}:" if self.config.key_prefix else ""
        if prefix and key.startswith(prefix):
            return key[len(prefix):]
        return key

    def _record_error(self, operation: str, key: str, error: Exception):
        self.stats["errors"] += 1
        if isinstance(error, (ConnectionError, TimeoutError)):
            self.stats["connection_errors"] += 1
        logger.error(f"Redis {operation} error for {key}: {error}")

    @staticmethod
    def _decode(value: Optional[str]) -> Any:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return value

    # ==================== Scalar values ====================

    async def get_json(self, key: str) -> Any:
        """Return the decoded value at key, or None on miss or store failure."""
        if not self.redis_client:
            logger.warning(f"Redis not ready, cache miss for {key}")
            return None

        try:
            value = await self.redis_client.get(self._key(key))
            self.stats["reads"] += 1
            if value is None:
                logger.debug(f"Cache MISS: {key}")
                return None
            logger.debug(f"Cache HIT: {key}")
            return self._decode(value)
        except RedisError as e:
            self._record_error("GET", key, e)
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Store value as JSON; no TTL means the key never expires."""
        if not self.redis_client:
            logger.warning(f"Redis not ready, skipping set for {key}")
            return False

        try:
            serialized = json.dumps(value, default=str)
            if ttl_seconds and ttl_seconds > 0:
                await self.redis_client.set(self._key(key), serialized, ex=ttl_seconds)
            else:
                await self.redis_client.set(self._key(key), serialized)
            self.stats["writes"] += 1
            logger.debug(f"Cache SET: {key} (ttl={ttl_seconds or 'none'})")
            return True
        except RedisError as e:
            self._record_error("SET", key, e)
            return False

    async def delete(self, *keys: str) -> bool:
        if not self.redis_client or not keys:
            return False

        try:
            removed = await self.redis_client.delete(*[self._key(k) for k in keys])
            self.stats["writes"] += 1
            return removed > 0
        except RedisError as e:
            self._record_error("DEL", ",".join(keys), e)
            return False

    async def exists(self, key: str) -> bool:
        if not self.redis_client:
            return False

        try:
            return await self.redis_client.exists(self._key(key)) == 1
        except RedisError as e:
            self._record_error("EXISTS", key, e)
            return False

    async def keys(self, pattern: str) -> List[str]:
        """Keys matching pattern, with the configured prefix stripped."""
        if not self.redis_client:
            return []

        try:
            found = await self.redis_client.keys(self._key(pattern))
            return [self._strip(k) for k in found]
        except RedisError as e:
            self._record_error("KEYS", pattern, e)
            return []

    # ==================== Lists ====================

    async def push_left(self, key: str, value: Any) -> bool:
        if not self.redis_client:
            return False

        try:
            await self.redis_client.lpush(self._key(key), json.dumps(value, default=str))
            self.stats["writes"] += 1
            return True
        except RedisError as e:
            self._record_error("LPUSH", key, e)
            return False

    async def push_right(self, key: str, value: Any) -> bool:
        if not self.redis_client:
            return False

        try:
            await self.redis_client.rpush(self._key(key), json.dumps(value, default=str))
            self.stats["writes"] += 1
            return True
        except RedisError as e:
            self._record_error("RPUSH", key, e)
            return False

    async def pop_right(self, key: str) -> Any:
        if not self.redis_client:
            return None

        try:
            return self._decode(await self.redis_client.rpop(self._key(key)))
        except RedisError as e:
            self._record_error("RPOP", key, e)
            return None

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> List[Any]:
        if not self.redis_client:
            return []

        try:
            values = await self.redis_client.lrange(self._key(key), start, end)
            return [self._decode(v) for v in values]
        except RedisError as e:
            self._record_error("LRANGE", key, e)
            return []

    async def list_length(self, key: str) -> Optional[int]:
        """Length of the list, or None when the store is unavailable."""
        if not self.redis_client:
            return None

        try:
            return await self.redis_client.llen(self._key(key))
        except RedisError as e:
            self._record_error("LLEN", key, e)
            return None

    async def remove_from_list(self, key: str, value: Any) -> int:
        """Remove every occurrence of value (compared by its JSON encoding)."""
        if not self.redis_client:
            return 0

        try:
            return await self.redis_client.lrem(self._key(key), 0, json.dumps(value, default=str))
        except RedisError as e:
            self._record_error("LREM", key, e)
            return 0

    async def trim_list(self, key: str, max_length: int) -> bool:
        """Keep only the newest max_length entries of a left-pushed list."""
        if not self.redis_client:
            return False

        try:
            await self.redis_client.ltrim(self._key(key), 0, max_length - 1)
            return True
        except RedisError as e:
            self._record_error("LTRIM", key, e)
            return False

    # ==================== Hashes ====================

    async def hash_set(self, key: str, field: str, value: Any) -> bool:
        if not self.redis_client:
            return False

        try:
            await self.redis_client.hset(self._key(key), field, json.dumps(value, default=str))
            self.stats["writes"] += 1
            return True
        except RedisError as e:
            self._record_error("HSET", key, e)
            return False

    async def hash_get(self, key: str, field: str) -> Any:
        if not self.redis_client:
            return None

        try:
            return self._decode(await self.redis_client.hget(self._key(key), field))
        except RedisError as e:
            self._record_error("HGET", key, e)
            return None

    async def hash_get_all(self, key: str) -> Dict[str, Any]:
        if not self.redis_client:
            return {}

        try:
            values = await self.redis_client.hgetall(self._key(key))
            return {field: self._decode(value) for field, value in values.items()}
        except RedisError as e:
            self._record_error("HGETALL", key, e)
            return {}

    async def hash_delete(self, key: str, *fields: str) -> int:
        if not self.redis_client or not fields:
            return 0

        try:
            return await self.redis_client.hdel(self._key(key), *fields)
        except RedisError as e:
            self._record_error("HDEL", key, e)
            return 0

    # ==================== Pub/Sub ====================

    def channel(self, name: str) -> Channel:
        return Channel(self, name)

    async def publish(self, channel: str, message: Any) -> int:
        """Publish message wrapped in a timestamped envelope; returns receiver count."""
        if not self.redis_client:
            logger.warning(f"Redis not ready, skipping publish to {channel}")
            return 0

        try:
            envelope = json.dumps({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": message
            }, default=str)
            receivers = await self.redis_client.publish(self._key(channel), envelope)
            logger.debug(f"Published to {channel}: {receivers} subscribers")
            return receivers
        except RedisError as e:
            self._record_error("PUBLISH", channel, e)
            return 0

    async def subscribe(self, channel: str, handler: MessageHandler) -> Optional[Subscription]:
        """Deliver messages on channel to handler(data, timestamp) until unsubscribed."""
        if not self.redis_client:
            logger.warning(f"Redis not ready, cannot subscribe to {channel}")
            return None

        try:
            pubsub = self.redis_client.pubsub()
            await pubsub.subscribe(self._key(channel))
        except RedisError as e:
            self._record_error("SUBSCRIBE", channel, e)
            return None

        task = asyncio.create_task(self._listen(channel, pubsub, handler))
        logger.info(f"Subscribed to channel: {channel}")
        return Subscription(self._key(channel), pubsub, task)

    async def _listen(self, channel: str, pubsub: Any, handler: MessageHandler):
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue

                payload = self._decode(message.get("data"))
                if isinstance(payload, dict) and "data" in payload:
                    data, timestamp = payload["data"], payload.get("timestamp")
                else:
                    data, timestamp = payload, None

                try:
                    result = handler(data, timestamp)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Subscriber for {channel} failed: {e}", exc_info=True)
        except RedisError as e:
            self._record_error("LISTEN", channel, e)

    async def health_check(self) -> Dict[str, Any]:
        health_status = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "stats": self.stats.copy()
        }

        if not self.redis_client:
            health_status["status"] = "unhealthy"
            health_status["error"] = "Redis client not initialized"
            return health_status

        if not await self.ping():
            health_status["status"] = "unhealthy"
            health_status["error"] = "Redis ping failed"

        return health_status
