import hashlib
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from uuid import uuid4

from opentelemetry.instrumentation.redis import RedisInstrumentor
from pydantic import ValidationError
from redis.asyncio import Connection, ConnectionPool, Redis, SSLConnection
from redis.asyncio.client import PubSub
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    BusyLoadingError,
    ConnectionError as RedisConnectionError,
    RedisError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from memocare.helpers.cache import lru_acache
from memocare.helpers.config_models.cache import RedisModel
from memocare.helpers.config_models.channel import RedisChannelModel
from memocare.helpers.logging import logger
from memocare.models.notification import NotificationModel
from memocare.models.readiness import ReadinessEnum
from memocare.persistence.icache import ICache
from memocare.persistence.ichannel import IChannel, PublishError

# Instrument redis
RedisInstrumentor().instrument()


@lru_acache()
async def _use_connection_pool(
    config: RedisModel,
    socket_timeout: float | None,
) -> ConnectionPool:
    """
    Generate the Redis connection pool.

    A `None` socket timeout is required for blocking reads, like pub/sub listeners.
    """
    logger.info("Using Redis %s:%s", config.host, config.port)

    return ConnectionPool(
        # Database location
        db=config.database,
        # Reliability
        health_check_interval=10,  # Check the health of the connection every 10 secs
        retry_on_error=[BusyLoadingError, RedisConnectionError],
        retry_on_timeout=True,
        retry=Retry(backoff=ExponentialBackoff(), retries=3),
        socket_connect_timeout=5,  # Give the system sufficient time to connect even under higher CPU conditions
        socket_timeout=socket_timeout,
        # Deployment
        connection_class=SSLConnection if config.ssl else Connection,
        host=config.host,
        port=config.port,
        # Authentication
        password=config.password.get_secret_value() if config.password else None,
    )


@asynccontextmanager
async def _use_client(
    config: RedisModel,
    socket_timeout: float | None,
) -> AsyncGenerator[Redis]:
    """
    Return a Redis connection.
    """
    async with Redis(
        auto_close_connection_pool=False,
        connection_pool=await _use_connection_pool(config, socket_timeout),
    ) as client:
        yield client


class RedisCache(ICache):
    _config: RedisModel

    def __init__(self, config: RedisModel):
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the Redis cache.

        This will validate the ACID properties of the database: Create, Read, Update, Delete.
        """
        test_name = str(uuid4())
        test_value = "test"
        try:
            async with self._use_client() as client:
                # Test the item does not exist
                assert await client.get(test_name) is None
                # Create a new item
                await client.set(test_name, test_value)
                # Test the item is the same
                assert (await client.get(test_name)).decode() == test_value
                # Delete the item
                await client.delete(test_name)
                # Test the item does not exist
                assert await client.get(test_name) is None
            return ReadinessEnum.OK
        except AssertionError:
            logger.exception("Readiness test failed")
        except RedisError:
            logger.exception("Error requesting Redis")
        except Exception:
            logger.exception("Unknown error while checking Redis readiness")
        return ReadinessEnum.FAIL

    async def get(self, key: str) -> bytes | None:
        """
        Get a value from the cache.

        If the key does not exist or if the key exists but the value is empty, return `None`. Errors are logged, a cache miss is never fatal.
        """
        sha_key = self._key_to_hash(key)
        res = None
        try:
            async with self._use_client() as client:
                res = await client.get(sha_key)
        except RedisError:
            logger.exception("Error getting value")
        return res

    async def set(
        self,
        key: str,
        ttl_sec: int,
        value: str | bytes | None,
    ) -> bool:
        """
        Set a value in the cache.

        If the value is `None`, set an empty string.
        """
        sha_key = self._key_to_hash(key)
        try:
            async with self._use_client() as client:
                await client.set(
                    ex=ttl_sec,
                    name=sha_key,
                    value=value if value else "",
                )
        except RedisError:
            logger.exception("Error setting value")
            return False
        return True

    async def delete(self, key: str) -> bool:
        sha_key = self._key_to_hash(key)
        try:
            async with self._use_client() as client:
                await client.delete(sha_key)
        except RedisError:
            logger.exception("Error deleting value")
            return False
        return True

    def _use_client(self):
        return _use_client(
            config=self._config,
            socket_timeout=1,  # Respond quickly or abort, this is a cache
        )

    @staticmethod
    def _key_to_hash(key: str) -> bytes:
        """
        Transform the key into a hash.

        SHA-256 lower the collision probability. Plus, it reduce the key size, which is useful for memory usage.
        """
        return hashlib.sha256(key.encode(), usedforsecurity=False).digest()


class RedisChannel(IChannel):
    """
    Fan-out notifications across processes with Redis pub/sub.

    Each owner has its own Redis channel. Like Redis pub/sub, a notification published while nobody listens is lost.
    """

    _config: RedisChannelModel

    def __init__(self, config: RedisChannelModel):
        logger.info("Using Redis channel with prefix %s", config.prefix)
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        try:
            async with self._use_client() as client:
                assert await client.ping()
            return ReadinessEnum.OK
        except AssertionError:
            logger.exception("Readiness test failed")
        except RedisError:
            logger.exception("Error requesting Redis")
        except Exception:
            logger.exception("Unknown error while checking Redis readiness")
        return ReadinessEnum.FAIL

    async def publish(
        self,
        owner_id: str,
        notification: NotificationModel,
    ) -> int:
        try:
            res = await self._publish(
                channel=self._channel_name(owner_id),
                data=notification.model_dump_json(),
            )
        except RedisError as e:
            raise PublishError(f"Cannot publish notification: {e}") from e
        logger.debug(
            "Notification %s sent to %s subscriber(s)", notification.event.value, res
        )
        return res

    @asynccontextmanager
    async def subscribe(
        self,
        owner_id: str,
    ) -> AsyncGenerator[AsyncIterator[NotificationModel]]:
        async with (
            self._use_client() as client,
            client.pubsub(ignore_subscribe_messages=True) as pubsub,
        ):
            await pubsub.subscribe(self._channel_name(owner_id))
            yield self._consume(pubsub)

    @retry(
        reraise=True,
        retry=retry_if_exception_type(RedisConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_random_exponential(multiplier=0.5, max=4),
    )
    async def _publish(self, channel: str, data: str) -> int:
        """
        Publish a message to a Redis channel.

        Catch connection errors for a maximum of 3 times, then raise the error.
        """
        async with self._use_client() as client:
            return await client.publish(channel, data)

    @staticmethod
    async def _consume(pubsub: PubSub) -> AsyncGenerator[NotificationModel]:
        async for message in pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                yield NotificationModel.model_validate_json(message["data"])
            except ValidationError as e:
                logger.warning("Dropping malformed notification: %s", e.errors())

    def _channel_name(self, owner_id: str) -> str:
        return f"{self._config.prefix}-{owner_id}"

    def _use_client(self):
        return _use_client(
            config=self._config,
            socket_timeout=None,  # Listeners block until a message comes
        )
