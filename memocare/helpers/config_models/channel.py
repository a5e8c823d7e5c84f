from enum import Enum
from functools import cached_property

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from memocare.helpers.config_models.cache import RedisModel
from memocare.persistence.ichannel import IChannel


class ModeEnum(str, Enum):
    MEMORY = "memory"
    """Fan-out inside the current process."""
    REDIS = "redis"
    """Fan-out across processes with Redis pub/sub."""


class MemoryChannelModel(BaseModel, frozen=True):
    queue_size: int = Field(default=100, ge=1)
    """Max notifications buffered per subscriber, oldest are dropped first."""

    @cached_property
    def instance(self) -> IChannel:
        from memocare.persistence.memory import (
            MemoryChannel,
        )

        return MemoryChannel(self)


class RedisChannelModel(RedisModel, frozen=True):
    prefix: str = "memocare-notifications"

    @cached_property
    def instance(self) -> IChannel:  # pyright: ignore
        from memocare.persistence.redis import (
            RedisChannel,
        )

        return RedisChannel(self)


class ChannelModel(BaseModel):
    memory: MemoryChannelModel | None = (
        MemoryChannelModel()
    )  # Object is fully defined by default
    mode: ModeEnum = ModeEnum.MEMORY
    redis: RedisChannelModel | None = None

    @field_validator("redis")
    @classmethod
    def _validate_redis(
        cls,
        redis: RedisChannelModel | None,
        info: ValidationInfo,
    ) -> RedisChannelModel | None:
        if not redis and info.data.get("mode", None) == ModeEnum.REDIS:
            raise ValueError("Redis config required")
        return redis

    @field_validator("memory")
    @classmethod
    def _validate_memory(
        cls,
        memory: MemoryChannelModel | None,
        info: ValidationInfo,
    ) -> MemoryChannelModel | None:
        if not memory and info.data.get("mode", None) == ModeEnum.MEMORY:
            raise ValueError("Memory config required")
        return memory

    @cached_property
    def instance(self) -> IChannel:
        if self.mode == ModeEnum.MEMORY:
            assert self.memory
            return self.memory.instance

        assert self.redis
        return self.redis.instance
