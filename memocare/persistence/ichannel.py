from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager

from memocare.helpers.monitoring import start_as_current_span
from memocare.models.notification import NotificationModel
from memocare.models.readiness import ReadinessEnum


class PublishError(Exception):
    pass


class IChannel(ABC):
    @abstractmethod
    @start_as_current_span("channel_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("channel_publish")
    async def publish(
        self,
        owner_id: str,
        notification: NotificationModel,
    ) -> int:
        """
        Send a notification to all the clients of an owner currently subscribed.

        Disconnected clients never receive it, there is no replay. Returns the number of subscribers reached. Raises `PublishError` if the backend cannot be reached.
        """

    @abstractmethod
    def subscribe(
        self,
        owner_id: str,
    ) -> AbstractAsyncContextManager[AsyncIterator[NotificationModel]]:
        """
        Subscribe to the notifications of an owner.

        The subscription is active as soon as the context is entered, and released when it exits.
        """
