from abc import ABC, abstractmethod

from memocare.helpers.monitoring import start_as_current_span
from memocare.models.readiness import ReadinessEnum


class ISms(ABC):
    @abstractmethod
    @start_as_current_span("sms_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("sms_send")
    async def send(self, content: str, phone_number: str) -> str | None:
        """
        Send a text message to a phone number in E164 format.

        Returns `None` on success, else the error message. Delivery errors are never raised.
        """
