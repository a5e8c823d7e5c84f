from memocare.helpers.logging import logger
from memocare.helpers.pydantic_types.phone_numbers import mask
from memocare.models.readiness import ReadinessEnum
from memocare.persistence.isms import ISms


class ConsoleSms(ISms):
    """
    Print text messages in the logs instead of sending them.

    Every message is reported as delivered.
    """

    def __init__(self):
        logger.warning("Using console as SMS, no real messages will be sent")

    async def readiness(self) -> ReadinessEnum:
        return ReadinessEnum.OK  # Always ready, it's the console :)

    async def send(self, content: str, phone_number: str) -> str | None:
        logger.info("SMS to %s: %s", mask(phone_number), content)
        return None
