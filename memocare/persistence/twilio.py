from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from memocare.helpers.cache import lru_acache
from memocare.helpers.config_models.sms import TwilioModel
from memocare.helpers.http import twilio_http
from memocare.helpers.logging import logger
from memocare.helpers.pydantic_types.phone_numbers import mask
from memocare.models.readiness import ReadinessEnum
from memocare.persistence.isms import ISms


class TwilioSms(ISms):
    _config: TwilioModel

    def __init__(self, config: TwilioModel):
        logger.info("Using Twilio from number %s", mask(str(config.phone_number)))
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the Twilio SMS service.

        This only check if the Twilio API is reachable and the account has remaining balance.
        """
        account_sid = self._config.account_sid
        try:
            client = await self._use_client()
            account = await client.api.accounts(account_sid).fetch_async()
            balance = await account.balance.fetch_async()
            assert balance.balance and float(balance.balance) > 0
            return ReadinessEnum.OK
        except AssertionError:
            logger.exception("Readiness test failed")
        except Exception:
            logger.exception("Unknown error while checking Twilio readiness")
        return ReadinessEnum.FAIL

    async def send(self, content: str, phone_number: str) -> str | None:
        masked = mask(phone_number)
        logger.info("Sending SMS to %s", masked)
        client = await self._use_client()
        try:
            res = await client.messages.create_async(
                body=content,
                from_=str(self._config.phone_number),
                to=phone_number,
            )
        except TwilioRestException as e:
            logger.exception("Error sending SMS to %s", masked)
            return e.msg
        except Exception as e:
            logger.exception("Unknown error sending SMS to %s", masked)
            return str(e)

        if res.error_message:
            logger.warning(
                "Failed SMS to %s, status %s, error %s",
                masked,
                res.error_code,
                res.error_message,
            )
            return res.error_message

        logger.debug("SMS sent to %s", masked)
        return None

    @lru_acache()
    async def _use_client(self) -> Client:
        logger.debug("Using Twilio client for %s", self._config.account_sid)

        return Client(
            # Performance
            http_client=await twilio_http(),
            # Authentication
            password=self._config.auth_token.get_secret_value(),
            username=self._config.account_sid,
        )
