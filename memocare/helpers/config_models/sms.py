from enum import Enum
from functools import cached_property

from pydantic import BaseModel, SecretStr, ValidationInfo, field_validator

from memocare.helpers.pydantic_types.phone_numbers import PhoneNumber
from memocare.persistence.isms import ISms


class ModeEnum(str, Enum):
    CONSOLE = "console"
    """Print messages in the logs, nothing is sent."""
    TWILIO = "twilio"
    """Use Twilio."""


class ConsoleModel(BaseModel, frozen=True):
    """
    Represents the configuration for the console SMS sink.

    Model is purely empty to fit to the `ISms` interface and the "mode" enum code organization.
    """

    @cached_property
    def instance(self) -> ISms:
        from memocare.persistence.console import (
            ConsoleSms,
        )

        return ConsoleSms()


class TwilioModel(BaseModel, frozen=True):
    account_sid: str
    auth_token: SecretStr
    phone_number: PhoneNumber

    @field_validator("account_sid")
    @classmethod
    def _validate_account_sid(cls, account_sid: str) -> str:
        if not account_sid.startswith("AC"):
            raise ValueError("Twilio account SID must start with AC")
        return account_sid

    @cached_property
    def instance(self) -> ISms:
        from memocare.persistence.twilio import (
            TwilioSms,
        )

        return TwilioSms(self)


class SmsModel(BaseModel):
    console: ConsoleModel | None = ConsoleModel()  # Object is fully defined by default
    mode: ModeEnum = ModeEnum.CONSOLE
    twilio: TwilioModel | None = None

    @field_validator("twilio")
    @classmethod
    def _validate_twilio(
        cls,
        twilio: TwilioModel | None,
        info: ValidationInfo,
    ) -> TwilioModel | None:
        if not twilio and info.data.get("mode", None) == ModeEnum.TWILIO:
            raise ValueError("Twilio config required")
        return twilio

    @cached_property
    def instance(self) -> ISms:
        if self.mode == ModeEnum.TWILIO:
            assert self.twilio
            return self.twilio.instance

        assert self.console
        return self.console.instance
