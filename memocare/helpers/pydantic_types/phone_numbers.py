from pydantic_extra_types.phone_numbers import PhoneNumber as PydanticPhoneNumber


class PhoneNumber(PydanticPhoneNumber):
    phone_format = "E164"  # E164 is the only format accepted by SMS providers


def mask(phone_number: str) -> str:
    """
    Return the phone number with all but the last 4 digits hidden.

    Used in logs, contacts phone numbers are personal data.
    """
    return f"{'*' * max(len(phone_number) - 4, 0)}{phone_number[-4:]}"
