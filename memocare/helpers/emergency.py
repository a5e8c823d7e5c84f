import asyncio

from memocare.helpers.config import CONFIG
from memocare.helpers.logging import logger
from memocare.helpers.monitoring import counter_add, emergency_sms_failed
from memocare.models.contact import ContactModel
from memocare.models.emergency import SmsResultModel
from memocare.persistence.isms import ISms


def emergency_contacts(contacts: list[ContactModel]) -> list[ContactModel]:
    """
    Filter the contacts to alert in case of emergency, based on their relation.
    """
    return [
        contact
        for contact in contacts
        if CONFIG.emergency.is_emergency_relation(contact.relation)
    ]


def alert_message(patient_name: str, location: str | None) -> str:
    location_text = f" from {location}" if location else ""
    return f"ALERT: {patient_name} has issued an emergency alert{location_text}. Please check on them immediately."


async def send_alert(
    contacts: list[ContactModel],
    content: str,
    sms: ISms,
) -> list[SmsResultModel]:
    """
    Send the alert to all the contacts at once.

    A contact without phone number is reported as failed, it is never skipped silently. Results are in the same order as the contacts.
    """

    async def _send(contact: ContactModel) -> SmsResultModel:
        if not contact.phone_number:
            return SmsResultModel(
                contact=contact.name,
                error="No phone number available",
                success=False,
            )
        error = await sms.send(
            content=content,
            phone_number=str(contact.phone_number),
        )
        return SmsResultModel(
            contact=contact.name,
            error=error,
            success=error is None,
        )

    results = await asyncio.gather(*[_send(contact) for contact in contacts])

    failed = sum(1 for result in results if not result.success)
    if failed:
        logger.warning("%i of %i emergency SMS failed", failed, len(results))
        counter_add(emergency_sms_failed, failed)
    return list(results)
