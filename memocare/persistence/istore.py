from abc import ABC, abstractmethod
from datetime import datetime
from uuid import UUID

from memocare.helpers.monitoring import start_as_current_span
from memocare.models.contact import ContactModel
from memocare.models.emergency import EmergencyAlertModel
from memocare.models.medication import MedicationLogModel, MedicationModel
from memocare.models.readiness import ReadinessEnum
from memocare.models.reminder import ReminderModel


class StoreUnavailableError(Exception):
    pass


class IStore(ABC):
    @abstractmethod
    @start_as_current_span("store_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("store_reminder_get")
    async def reminder_get(
        self,
        owner_id: str,
        reminder_id: UUID,
    ) -> ReminderModel | None:
        pass

    @abstractmethod
    @start_as_current_span("store_reminder_create")
    async def reminder_create(
        self,
        reminder: ReminderModel,
    ) -> ReminderModel:
        pass

    @abstractmethod
    @start_as_current_span("store_reminder_update")
    async def reminder_update(
        self,
        reminder: ReminderModel,
    ) -> ReminderModel:
        """
        Replace a reminder, last write wins.
        """

    @abstractmethod
    @start_as_current_span("store_reminder_delete")
    async def reminder_delete(
        self,
        owner_id: str,
        reminder_id: UUID,
    ) -> bool:
        """
        Delete a reminder, returns `False` if it does not exist.
        """

    @abstractmethod
    @start_as_current_span("store_reminder_search_all")
    async def reminder_search_all(
        self,
        owner_id: str,
    ) -> list[ReminderModel]:
        """
        List all reminders of an owner, active or not, sorted by next run.
        """

    @abstractmethod
    @start_as_current_span("store_reminder_list_due")
    async def reminder_list_due(
        self,
        as_of: datetime,
    ) -> list[ReminderModel]:
        """
        List active reminders with a next run at or before `as_of`, in any order.

        Read only, calling it twice without a mutation returns the same reminders. Raises `StoreUnavailableError` if the backend cannot be queried.
        """

    @abstractmethod
    @start_as_current_span("store_reminder_mark_fired")
    async def reminder_mark_fired(
        self,
        reminder_id: UUID,
        next_run_at: datetime | None,
    ) -> bool:
        """
        Record that a reminder fired.

        With a next run, the reminder is rescheduled and stays active. Without, the reminder is deactivated and its next run is left unchanged.

        Returns `False` if the reminder does not exist anymore.
        """

    @abstractmethod
    @start_as_current_span("store_contact_create")
    async def contact_create(
        self,
        contact: ContactModel,
    ) -> ContactModel:
        pass

    @abstractmethod
    @start_as_current_span("store_contact_get")
    async def contact_get(
        self,
        owner_id: str,
        contact_id: UUID,
    ) -> ContactModel | None:
        pass

    @abstractmethod
    @start_as_current_span("store_contact_update")
    async def contact_update(
        self,
        contact: ContactModel,
    ) -> ContactModel:
        pass

    @abstractmethod
    @start_as_current_span("store_contact_delete")
    async def contact_delete(
        self,
        owner_id: str,
        contact_id: UUID,
    ) -> bool:
        pass

    @abstractmethod
    @start_as_current_span("store_contact_search_all")
    async def contact_search_all(
        self,
        owner_id: str,
    ) -> list[ContactModel]:
        """
        List all contacts of an owner, sorted by name.
        """

    @abstractmethod
    @start_as_current_span("store_alert_create")
    async def alert_create(
        self,
        alert: EmergencyAlertModel,
    ) -> EmergencyAlertModel:
        pass

    @abstractmethod
    @start_as_current_span("store_alert_get")
    async def alert_get(
        self,
        owner_id: str,
        alert_id: UUID,
    ) -> EmergencyAlertModel | None:
        pass

    @abstractmethod
    @start_as_current_span("store_alert_update")
    async def alert_update(
        self,
        alert: EmergencyAlertModel,
    ) -> EmergencyAlertModel:
        pass

    @abstractmethod
    @start_as_current_span("store_alert_search_all")
    async def alert_search_all(
        self,
        owner_id: str,
    ) -> list[EmergencyAlertModel]:
        """
        List all emergency alerts of an owner, newest first.
        """

    @abstractmethod
    @start_as_current_span("store_medication_create")
    async def medication_create(
        self,
        medication: MedicationModel,
    ) -> MedicationModel:
        pass

    @abstractmethod
    @start_as_current_span("store_medication_get")
    async def medication_get(
        self,
        owner_id: str,
        medication_id: UUID,
    ) -> MedicationModel | None:
        pass

    @abstractmethod
    @start_as_current_span("store_medication_update")
    async def medication_update(
        self,
        medication: MedicationModel,
    ) -> MedicationModel:
        pass

    @abstractmethod
    @start_as_current_span("store_medication_delete")
    async def medication_delete(
        self,
        owner_id: str,
        medication_id: UUID,
    ) -> bool:
        """
        Delete a medication and its intake logs, returns `False` if it does not exist.
        """

    @abstractmethod
    @start_as_current_span("store_medication_search_all")
    async def medication_search_all(
        self,
        owner_id: str,
    ) -> list[MedicationModel]:
        """
        List all medications of an owner, sorted by name.
        """

    @abstractmethod
    @start_as_current_span("store_medication_log_create")
    async def medication_log_create(
        self,
        log: MedicationLogModel,
    ) -> MedicationLogModel:
        pass

    @abstractmethod
    @start_as_current_span("store_medication_log_search_all")
    async def medication_log_search_all(
        self,
        owner_id: str,
        medication_id: UUID,
    ) -> list[MedicationLogModel]:
        """
        List the intake logs of a medication, oldest first.
        """
