import asyncio
import hashlib
from collections import OrderedDict
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from uuid import UUID

from memocare.helpers.config_models.cache import MemoryModel
from memocare.helpers.config_models.channel import MemoryChannelModel
from memocare.helpers.logging import logger
from memocare.helpers.monitoring import suppress
from memocare.models.contact import ContactModel
from memocare.models.emergency import EmergencyAlertModel
from memocare.models.medication import MedicationLogModel, MedicationModel
from memocare.models.notification import NotificationModel
from memocare.models.readiness import ReadinessEnum
from memocare.models.reminder import ReminderModel
from memocare.persistence.icache import ICache
from memocare.persistence.ichannel import IChannel
from memocare.persistence.istore import IStore


class MemoryCache(ICache):
    """
    A simple in-memory cache.

    Use the least recently used (LRU) policy to remove the oldest used items when the cache is full.

    See: https://en.wikipedia.org/wiki/Cache_replacement_policies#Least_recently_used_(LRU)
    """

    _cache: OrderedDict[str, bytes | None]
    _config: MemoryModel
    _ttl: OrderedDict[str, datetime]

    def __init__(self, config: MemoryModel):
        self._cache = OrderedDict()
        self._config = config
        self._ttl = OrderedDict()

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the memory cache.
        """
        return ReadinessEnum.OK  # Always ready, it's memory :)

    async def get(self, key: str) -> bytes | None:
        """
        Get a value from the cache.

        If the key does not exist, return `None`.
        """
        sha_key = self._key_to_hash(key)

        # Check TTL, delete if expired
        ttl = self._ttl.get(sha_key, None)
        if ttl and ttl < datetime.now(UTC):
            await self.delete(key)
            return None

        # Get from cache
        res = self._cache.get(sha_key, None)
        if not res:
            return None

        # Move to first
        self._cache.move_to_end(sha_key, last=False)
        self._ttl.move_to_end(sha_key, last=False)

        return res

    async def set(
        self,
        key: str,
        ttl_sec: int,
        value: str | bytes | None,
    ) -> bool:
        """
        Set a value in the cache.
        """
        sha_key = self._key_to_hash(key)

        # Delete the last if full
        if sha_key not in self._cache and len(self._cache) >= self._config.max_size:
            self._ttl.popitem()
            self._cache.popitem()

        # Set TTL as first element
        self._ttl[sha_key] = datetime.now(UTC) + timedelta(seconds=ttl_sec)
        self._ttl.move_to_end(sha_key, last=False)

        # Add cache as first element
        self._cache[sha_key] = value.encode() if isinstance(value, str) else value
        self._cache.move_to_end(sha_key, last=False)

        return True

    async def delete(self, key: str) -> bool:
        """
        Delete a value from the cache.
        """
        sha_key = self._key_to_hash(key)

        # Delete keys
        with suppress(KeyError):
            self._ttl.pop(sha_key)
        with suppress(KeyError):
            self._cache.pop(sha_key)

        return True

    @staticmethod
    def _key_to_hash(key: str) -> str:
        """
        Transform the key into a hash.

        SHA-256 lower the collision probability. Plus, it reduce the key size, which is useful for memory usage.
        """
        return hashlib.sha256(key.encode(), usedforsecurity=False).hexdigest()


class MemoryStore(IStore):
    """
    Store records in the process memory.

    Records are copied on read and write, callers never share an instance with the store. Data is lost on restart, use it for development and tests.
    """

    _alerts: dict[UUID, EmergencyAlertModel]
    _contacts: dict[UUID, ContactModel]
    _medication_logs: dict[UUID, MedicationLogModel]
    _medications: dict[UUID, MedicationModel]
    _reminders: dict[UUID, ReminderModel]

    def __init__(self):
        logger.warning("Using memory store, data will be lost on restart")
        self._alerts = {}
        self._contacts = {}
        self._medication_logs = {}
        self._medications = {}
        self._reminders = {}

    async def readiness(self) -> ReadinessEnum:
        return ReadinessEnum.OK

    async def reminder_get(
        self,
        owner_id: str,
        reminder_id: UUID,
    ) -> ReminderModel | None:
        reminder = self._reminders.get(reminder_id)
        if not reminder or reminder.owner_id != owner_id:
            return None
        return reminder.model_copy(deep=True)

    async def reminder_create(
        self,
        reminder: ReminderModel,
    ) -> ReminderModel:
        logger.debug("Creating reminder %s", reminder.reminder_id)
        self._reminders[reminder.reminder_id] = reminder.model_copy(deep=True)
        return reminder

    async def reminder_update(
        self,
        reminder: ReminderModel,
    ) -> ReminderModel:
        logger.debug("Updating reminder %s", reminder.reminder_id)
        self._reminders[reminder.reminder_id] = reminder.model_copy(deep=True)
        return reminder

    async def reminder_delete(
        self,
        owner_id: str,
        reminder_id: UUID,
    ) -> bool:
        reminder = self._reminders.get(reminder_id)
        if not reminder or reminder.owner_id != owner_id:
            return False
        del self._reminders[reminder_id]
        return True

    async def reminder_search_all(
        self,
        owner_id: str,
    ) -> list[ReminderModel]:
        return sorted(
            (
                reminder.model_copy(deep=True)
                for reminder in self._reminders.values()
                if reminder.owner_id == owner_id
            ),
            key=lambda reminder: reminder.next_run_at,
        )

    async def reminder_list_due(
        self,
        as_of: datetime,
    ) -> list[ReminderModel]:
        return [
            reminder.model_copy(deep=True)
            for reminder in self._reminders.values()
            if reminder.active and reminder.next_run_at <= as_of
        ]

    async def reminder_mark_fired(
        self,
        reminder_id: UUID,
        next_run_at: datetime | None,
    ) -> bool:
        reminder = self._reminders.get(reminder_id)
        if not reminder:
            return False
        if next_run_at:
            reminder.next_run_at = next_run_at.astimezone(UTC)
        else:
            reminder.active = False
        return True

    async def contact_create(
        self,
        contact: ContactModel,
    ) -> ContactModel:
        self._contacts[contact.contact_id] = contact.model_copy(deep=True)
        return contact

    async def contact_get(
        self,
        owner_id: str,
        contact_id: UUID,
    ) -> ContactModel | None:
        contact = self._contacts.get(contact_id)
        if not contact or contact.owner_id != owner_id:
            return None
        return contact.model_copy(deep=True)

    async def contact_update(
        self,
        contact: ContactModel,
    ) -> ContactModel:
        self._contacts[contact.contact_id] = contact.model_copy(deep=True)
        return contact

    async def contact_delete(
        self,
        owner_id: str,
        contact_id: UUID,
    ) -> bool:
        contact = self._contacts.get(contact_id)
        if not contact or contact.owner_id != owner_id:
            return False
        del self._contacts[contact_id]
        return True

    async def contact_search_all(
        self,
        owner_id: str,
    ) -> list[ContactModel]:
        return sorted(
            (
                contact.model_copy(deep=True)
                for contact in self._contacts.values()
                if contact.owner_id == owner_id
            ),
            key=lambda contact: contact.name,
        )

    async def alert_create(
        self,
        alert: EmergencyAlertModel,
    ) -> EmergencyAlertModel:
        self._alerts[alert.alert_id] = alert.model_copy(deep=True)
        return alert

    async def alert_get(
        self,
        owner_id: str,
        alert_id: UUID,
    ) -> EmergencyAlertModel | None:
        alert = self._alerts.get(alert_id)
        if not alert or alert.owner_id != owner_id:
            return None
        return alert.model_copy(deep=True)

    async def alert_update(
        self,
        alert: EmergencyAlertModel,
    ) -> EmergencyAlertModel:
        self._alerts[alert.alert_id] = alert.model_copy(deep=True)
        return alert

    async def alert_search_all(
        self,
        owner_id: str,
    ) -> list[EmergencyAlertModel]:
        return sorted(
            (
                alert.model_copy(deep=True)
                for alert in self._alerts.values()
                if alert.owner_id == owner_id
            ),
            key=lambda alert: alert.triggered_at,
            reverse=True,
        )

    async def medication_create(
        self,
        medication: MedicationModel,
    ) -> MedicationModel:
        return await self.medication_update(medication)

    async def medication_get(
        self,
        owner_id: str,
        medication_id: UUID,
    ) -> MedicationModel | None:
        medication = self._medications.get(medication_id)
        if not medication or medication.owner_id != owner_id:
            return None
        return medication.model_copy(deep=True)

    async def medication_update(
        self,
        medication: MedicationModel,
    ) -> MedicationModel:
        self._medications[medication.medication_id] = medication.model_copy(deep=True)
        return medication

    async def medication_delete(
        self,
        owner_id: str,
        medication_id: UUID,
    ) -> bool:
        medication = self._medications.get(medication_id)
        if not medication or medication.owner_id != owner_id:
            return False
        del self._medications[medication_id]
        # Logs go with their medication
        for log in list(self._medication_logs.values()):
            if log.medication_id == medication_id:
                del self._medication_logs[log.log_id]
        return True

    async def medication_search_all(
        self,
        owner_id: str,
    ) -> list[MedicationModel]:
        return sorted(
            (
                medication.model_copy(deep=True)
                for medication in self._medications.values()
                if medication.owner_id == owner_id
            ),
            key=lambda medication: medication.name,
        )

    async def medication_log_create(
        self,
        log: MedicationLogModel,
    ) -> MedicationLogModel:
        self._medication_logs[log.log_id] = log.model_copy(deep=True)
        return log

    async def medication_log_search_all(
        self,
        owner_id: str,
        medication_id: UUID,
    ) -> list[MedicationLogModel]:
        return sorted(
            (
                log.model_copy(deep=True)
                for log in self._medication_logs.values()
                if log.owner_id == owner_id and log.medication_id == medication_id
            ),
            key=lambda log: log.taken_at,
        )


class MemoryChannel(IChannel):
    """
    Fan-out notifications to the subscribers of the current process.

    Each subscriber owns a bounded queue. When a slow subscriber fills it, the oldest notification is dropped.
    """

    _config: MemoryChannelModel
    _subscribers: dict[str, set[asyncio.Queue[NotificationModel]]]

    def __init__(self, config: MemoryChannelModel):
        logger.info("Using memory channel, notifications stay in this process")
        self._config = config
        self._subscribers = {}

    async def readiness(self) -> ReadinessEnum:
        return ReadinessEnum.OK

    async def publish(
        self,
        owner_id: str,
        notification: NotificationModel,
    ) -> int:
        queues = self._subscribers.get(owner_id, set())
        for queue in queues:
            if queue.full():
                logger.warning("Subscriber queue full, dropping oldest notification")
                queue.get_nowait()
            queue.put_nowait(notification)
        logger.debug("Notification %s sent to %s subscriber(s)", notification.event.value, len(queues))
        return len(queues)

    @asynccontextmanager
    async def subscribe(
        self,
        owner_id: str,
    ) -> AsyncGenerator[AsyncIterator[NotificationModel]]:
        queue: asyncio.Queue[NotificationModel] = asyncio.Queue(
            maxsize=self._config.queue_size
        )
        self._subscribers.setdefault(owner_id, set()).add(queue)
        try:
            yield self._consume(queue)
        finally:
            queues = self._subscribers.get(owner_id, set())
            queues.discard(queue)
            if not queues:
                self._subscribers.pop(owner_id, None)

    @staticmethod
    async def _consume(
        queue: asyncio.Queue[NotificationModel],
    ) -> AsyncGenerator[NotificationModel]:
        while True:
            yield await queue.get()
