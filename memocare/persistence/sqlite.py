import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TypeVar
from uuid import UUID

from aiosqlite import Connection, Error as SqliteError, connect as sqlite_connect
from pydantic import BaseModel, ValidationError

from memocare.helpers.config import CONFIG
from memocare.helpers.config_models.database import SqliteModel
from memocare.helpers.logging import logger
from memocare.models.contact import ContactModel
from memocare.models.emergency import EmergencyAlertModel
from memocare.models.medication import MedicationLogModel, MedicationModel
from memocare.models.readiness import ReadinessEnum
from memocare.models.reminder import ReminderModel
from memocare.persistence.icache import ICache
from memocare.persistence.istore import IStore, StoreUnavailableError

T = TypeVar("T", bound=BaseModel)


class SqliteStore(IStore):
    """
    Store records as JSON documents in a local SQLite database.

    Each table is `(id, data)`, fields used in queries are indexed with `JSON_EXTRACT`. Timestamps are compared with `JULIANDAY` so that ISO strings with different offsets are ordered correctly.
    """

    _cache: ICache
    _config: SqliteModel
    _db_path: str
    _initialized: bool

    def __init__(self, cache: ICache, config: SqliteModel):
        logger.info("Using SQLite database at %s", config.full_path())
        self._cache = cache
        self._config = config
        self._db_path = config.full_path()
        self._initialized = False

        # Create folder if does not exist
        db_folder = os.path.dirname(self._db_path)
        if db_folder:
            os.makedirs(name=db_folder, exist_ok=True)

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the SQLite database.

        This checks if the database is reachable and can be queried.
        """
        try:
            async with self._use_db() as db:
                await db.execute("SELECT 1")
            return ReadinessEnum.OK
        except SqliteError:
            logger.exception("Error requesting SQLite")
        except Exception:
            logger.exception("Unknown error while checking SQLite readiness")
        return ReadinessEnum.FAIL

    async def reminder_get(
        self,
        owner_id: str,
        reminder_id: UUID,
    ) -> ReminderModel | None:
        logger.debug("Loading reminder %s", reminder_id)

        # Try cache
        cache_key = self._cache_key_reminder_id(reminder_id)
        reminder = None
        cached = await self._cache.get(cache_key)
        if cached:
            try:
                reminder = ReminderModel.model_validate_json(cached)
            except ValidationError as e:
                logger.debug("Parsing error: %s", e.errors())

        # Try live
        if not reminder:
            async with self._use_db() as db:
                cursor = await db.execute(
                    f"SELECT data FROM {self._config.reminder_table} WHERE id = ?",
                    (str(reminder_id),),
                )
                row = await cursor.fetchone()
            if row:
                reminder = self._parse(ReminderModel, row[0])

            # Update cache
            if reminder:
                await self._cache.set(
                    key=cache_key,
                    ttl_sec=CONFIG.cache.ttl_sec,
                    value=reminder.model_dump_json(),
                )

        # Reminders of other owners are not visible
        if not reminder or reminder.owner_id != owner_id:
            return None
        return reminder

    async def reminder_create(
        self,
        reminder: ReminderModel,
    ) -> ReminderModel:
        return await self.reminder_update(reminder)

    async def reminder_update(
        self,
        reminder: ReminderModel,
    ) -> ReminderModel:
        data = reminder.model_dump_json()
        logger.debug("Saving reminder %s: %s", reminder.reminder_id, data)

        # Update live
        async with self._use_db() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO {self._config.reminder_table} VALUES (?, ?)",
                (
                    str(reminder.reminder_id),  # id
                    data,  # data
                ),
            )
            await db.commit()

        # Update cache
        await self._cache.set(
            key=self._cache_key_reminder_id(reminder.reminder_id),
            ttl_sec=CONFIG.cache.ttl_sec,
            value=data,
        )

        return reminder

    async def reminder_delete(
        self,
        owner_id: str,
        reminder_id: UUID,
    ) -> bool:
        logger.debug("Deleting reminder %s", reminder_id)
        async with self._use_db() as db:
            cursor = await db.execute(
                f"DELETE FROM {self._config.reminder_table} WHERE id = ? AND JSON_EXTRACT(data, '$.owner_id') = ?",
                (
                    str(reminder_id),  # id
                    owner_id,  # data.owner_id
                ),
            )
            await db.commit()
            deleted = cursor.rowcount > 0

        # Invalidate cache
        await self._cache.delete(self._cache_key_reminder_id(reminder_id))

        return deleted

    async def reminder_search_all(
        self,
        owner_id: str,
    ) -> list[ReminderModel]:
        logger.debug("Searching reminders of %s", owner_id)
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.reminder_table} WHERE JSON_EXTRACT(data, '$.owner_id') = ? ORDER BY JULIANDAY(JSON_EXTRACT(data, '$.next_run_at')) ASC",
                (owner_id,),  # data.owner_id
            )
            rows = await cursor.fetchall()
        return self._parse_all(ReminderModel, rows)

    async def reminder_list_due(
        self,
        as_of: datetime,
    ) -> list[ReminderModel]:
        try:
            async with self._use_db() as db:
                cursor = await db.execute(
                    f"SELECT data FROM {self._config.reminder_table} WHERE JSON_EXTRACT(data, '$.active') = 1 AND JULIANDAY(JSON_EXTRACT(data, '$.next_run_at')) <= JULIANDAY(?)",
                    (self._timestamp(as_of),),  # data.next_run_at
                )
                rows = await cursor.fetchall()
        except (OSError, SqliteError) as e:
            raise StoreUnavailableError(f"Cannot list due reminders: {e}") from e
        return self._parse_all(ReminderModel, rows)

    async def reminder_mark_fired(
        self,
        reminder_id: UUID,
        next_run_at: datetime | None,
    ) -> bool:
        # Update live, in a single statement to not overwrite a concurrent edit of the other fields
        async with self._use_db() as db:
            if next_run_at:
                cursor = await db.execute(
                    f"UPDATE {self._config.reminder_table} SET data = JSON_SET(data, '$.next_run_at', ?) WHERE id = ?",
                    (
                        self._timestamp(next_run_at),  # data.next_run_at
                        str(reminder_id),  # id
                    ),
                )
            else:
                cursor = await db.execute(
                    f"UPDATE {self._config.reminder_table} SET data = JSON_SET(data, '$.active', JSON('false')) WHERE id = ?",
                    (str(reminder_id),),  # id
                )
            await db.commit()
            updated = cursor.rowcount > 0

        # Invalidate cache
        await self._cache.delete(self._cache_key_reminder_id(reminder_id))

        return updated

    async def contact_create(
        self,
        contact: ContactModel,
    ) -> ContactModel:
        return await self.contact_update(contact)

    async def contact_get(
        self,
        owner_id: str,
        contact_id: UUID,
    ) -> ContactModel | None:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.contact_table} WHERE id = ? AND JSON_EXTRACT(data, '$.owner_id') = ?",
                (
                    str(contact_id),  # id
                    owner_id,  # data.owner_id
                ),
            )
            row = await cursor.fetchone()
        if not row:
            return None
        return self._parse(ContactModel, row[0])

    async def contact_update(
        self,
        contact: ContactModel,
    ) -> ContactModel:
        data = contact.model_dump_json()
        logger.debug("Saving contact %s", contact.contact_id)
        async with self._use_db() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO {self._config.contact_table} VALUES (?, ?)",
                (
                    str(contact.contact_id),  # id
                    data,  # data
                ),
            )
            await db.commit()
        return contact

    async def contact_delete(
        self,
        owner_id: str,
        contact_id: UUID,
    ) -> bool:
        logger.debug("Deleting contact %s", contact_id)
        async with self._use_db() as db:
            cursor = await db.execute(
                f"DELETE FROM {self._config.contact_table} WHERE id = ? AND JSON_EXTRACT(data, '$.owner_id') = ?",
                (
                    str(contact_id),  # id
                    owner_id,  # data.owner_id
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def contact_search_all(
        self,
        owner_id: str,
    ) -> list[ContactModel]:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.contact_table} WHERE JSON_EXTRACT(data, '$.owner_id') = ? ORDER BY JSON_EXTRACT(data, '$.name') ASC",
                (owner_id,),  # data.owner_id
            )
            rows = await cursor.fetchall()
        return self._parse_all(ContactModel, rows)

    async def alert_create(
        self,
        alert: EmergencyAlertModel,
    ) -> EmergencyAlertModel:
        return await self.alert_update(alert)

    async def alert_get(
        self,
        owner_id: str,
        alert_id: UUID,
    ) -> EmergencyAlertModel | None:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.alert_table} WHERE id = ? AND JSON_EXTRACT(data, '$.owner_id') = ?",
                (
                    str(alert_id),  # id
                    owner_id,  # data.owner_id
                ),
            )
            row = await cursor.fetchone()
        if not row:
            return None
        return self._parse(EmergencyAlertModel, row[0])

    async def alert_update(
        self,
        alert: EmergencyAlertModel,
    ) -> EmergencyAlertModel:
        data = alert.model_dump_json()
        logger.debug("Saving emergency alert %s", alert.alert_id)
        async with self._use_db() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO {self._config.alert_table} VALUES (?, ?)",
                (
                    str(alert.alert_id),  # id
                    data,  # data
                ),
            )
            await db.commit()
        return alert

    async def alert_search_all(
        self,
        owner_id: str,
    ) -> list[EmergencyAlertModel]:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.alert_table} WHERE JSON_EXTRACT(data, '$.owner_id') = ? ORDER BY JULIANDAY(JSON_EXTRACT(data, '$.triggered_at')) DESC",
                (owner_id,),  # data.owner_id
            )
            rows = await cursor.fetchall()
        return self._parse_all(EmergencyAlertModel, rows)

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
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.medication_table} WHERE id = ? AND JSON_EXTRACT(data, '$.owner_id') = ?",
                (
                    str(medication_id),  # id
                    owner_id,  # data.owner_id
                ),
            )
            row = await cursor.fetchone()
        if not row:
            return None
        return self._parse(MedicationModel, row[0])

    async def medication_update(
        self,
        medication: MedicationModel,
    ) -> MedicationModel:
        data = medication.model_dump_json()
        logger.debug("Saving medication %s", medication.medication_id)
        async with self._use_db() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO {self._config.medication_table} VALUES (?, ?)",
                (
                    str(medication.medication_id),  # id
                    data,  # data
                ),
            )
            await db.commit()
        return medication

    async def medication_delete(
        self,
        owner_id: str,
        medication_id: UUID,
    ) -> bool:
        logger.debug("Deleting medication %s", medication_id)
        async with self._use_db() as db:
            cursor = await db.execute(
                f"DELETE FROM {self._config.medication_table} WHERE id = ? AND JSON_EXTRACT(data, '$.owner_id') = ?",
                (
                    str(medication_id),  # id
                    owner_id,  # data.owner_id
                ),
            )
            deleted = cursor.rowcount > 0
            # Logs go with their medication, in the same transaction
            if deleted:
                await db.execute(
                    f"DELETE FROM {self._config.medication_log_table} WHERE JSON_EXTRACT(data, '$.medication_id') = ?",
                    (str(medication_id),),  # data.medication_id
                )
            await db.commit()
        return deleted

    async def medication_search_all(
        self,
        owner_id: str,
    ) -> list[MedicationModel]:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.medication_table} WHERE JSON_EXTRACT(data, '$.owner_id') = ? ORDER BY JSON_EXTRACT(data, '$.name') ASC",
                (owner_id,),  # data.owner_id
            )
            rows = await cursor.fetchall()
        return self._parse_all(MedicationModel, rows)

    async def medication_log_create(
        self,
        log: MedicationLogModel,
    ) -> MedicationLogModel:
        data = log.model_dump_json()
        logger.debug("Saving medication log %s", log.log_id)
        async with self._use_db() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO {self._config.medication_log_table} VALUES (?, ?)",
                (
                    str(log.log_id),  # id
                    data,  # data
                ),
            )
            await db.commit()
        return log

    async def medication_log_search_all(
        self,
        owner_id: str,
        medication_id: UUID,
    ) -> list[MedicationLogModel]:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.medication_log_table} WHERE JSON_EXTRACT(data, '$.medication_id') = ? AND JSON_EXTRACT(data, '$.owner_id') = ? ORDER BY JULIANDAY(JSON_EXTRACT(data, '$.taken_at')) ASC",
                (
                    str(medication_id),  # data.medication_id
                    owner_id,  # data.owner_id
                ),
            )
            rows = await cursor.fetchall()
        return self._parse_all(MedicationLogModel, rows)

    async def _init_db(self, db: Connection):
        """
        Initialize the database.

        Statements are idempotent, running them twice is harmless.

        See: https://sqlite.org/wal.html
        """
        logger.info("First connection, init database")
        # Optimize performance for concurrent writes
        await db.execute("PRAGMA journal_mode=WAL")
        # Create tables
        for table in (
            self._config.alert_table,
            self._config.contact_table,
            self._config.medication_log_table,
            self._config.medication_table,
            self._config.reminder_table,
        ):
            await db.execute(
                f"CREATE TABLE IF NOT EXISTS {table} (id VARCHAR(36) PRIMARY KEY, data TEXT)"
            )
            await db.execute(
                f"CREATE INDEX IF NOT EXISTS {table}_data_owner_id ON {table} (JSON_EXTRACT(data, '$.owner_id'))"
            )
        # Logs are listed per medication
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS {self._config.medication_log_table}_data_medication_id ON {self._config.medication_log_table} (JSON_EXTRACT(data, '$.medication_id'))"
        )
        # Index used by the scheduler on each tick
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS {self._config.reminder_table}_data_due ON {self._config.reminder_table} (JSON_EXTRACT(data, '$.active'), JULIANDAY(JSON_EXTRACT(data, '$.next_run_at')))"
        )

        # Write changes to disk
        await db.commit()

    @asynccontextmanager
    async def _use_db(self) -> AsyncGenerator[Connection]:
        """
        Generate the SQLite client and close it after use.
        """
        async with sqlite_connect(
            database=self._db_path,
        ) as client:
            if not self._initialized:
                await self._init_db(client)
                self._initialized = True
            yield client

    def _cache_key_reminder_id(self, reminder_id: UUID) -> str:
        return f"{self.__class__.__name__}-reminder_id-{reminder_id}"

    @staticmethod
    def _timestamp(value: datetime) -> str:
        """
        Format a timestamp as stored in the documents, UTC with an explicit offset.
        """
        return value.astimezone(UTC).isoformat()

    @staticmethod
    def _parse(model: type[T], data: str) -> T | None:
        try:
            return model.model_validate_json(data)
        except ValidationError as e:
            logger.debug("Parsing error: %s", e.errors())
        return None

    def _parse_all(self, model: type[T], rows) -> list[T]:
        res: list[T] = []
        for row in rows:
            if not row:
                continue
            parsed = self._parse(model, row[0])
            if parsed:
                res.append(parsed)
        return res
