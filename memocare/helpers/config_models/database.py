from enum import Enum
from functools import cached_property

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from memocare.persistence.istore import IStore


class ModeEnum(str, Enum):
    MEMORY = "memory"
    """Keep records in the process memory, lost on restart."""
    SQLITE = "sqlite"
    """Persist records in a local SQLite file."""


class MemoryModel(BaseModel, frozen=True):
    @cached_property
    def instance(self) -> IStore:
        from memocare.persistence.memory import (
            MemoryStore,
        )

        return MemoryStore()


class SqliteModel(BaseModel, frozen=True):
    alert_table: str = "emergency_alerts"
    contact_table: str = "contacts"
    medication_log_table: str = "medication_logs"
    medication_table: str = "medications"
    path: str = ".local"
    reminder_table: str = "reminders"
    schema_version: int = Field(default=1, ge=1)

    def full_path(self) -> str:
        """
        Returns the full path to the sqlite database file.

        Formatted as: `{path}-v{schema_version}.sqlite`.
        """
        return f"{self.path}-v{self.schema_version}.sqlite"

    @cached_property
    def instance(self) -> IStore:
        from memocare.helpers.config import CONFIG
        from memocare.persistence.sqlite import (
            SqliteStore,
        )

        return SqliteStore(
            cache=CONFIG.cache.instance,
            config=self,
        )


class DatabaseModel(BaseModel):
    memory: MemoryModel | None = MemoryModel()  # Object is fully defined by default
    mode: ModeEnum = ModeEnum.SQLITE
    sqlite: SqliteModel | None = SqliteModel()  # Object is fully defined by default

    @field_validator("sqlite")
    @classmethod
    def _validate_sqlite(
        cls,
        sqlite: SqliteModel | None,
        info: ValidationInfo,
    ) -> SqliteModel | None:
        if not sqlite and info.data.get("mode", None) == ModeEnum.SQLITE:
            raise ValueError("SQLite config required")
        return sqlite

    @cached_property
    def instance(self) -> IStore:
        if self.mode == ModeEnum.SQLITE:
            assert self.sqlite
            return self.sqlite.instance

        assert self.memory
        return self.memory.instance
