from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import AwareDatetime, BaseModel, Field


class MedicationLogStatusEnum(str, Enum):
    MISSED = "missed"
    TAKEN = "taken"


class MedicationCreateModel(BaseModel):
    dosage: str = Field(max_length=128, min_length=1)
    """Free text, e.g. "10 mg", "2 pills"."""
    name: str = Field(max_length=128, min_length=1)
    notes: str | None = Field(default=None, max_length=1024)


class MedicationUpdateModel(BaseModel):
    dosage: str | None = Field(default=None, max_length=128, min_length=1)
    name: str | None = Field(default=None, max_length=128, min_length=1)
    notes: str | None = Field(default=None, max_length=1024)


class MedicationModel(MedicationCreateModel):
    # Immutable fields
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), frozen=True)
    medication_id: UUID = Field(default_factory=uuid4, frozen=True)
    owner_id: str = Field(frozen=True, max_length=64, min_length=1)


class MedicationLogCreateModel(BaseModel):
    status: MedicationLogStatusEnum
    taken_at: AwareDatetime = Field(default_factory=lambda: datetime.now(UTC))
    """When the dose was taken or should have been, now by default."""


class MedicationLogModel(MedicationLogCreateModel):
    """
    Intake of a medication, logged by the patient or a caregiver.
    """

    # Immutable fields
    log_id: UUID = Field(default_factory=uuid4, frozen=True)
    medication_id: UUID = Field(frozen=True)
    owner_id: str = Field(frozen=True, max_length=64, min_length=1)
