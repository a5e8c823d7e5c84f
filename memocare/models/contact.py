from datetime import UTC, datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from memocare.helpers.pydantic_types.phone_numbers import PhoneNumber


class ContactCreateModel(BaseModel):
    name: str = Field(max_length=128, min_length=1)
    notes: str | None = Field(default=None, max_length=1024)
    phone_number: PhoneNumber | None = None
    relation: str = Field(max_length=64, min_length=1)
    """Free text, e.g. "daughter", "family doctor", "neighbour"."""


class ContactModel(ContactCreateModel):
    # Immutable fields
    contact_id: UUID = Field(default_factory=uuid4, frozen=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), frozen=True)
    owner_id: str = Field(frozen=True, max_length=64, min_length=1)


class ContactUpdateModel(BaseModel):
    name: str | None = Field(default=None, max_length=128, min_length=1)
    notes: str | None = Field(default=None, max_length=1024)
    phone_number: PhoneNumber | None = None
    relation: str | None = Field(default=None, max_length=64, min_length=1)
