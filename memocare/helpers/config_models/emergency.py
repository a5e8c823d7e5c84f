from pydantic import BaseModel, field_validator


class EmergencyModel(BaseModel):
    patient_name: str = "A patient"
    """Name used in the alert when the caller does not provide one."""
    relation_keywords: list[str] = [
        "aunt",
        "brother",
        "caregiver",
        "child",
        "cousin",
        "father",
        "guardian",
        "mother",
        "nurse",
        "parent",
        "sibling",
        "sister",
        "therapist",
        "uncle",
    ]
    """A contact is alerted if its relation contains one of these words."""
    relations: list[str] = [
        "caregiver",
        "daughter",
        "doctor",
        "family",
        "son",
        "spouse",
    ]
    """A contact is alerted if its relation is exactly one of these."""

    @field_validator("relation_keywords", "relations")
    @classmethod
    def _validate_lowercase(cls, values: list[str]) -> list[str]:
        return [value.strip().lower() for value in values if value.strip()]

    def is_emergency_relation(self, relation: str) -> bool:
        """
        Check if a contact relation qualifies for emergency alerts.

        Comparison is case insensitive.
        """
        relation = relation.strip().lower()
        if relation in self.relations:
            return True
        return any(keyword in relation for keyword in self.relation_keywords)
