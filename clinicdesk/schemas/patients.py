"""Patient record schemas."""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field


class PatientResponse(BaseModel):
    """Schema for patient record response."""

    id: UUID
    first_name: str
    last_name: str
    date_of_birth: date | None = None
    phone: str | None = None
    email: str | None = None
    insurance_provider: str | None = None
    insurance_policy_number: str | None = None
    government_eligible: bool
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PatientUpdate(BaseModel):
    """
    Schema for a versioned patient update.

    ``expected_version`` must match the stored version or the update is
    refused with the current version in the error details.
    """

    expected_version: int = Field(..., ge=0)
    first_name: str | None = Field(None, min_length=1, max_length=100)
    last_name: str | None = Field(None, min_length=1, max_length=100)
    date_of_birth: date | None = None
    phone: str | None = Field(None, max_length=20)
    email: str | None = Field(None, max_length=255)
    insurance_provider: str | None = Field(None, max_length=200)
    insurance_policy_number: str | None = Field(None, max_length=100)
    government_eligible: bool | None = None


class PatientUpdateResult(BaseModel):
    """Outcome of a compare-and-swap patient update."""

    ok: bool
    patient: PatientResponse | None = None
    current_version: int | None = None
