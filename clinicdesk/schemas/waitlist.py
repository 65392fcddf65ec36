"""Waitlist schemas."""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field


class WaitlistEntryCreate(BaseModel):
    """
    Schema for joining a doctor's waitlist.

    Patients always queue for themselves; staff name the patient.
    """

    doctor_id: str = Field(..., min_length=1, max_length=100)
    desired_date: date
    patient_id: str | None = Field(None, max_length=100)


class WaitlistEntryResponse(BaseModel):
    """Schema for a waitlist entry."""

    id: UUID
    patient_id: str
    doctor_id: str
    desired_date: date
    created_by: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}
