"""Appointment schemas for request/response validation."""

from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    BOOKED = "BOOKED"
    CONFIRMED = "CONFIRMED"
    APPROVED = "APPROVED"
    ACCEPTED = "ACCEPTED"
    RESCHEDULED = "RESCHEDULED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


# Statuses that count as "approved" for policy gates and billing eligibility
APPROVED_STATUSES = frozenset(
    {AppointmentStatus.CONFIRMED, AppointmentStatus.APPROVED, AppointmentStatus.ACCEPTED}
)
TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}
)


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment."""

    patient_id: str | None = Field(
        None,
        max_length=100,
        description="Target patient; ignored for patient callers (always self)",
    )
    doctor_id: str = Field(..., min_length=1, max_length=100)
    department: str | None = Field(None, max_length=200)
    starts_at: datetime
    ends_at: datetime
    reason: str | None = Field(None, max_length=1000)

    @field_validator("ends_at")
    @classmethod
    def validate_end_time(cls, v: datetime, info: Any) -> datetime:
        """Validate end time is after start time."""
        starts_at = info.data.get("starts_at")
        if starts_at and v <= starts_at:
            raise ValueError("End time must be after start time")
        return v


class AppointmentReschedule(BaseModel):
    """
    Schema for moving an appointment.

    Both timestamps are optional here so an incomplete slot reaches the
    policy check and is reported the same way for every caller.
    """

    starts_at: datetime | None = None
    ends_at: datetime | None = None
    doctor_id: str | None = Field(None, max_length=100)


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    patient_id: str
    doctor_id: str
    department: str | None = None
    starts_at: datetime
    ends_at: datetime
    status: AppointmentStatus
    notes: str | None = None
    previous_appointment_id: UUID | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime
    updated_at: datetime
    cancelled_at: datetime | None = None
    deleted: bool = False

    model_config = {"from_attributes": True}


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering."""

    status: AppointmentStatus | None = None
    patient_id: str | None = None
    doctor_id: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    include_cancelled: bool = False
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class CancellationPolicyResponse(BaseModel):
    """Public scheduling constants."""

    cancel_cutoff_hours: int
    slot_minutes: int


class SlotResponse(BaseModel):
    """One fixed-length slot of a doctor's day."""

    starts_at: datetime
    ends_at: datetime
    available: bool


class AvailabilityResponse(BaseModel):
    """Slots for one doctor on one day."""

    doctor_id: str
    day: date
    slots: list[SlotResponse]
